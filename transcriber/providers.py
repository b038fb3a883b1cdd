from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

import httpx

from common.config import ConfigStore, ServiceSettings
from common.schemas import TranscriptResult
from transcriber.encoding import encode_audio
from transcriber.errors import (
    InvalidProviderResponse,
    MissingCredential,
    PayloadTooLarge,
    ProviderError,
    ProviderNotImplemented,
    TransportFailure,
    UnsupportedProvider,
)
from transcriber.models import ProviderConfig, Segment

logger = logging.getLogger(__name__)

TRANSCRIBE_PROMPT = (
    "Please transcribe the following audio file. Return only the transcribed "
    "text without any additional commentary or formatting."
)


class ProviderId(str, Enum):
    gemini = "gemini"
    whisper = "whisper"
    deepgram = "deepgram"
    fireworks = "fireworks"


# largest payload each endpoint accepts; None means no known limit
PROVIDER_MAX_BYTES: dict[str, Optional[int]] = {
    ProviderId.gemini.value: 20 * 1024 * 1024,
    ProviderId.whisper.value: 25 * 1024 * 1024,
    ProviderId.deepgram.value: 2 * 1024 * 1024 * 1024,
    ProviderId.fireworks.value: None,
}


def resolve_provider_config(
    store: ConfigStore,
    settings: ServiceSettings,
    provider: Optional[str] = None,
) -> ProviderConfig:
    """Build the ProviderConfig for one attempt from current configuration."""
    current = store.get()
    provider = (provider or current.api_provider).lower()
    models = {
        ProviderId.gemini.value: settings.gemini_model,
        ProviderId.whisper.value: settings.whisper_model,
        ProviderId.deepgram.value: settings.deepgram_model,
    }
    return ProviderConfig(
        provider=provider,
        credential=current.credential_for(provider),
        mime_type=settings.mime_type,
        model=models.get(provider, ""),
        max_bytes=PROVIDER_MAX_BYTES.get(provider),
    )


def _dig(data: Any, *path: Any, provider: str) -> Any:
    node = data
    try:
        for key in path:
            node = node[key]
    except (KeyError, IndexError, TypeError):
        raise InvalidProviderResponse(f"Invalid response from {provider} API", provider)
    return node


class TranscriptionProvider(ABC):
    name: str = ""
    label: str = ""

    def __init__(self, settings: ServiceSettings, client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.client = client

    async def transcribe(self, config: ProviderConfig, segment: Segment, source: str) -> TranscriptResult:
        if not config.credential:
            raise MissingCredential(f"No API key configured for {self.name}", self.name)
        if config.max_bytes is not None and len(segment.payload) > config.max_bytes:
            raise PayloadTooLarge(
                f"Segment of {len(segment.payload)} bytes exceeds {self.label} limit of {config.max_bytes}",
                self.name,
            )

        response = await self._send(config, segment)
        try:
            data = response.json()
        except ValueError:
            raise InvalidProviderResponse(f"{self.label} API returned a non-JSON body", self.name)

        text, confidence = self.extract(data)
        if not isinstance(text, str):
            raise InvalidProviderResponse(f"Invalid response from {self.label} API", self.name)
        if confidence is not None and (isinstance(confidence, bool) or not isinstance(confidence, (int, float))):
            raise InvalidProviderResponse(f"Invalid confidence from {self.label} API", self.name)

        return TranscriptResult(
            text=text.strip(),
            timestamp=segment.timestamp_ms,
            source=source,
            confidence=confidence,
            provider=self.name,
        )

    async def _send(self, config: ProviderConfig, segment: Segment) -> httpx.Response:
        try:
            response = await self.request(config, segment)
        except httpx.TransportError as exc:
            raise TransportFailure(f"{self.label} request failed: {exc!r}", self.name) from exc
        if not response.is_success:
            detail = response.text
            raise ProviderError(
                f"{self.label} API error: {response.status_code} - {detail}",
                self.name,
                status_code=response.status_code,
                detail=detail,
            )
        return response

    @abstractmethod
    async def request(self, config: ProviderConfig, segment: Segment) -> httpx.Response: ...

    @abstractmethod
    def extract(self, data: Any) -> tuple[Any, Optional[float]]: ...


class GeminiProvider(TranscriptionProvider):
    name = ProviderId.gemini.value
    label = "Gemini"

    async def request(self, config: ProviderConfig, segment: Segment) -> httpx.Response:
        url = f"{self.settings.gemini_base_url}/v1beta/models/{config.model}:generateContent"
        payload = {
            "contents": [{
                "parts": [
                    {"text": TRANSCRIBE_PROMPT},
                    {"inline_data": {"mime_type": config.mime_type, "data": encode_audio(segment.payload)}},
                ]
            }]
        }
        return await self.client.post(url, json=payload, headers={"x-goog-api-key": config.credential})

    def extract(self, data: Any) -> tuple[Any, Optional[float]]:
        return _dig(data, "candidates", 0, "content", "parts", 0, "text", provider=self.label), None


class WhisperProvider(TranscriptionProvider):
    name = ProviderId.whisper.value
    label = "Whisper"

    async def request(self, config: ProviderConfig, segment: Segment) -> httpx.Response:
        extension = config.mime_type.split(";")[0].split("/")[-1] or "webm"
        files = {"file": (f"audio.{extension}", segment.payload, config.mime_type)}
        data = {"model": config.model, "response_format": "json"}
        return await self.client.post(
            f"{self.settings.openai_base_url}/v1/audio/transcriptions",
            headers={"Authorization": f"Bearer {config.credential}"},
            files=files,
            data=data,
        )

    def extract(self, data: Any) -> tuple[Any, Optional[float]]:
        return _dig(data, "text", provider=self.label), None


class DeepgramProvider(TranscriptionProvider):
    name = ProviderId.deepgram.value
    label = "Deepgram"

    async def request(self, config: ProviderConfig, segment: Segment) -> httpx.Response:
        return await self.client.post(
            f"{self.settings.deepgram_base_url}/v1/listen",
            params={"model": config.model, "smart_format": "true"},
            headers={
                "Authorization": f"Token {config.credential}",
                "Content-Type": config.mime_type,
            },
            content=segment.payload,
        )

    def extract(self, data: Any) -> tuple[Any, Optional[float]]:
        alternative = _dig(data, "results", "channels", 0, "alternatives", 0, provider=self.label)
        text = _dig(alternative, "transcript", provider=self.label)
        return text, alternative.get("confidence")


class FireworksProvider:
    """Selectable in settings, but no speech-to-text endpoint is wired up."""

    name = ProviderId.fireworks.value
    label = "Fireworks"

    def __init__(self, settings: ServiceSettings, client: httpx.AsyncClient) -> None:
        self.settings = settings

    async def transcribe(self, config: ProviderConfig, segment: Segment, source: str) -> TranscriptResult:
        raise ProviderNotImplemented("Fireworks API implementation not available", self.name)


class ProviderDispatcher:
    """Routes a segment to the provider named in its ProviderConfig."""

    variants = (GeminiProvider, WhisperProvider, DeepgramProvider, FireworksProvider)

    def __init__(self, settings: ServiceSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or ServiceSettings()
        self._client = client or httpx.AsyncClient(timeout=self.settings.request_timeout_s)
        self._providers = {cls.name: cls(self.settings, self._client) for cls in self.variants}

    async def transcribe(
        self,
        config: ProviderConfig,
        segment: Segment,
        source: str = "Tab Audio",
    ) -> TranscriptResult:
        provider = self._providers.get(config.provider)
        if provider is None:
            raise UnsupportedProvider(f"Unsupported API provider: {config.provider}", config.provider)
        logger.info(
            "Transcribing segment %d (%d bytes) with %s",
            segment.index,
            len(segment.payload),
            config.provider,
        )
        return await provider.transcribe(config, segment, source)

    async def aclose(self) -> None:
        await self._client.aclose()
