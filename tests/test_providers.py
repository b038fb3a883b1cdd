import base64
import json

import httpx
import pytest

from common.config import ConfigStore, ServiceSettings, SessionSettings
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
from transcriber.providers import (
    FireworksProvider,
    ProviderDispatcher,
    TranscriptionProvider,
    resolve_provider_config,
)

SEGMENT = Segment(payload=b"audio-bytes", timestamp_ms=30000, has_overlap=True, index=2)


def make_dispatcher(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderDispatcher(ServiceSettings(), client=client)


def config(provider, credential="k", **kwargs):
    return ProviderConfig(provider=provider, credential=credential, model="m", **kwargs)


def unreachable(request):
    raise AssertionError(f"Unexpected request to {request.url}")


class TestGemini:
    @pytest.mark.asyncio
    async def test_inline_base64_request_and_normalized_result(self):
        def handler(request):
            assert request.url.path == "/v1beta/models/m:generateContent"
            assert request.headers["x-goog-api-key"] == "k"
            body = json.loads(request.content)
            inline = body["contents"][0]["parts"][1]["inline_data"]
            assert inline["mime_type"] == "audio/webm"
            assert base64.b64decode(inline["data"]) == b"audio-bytes"
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": " hello world \n"}]}}]
            })

        result = await make_dispatcher(handler).transcribe(config("gemini"), SEGMENT, "Microphone")
        assert result.text == "hello world"
        assert result.timestamp == 30000
        assert result.source == "Microphone"
        assert result.confidence is None
        assert result.provider == "gemini"

    @pytest.mark.asyncio
    async def test_missing_candidates_is_invalid(self):
        def handler(request):
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "OTHER"}})

        with pytest.raises(InvalidProviderResponse) as exc_info:
            await make_dispatcher(handler).transcribe(config("gemini"), SEGMENT)
        assert exc_info.value.retryable


class TestWhisper:
    @pytest.mark.asyncio
    async def test_multipart_upload(self):
        def handler(request):
            assert request.url.path == "/v1/audio/transcriptions"
            assert request.headers["authorization"] == "Bearer k"
            assert request.headers["content-type"].startswith("multipart/form-data")
            assert b"audio-bytes" in request.content
            assert b'filename="audio.webm"' in request.content
            return httpx.Response(200, json={"text": "from whisper"})

        result = await make_dispatcher(handler).transcribe(config("whisper"), SEGMENT)
        assert result.text == "from whisper"
        assert result.provider == "whisper"

    @pytest.mark.asyncio
    async def test_missing_text_is_invalid(self):
        def handler(request):
            return httpx.Response(200, json={"segments": []})

        with pytest.raises(InvalidProviderResponse):
            await make_dispatcher(handler).transcribe(config("whisper"), SEGMENT)


class TestDeepgram:
    @pytest.mark.asyncio
    async def test_raw_body_with_confidence(self):
        def handler(request):
            assert request.url.path == "/v1/listen"
            assert request.url.params["model"] == "m"
            assert request.url.params["smart_format"] == "true"
            assert request.headers["authorization"] == "Token k"
            assert request.headers["content-type"] == "audio/webm"
            assert request.content == b"audio-bytes"
            return httpx.Response(200, json={
                "results": {"channels": [{"alternatives": [{"transcript": "deep", "confidence": 0.93}]}]}
            })

        result = await make_dispatcher(handler).transcribe(config("deepgram"), SEGMENT)
        assert result.text == "deep"
        assert result.confidence == pytest.approx(0.93)

    @pytest.mark.asyncio
    async def test_structurally_invalid_success_is_not_zero_confidence(self):
        def handler(request):
            return httpx.Response(200, json={
                "results": {"channels": [{"alternatives": [{"confidence": 0.0}]}]}
            })

        with pytest.raises(InvalidProviderResponse):
            await make_dispatcher(handler).transcribe(config("deepgram"), SEGMENT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confidence", [True, "0.9"])
    async def test_non_numeric_confidence_is_invalid(self, confidence):
        def handler(request):
            return httpx.Response(200, json={
                "results": {"channels": [{"alternatives": [{"transcript": "deep", "confidence": confidence}]}]}
            })

        with pytest.raises(InvalidProviderResponse):
            await make_dispatcher(handler).transcribe(config("deepgram"), SEGMENT)

    @pytest.mark.asyncio
    async def test_empty_channels_is_invalid(self):
        def handler(request):
            return httpx.Response(200, json={"results": {"channels": []}})

        with pytest.raises(InvalidProviderResponse):
            await make_dispatcher(handler).transcribe(config("deepgram"), SEGMENT)


class TestFailures:
    @pytest.mark.asyncio
    async def test_non_2xx_is_provider_error(self):
        def handler(request):
            return httpx.Response(503, text="overloaded")

        with pytest.raises(ProviderError) as exc_info:
            await make_dispatcher(handler).transcribe(config("whisper"), SEGMENT)
        assert exc_info.value.status_code == 503
        assert exc_info.value.detail == "overloaded"
        assert "503" in exc_info.value.message
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_non_json_body_is_invalid(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        with pytest.raises(InvalidProviderResponse):
            await make_dispatcher(handler).transcribe(config("gemini"), SEGMENT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc_type", [httpx.ConnectError, httpx.ReadTimeout])
    async def test_transport_errors(self, exc_type):
        def handler(request):
            raise exc_type("boom", request=request)

        with pytest.raises(TransportFailure) as exc_info:
            await make_dispatcher(handler).transcribe(config("deepgram"), SEGMENT)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_credential_is_retryable(self):
        with pytest.raises(MissingCredential) as exc_info:
            await make_dispatcher(unreachable).transcribe(config("gemini", credential=""), SEGMENT)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_oversized_payload(self):
        with pytest.raises(PayloadTooLarge) as exc_info:
            await make_dispatcher(unreachable).transcribe(config("whisper", max_bytes=4), SEGMENT)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unknown_provider_is_not_retryable(self):
        with pytest.raises(UnsupportedProvider) as exc_info:
            await make_dispatcher(unreachable).transcribe(config("assemblyai"), SEGMENT)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_fireworks_not_implemented_even_without_credential(self):
        for credential in ("k", ""):
            with pytest.raises(ProviderNotImplemented) as exc_info:
                await make_dispatcher(unreachable).transcribe(config("fireworks", credential=credential), SEGMENT)
            assert not exc_info.value.retryable

    def test_fireworks_is_outside_the_http_provider_base(self):
        assert not issubclass(FireworksProvider, TranscriptionProvider)


class TestResolveConfig:
    def test_reads_current_selection(self):
        store = ConfigStore(SessionSettings(api_provider="deepgram", deepgram_api_key="dg"))
        resolved = resolve_provider_config(store, ServiceSettings())
        assert resolved.provider == "deepgram"
        assert resolved.credential == "dg"
        assert resolved.model == "nova-2"
        assert resolved.max_bytes == 2 * 1024 * 1024 * 1024

    def test_credential_change_visible_on_next_resolve(self):
        store = ConfigStore(SessionSettings(api_provider="whisper"))
        assert resolve_provider_config(store, ServiceSettings()).credential == ""
        store.update(whisper_api_key="sk-new")
        assert resolve_provider_config(store, ServiceSettings()).credential == "sk-new"

    def test_unknown_provider_resolves_without_limits(self):
        store = ConfigStore(SessionSettings(api_provider="Other"))
        resolved = resolve_provider_config(store, ServiceSettings())
        assert resolved.provider == "other"
        assert resolved.max_bytes is None
