"""Failure taxonomy for segmentation and provider dispatch.

``retryable`` decides whether a failed job goes to the retry queue or is
reported to the display surface as terminal.
"""

from __future__ import annotations

from typing import Optional


class TranscriptionError(RuntimeError):
    code = "transcription_error"
    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class MalformedFragment(TranscriptionError):
    code = "malformed_fragment"
    retryable = False


class InvalidAudioPayload(TranscriptionError):
    code = "invalid_audio_payload"
    retryable = False


class MissingCredential(TranscriptionError):
    # a credential may be added before the next attempt
    code = "missing_credential"


class TransportFailure(TranscriptionError):
    code = "transport_failure"


class ProviderError(TranscriptionError):
    code = "provider_error"

    def __init__(self, message: str, provider: Optional[str] = None, status_code: int = 0, detail: str = ""):
        super().__init__(message, provider)
        self.status_code = status_code
        self.detail = detail


class InvalidProviderResponse(TranscriptionError):
    code = "invalid_provider_response"


class PayloadTooLarge(TranscriptionError):
    code = "payload_too_large"
    retryable = False


class UnsupportedProvider(TranscriptionError):
    code = "unsupported_provider"
    retryable = False


class ProviderNotImplemented(UnsupportedProvider):
    code = "provider_not_implemented"
