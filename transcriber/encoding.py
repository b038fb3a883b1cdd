from __future__ import annotations

import base64
import binascii

from transcriber.errors import InvalidAudioPayload


def encode_audio(data: bytes) -> str:
    """Base64 text form of a segment payload, safe for the JSON channel."""
    return base64.b64encode(data).decode("ascii")


def decode_audio(text: str) -> bytes:
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidAudioPayload(f"Audio payload is not valid base64: {exc}") from exc
    if not data:
        raise InvalidAudioPayload("Audio payload is empty")
    return data
