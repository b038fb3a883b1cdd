"""Internal models for the processing surface."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class RawFragment:
    data: bytes
    sequence: int
    duration_ms: int


@dataclass(frozen=True)
class Segment:
    payload: bytes
    timestamp_ms: int
    has_overlap: bool = False
    duration_ms: int = 0
    overlap_ms: int = 0
    index: int = 0


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    credential: str
    mime_type: str = "audio/webm"
    model: str = ""
    max_bytes: Optional[int] = None


@dataclass
class TranscriptionJob:
    segment: Segment
    provider: str
    source: str
    session: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)
