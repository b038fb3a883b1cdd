from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional, Union

from common.schemas import TranscriptResult


@dataclass
class TranscriptEntry:
    timestamp: int
    text: str
    source: str
    confidence: Optional[float] = None


def format_timestamp(elapsed_ms: int) -> str:
    """Session-relative milliseconds as HH:MM:SS."""
    total = max(0, int(elapsed_ms)) // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class TranscriptLog:
    """Display-side transcript for one session.

    Results arrive in completion order; entries are presented by timestamp.
    """

    def __init__(self, default_source: str = "Audio", clock: Callable[[], float] = time.time):
        self.default_source = default_source
        self._clock = clock
        self._entries: list[TranscriptEntry] = []
        self.session_start: Optional[int] = None

    def start(self, source_label: Optional[str] = None) -> None:
        self._entries = []
        self.session_start = int(self._clock() * 1000)
        if source_label:
            self.default_source = source_label

    def clear(self) -> None:
        self._entries = []

    def add(self, result: Union[TranscriptResult, dict]) -> TranscriptEntry:
        if isinstance(result, TranscriptResult):
            result = result.model_dump()
        entry = TranscriptEntry(
            timestamp=int(result.get("timestamp") or 0),
            text=result.get("text") or "",
            source=result.get("source") or self.default_source,
            confidence=result.get("confidence"),
        )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> list[TranscriptEntry]:
        # sorted() is stable, so equal timestamps keep arrival order
        return sorted(self._entries, key=lambda e: e.timestamp)

    def __len__(self) -> int:
        return len(self._entries)

    def render_text(self) -> str:
        return "\n".join(
            f"[{format_timestamp(e.timestamp)}] {e.source}: {e.text}" for e in self.entries
        )

    def render_json(self) -> dict:
        return {
            "sessionStart": self.session_start,
            "sessionEnd": int(self._clock() * 1000),
            "entries": [asdict(e) for e in self.entries],
        }
