from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from transcriber.errors import MalformedFragment
from transcriber.models import RawFragment, Segment

logger = logging.getLogger(__name__)


def _duration(fragments: list[RawFragment]) -> int:
    return sum(f.duration_ms for f in fragments)


class Segmenter:
    """Rolling fragment window that cuts overlap-prefixed segments.

    Fragments are opaque encoded blocks, so the overlap tail is a run of
    whole trailing fragments chosen by the capture duration each one covers.
    """

    def __init__(self, fragment_ms: int = 5000, clock: Callable[[], float] = time.monotonic):
        self.fragment_ms = fragment_ms
        self._clock = clock
        self._window: list[RawFragment] = []
        self._tail: list[RawFragment] = []
        self._last_sequence = -1
        self._segment_counter = 0
        self._started_at = clock()

    def reset(self) -> None:
        self._window = []
        self._tail = []
        self._last_sequence = -1
        self._segment_counter = 0
        self._started_at = self._clock()

    @property
    def pending_fragments(self) -> int:
        return len(self._window)

    @property
    def tail_duration_ms(self) -> int:
        return _duration(self._tail)

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started_at) * 1000)

    def push_fragment(
        self,
        data: bytes,
        sequence_hint: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        """Capture-surface entry point; numbers fragments when no hint is given."""
        sequence = self._last_sequence + 1 if sequence_hint is None else sequence_hint
        duration = self.fragment_ms if duration_ms is None else duration_ms
        return self.accumulate(RawFragment(data=data, sequence=sequence, duration_ms=duration))

    def accumulate(self, fragment: RawFragment) -> bool:
        try:
            self._validate(fragment)
        except MalformedFragment as exc:
            logger.warning("Dropping fragment %s: %s", fragment.sequence, exc)
            return False
        self._window.append(fragment)
        self._last_sequence = fragment.sequence
        return True

    def _validate(self, fragment: RawFragment) -> None:
        if not isinstance(fragment.data, (bytes, bytearray)) or not fragment.data:
            raise MalformedFragment("empty or non-binary payload")
        if fragment.duration_ms <= 0:
            raise MalformedFragment(f"non-positive duration {fragment.duration_ms}ms")
        if fragment.sequence <= self._last_sequence:
            raise MalformedFragment(
                f"sequence {fragment.sequence} does not follow {self._last_sequence}"
            )

    def cut(self, cadence_ms: int, overlap_ms: int) -> Optional[Segment]:
        """Cut the current window into a segment, or return None if it is empty."""
        if cadence_ms <= 0 or overlap_ms < 0 or overlap_ms >= cadence_ms:
            raise ValueError(f"invalid window: cadence={cadence_ms}ms overlap={overlap_ms}ms")
        if not self._window:
            return None

        prefix = self._tail
        fragments = prefix + self._window
        segment = Segment(
            payload=b"".join(bytes(f.data) for f in fragments),
            timestamp_ms=self.elapsed_ms(),
            has_overlap=bool(prefix),
            duration_ms=_duration(fragments),
            overlap_ms=_duration(prefix),
            index=self._segment_counter,
        )
        self._segment_counter += 1
        self._tail = self._overlap_tail(self._window, cadence_ms, overlap_ms)
        self._window = []
        logger.info(
            "Cut segment %d: %d bytes, %dms (overlap %dms), next tail %dms",
            segment.index,
            len(segment.payload),
            segment.duration_ms,
            segment.overlap_ms,
            self.tail_duration_ms,
        )
        return segment

    def _overlap_tail(self, window: list[RawFragment], cadence_ms: int, overlap_ms: int) -> list[RawFragment]:
        tail: list[RawFragment] = []
        covered = 0
        for fragment in reversed(window):
            if covered >= overlap_ms:
                break
            tail.insert(0, fragment)
            covered += fragment.duration_ms

        if tail and covered >= cadence_ms:
            logger.warning(
                "Fragments too coarse for a %dms overlap under a %dms cadence; shortening tail",
                overlap_ms,
                cadence_ms,
            )
            while tail and covered >= cadence_ms:
                covered -= tail.pop(0).duration_ms
        return tail
