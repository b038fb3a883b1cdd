from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from common.config import ConfigStore, ServiceSettings
from common.router import MessageRouter
from common.schemas import (
    SourceType,
    StartRecordingMessage,
    StopRecordingMessage,
    TranscribeAudioMessage,
)
from transcriber.encoding import encode_audio
from transcriber.models import Segment
from transcriber.segmenter import Segmenter

logger = logging.getLogger(__name__)


class CaptureSession:
    """Capture-side adapter: feeds fragments to a Segmenter and cuts on cadence.

    Cadence and overlap are re-read from the ConfigStore on every tick.
    """

    def __init__(
        self,
        router: MessageRouter,
        config: ConfigStore,
        settings: Optional[ServiceSettings] = None,
        segmenter: Optional[Segmenter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.router = router
        self.config = config
        self.settings = settings or ServiceSettings()
        self.segmenter = segmenter or Segmenter(fragment_ms=self.settings.fragment_ms)
        self.recording = False
        self.paused = False
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    def start(self, source_type: SourceType = SourceType.current, fragment_ms: Optional[int] = None) -> None:
        if self.recording:
            raise RuntimeError("Capture session already recording")
        if fragment_ms is not None and (isinstance(fragment_ms, bool) or not isinstance(fragment_ms, int) or fragment_ms <= 0):
            raise ValueError(f"fragment duration must be a positive number of milliseconds, got {fragment_ms!r}")
        if fragment_ms:
            self.segmenter.fragment_ms = fragment_ms
        self.segmenter.reset()
        self.recording = True
        self.paused = False
        self.router.send(StartRecordingMessage(source_type=source_type))
        self._task = asyncio.get_running_loop().create_task(self._cadence_loop())
        logger.info("Capture started: %s, %dms fragments", source_type.value, self.segmenter.fragment_ms)

    def push_fragment(
        self,
        data: bytes,
        sequence_hint: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        if not self.recording or self.paused:
            logger.debug("Fragment ignored: capture is %s", "paused" if self.paused else "stopped")
            return False
        return self.segmenter.push_fragment(data, sequence_hint, duration_ms)

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def flush(self) -> Optional[Segment]:
        """Cut whatever has accumulated and hand it to the processing surface."""
        current = self.config.get()
        segment = self.segmenter.cut(current.cadence_ms, current.overlap_ms)
        if segment is None:
            return None
        self.router.send(
            TranscribeAudioMessage(
                audio_data=encode_audio(segment.payload),
                timestamp=segment.timestamp_ms,
                has_overlap=segment.has_overlap,
            )
        )
        return segment

    async def stop(self) -> None:
        if not self.recording:
            return
        self.recording = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        # trailing audio shorter than one cadence still gets transcribed
        self.flush()
        self.router.send(StopRecordingMessage())
        logger.info("Capture stopped")

    async def _cadence_loop(self) -> None:
        while self.recording:
            await self._sleep(self.config.get().cadence_ms / 1000.0)
            if self.recording and not self.paused:
                self.flush()
