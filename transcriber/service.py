from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from common.config import ConfigStore, ServiceSettings
from common.router import MessageRouter, Subscription
from common.schemas import (
    SOURCE_LABELS,
    ErrorMessage,
    MessageType,
    StartRecordingMessage,
    StopRecordingMessage,
    TranscribeAudioMessage,
    TranscriptionResultMessage,
    TranscriptResult,
)
from transcriber.encoding import decode_audio
from transcriber.errors import InvalidAudioPayload, TranscriptionError
from transcriber.models import ProviderConfig, Segment, TranscriptionJob
from transcriber.providers import ProviderDispatcher, resolve_provider_config
from transcriber.retry import RetryScheduler

logger = logging.getLogger(__name__)


class TranscriptionService:
    """Processing surface: turns transcribeAudio messages into results.

    A failed first attempt becomes a retry job; only terminal failures are
    reported to the display surface. Each startRecording opens a new session
    epoch, and results that finish after a newer session began are discarded.
    """

    def __init__(
        self,
        router: MessageRouter,
        config: ConfigStore,
        settings: Optional[ServiceSettings] = None,
        dispatcher: Optional[ProviderDispatcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.router = router
        self.config = config
        self.settings = settings or ServiceSettings()
        self.dispatcher = dispatcher or ProviderDispatcher(self.settings)
        self.scheduler = RetryScheduler(
            self.dispatcher,
            self.resolve_config,
            on_success=self._retry_succeeded,
            on_terminal=self._retry_exhausted,
            base_delay_s=self.settings.retry_base_delay_s,
            max_retries=self.settings.max_retries,
            max_queue=self.settings.max_retry_queue,
            tick_s=self.settings.retry_tick_s,
            sleep=sleep,
        )
        self.recording = False
        self.session = 0
        self.source_label = "Audio"
        self._segment_counter = 0
        self._subscriptions: list[Subscription] = []

    def attach(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self.router.on_message(MessageType.start_recording, self.handle_start),
            self.router.on_message(MessageType.stop_recording, self.handle_stop),
            self.router.on_message(MessageType.transcribe_audio, self.handle_transcribe),
        ]

    def detach(self) -> None:
        for sub in self._subscriptions:
            self.router.off(sub)
        self._subscriptions = []
        self.scheduler.stop()

    def resolve_config(self) -> ProviderConfig:
        return resolve_provider_config(self.config, self.settings)

    def status(self) -> dict:
        return {
            "recording": self.recording,
            "session": self.session,
            "retry_queue": self.scheduler.depth,
            "retry_in_flight": self.scheduler.in_flight,
        }

    async def handle_start(self, message: StartRecordingMessage) -> None:
        self.session += 1
        self.recording = True
        self.source_label = SOURCE_LABELS.get(message.source_type, "Audio")
        self._segment_counter = 0
        self.scheduler.clear()
        self.scheduler.start()
        logger.info("Started recording: %s (session %d)", message.source_type.value, self.session)

    async def handle_stop(self, message: StopRecordingMessage) -> None:
        self.recording = False
        self.scheduler.stop()
        logger.info(
            "Stopped recording (session %d, %d jobs left in retry queue)",
            self.session,
            self.scheduler.depth,
        )

    async def handle_transcribe(self, message: TranscribeAudioMessage) -> None:
        if not self.recording:
            logger.debug("Ignoring audio received while not recording")
            return
        session = self.session
        source = self.source_label

        try:
            payload = decode_audio(message.audio_data)
        except InvalidAudioPayload as exc:
            logger.warning("Rejected segment at %dms: %s", message.timestamp, exc.message)
            self._report(session, f"Transcription failed: {exc.message}")
            return

        segment = Segment(
            payload=payload,
            timestamp_ms=message.timestamp,
            has_overlap=message.has_overlap,
            index=self._segment_counter,
        )
        self._segment_counter += 1

        config = self.resolve_config()
        try:
            result = await self.dispatcher.transcribe(config, segment, source)
        except TranscriptionError as exc:
            self._first_attempt_failed(session, segment, config.provider, source, exc)
        except Exception as exc:
            logger.exception("Unexpected failure transcribing segment %d", segment.index)
            self._first_attempt_failed(
                session, segment, config.provider, source, TranscriptionError(repr(exc), config.provider)
            )
        else:
            self._publish(session, result)

    def _first_attempt_failed(
        self,
        session: int,
        segment: Segment,
        provider: str,
        source: str,
        exc: TranscriptionError,
    ) -> None:
        if session != self.session:
            logger.info("Dropping failed segment %d from an earlier session", segment.index)
            return
        if not exc.retryable:
            logger.error("Segment %d failed permanently: %s", segment.index, exc.message)
            self._report(session, f"Transcription failed: {exc.message}")
            return
        logger.warning("Transcription of segment %d failed, queued for retry: %s", segment.index, exc.message)
        self.scheduler.enqueue(
            TranscriptionJob(
                segment=segment,
                provider=provider,
                source=source,
                session=session,
                last_error=exc.message,
            )
        )

    def _retry_succeeded(self, job: TranscriptionJob, result: TranscriptResult) -> None:
        self._publish(job.session, result)

    def _retry_exhausted(self, job: TranscriptionJob, reason: str) -> None:
        self._report(job.session, reason)

    def _publish(self, session: int, result: TranscriptResult) -> None:
        if session != self.session:
            logger.info("Discarding result from session %d (current %d)", session, self.session)
            return
        self.router.send(TranscriptionResultMessage(data=result))

    def _report(self, session: int, message: str) -> None:
        if session != self.session:
            return
        self.router.send(ErrorMessage(message=message))
