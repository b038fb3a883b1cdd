from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter


# --- Router messages between capture, processing and display ---

class MessageType(str, Enum):
    start_recording = "startRecording"
    stop_recording = "stopRecording"
    transcribe_audio = "transcribeAudio"
    transcription_result = "transcriptionResult"
    error = "error"


class SourceType(str, Enum):
    current = "current"
    microphone = "microphone"
    both = "both"


SOURCE_LABELS = {
    SourceType.current: "Tab Audio",
    SourceType.microphone: "Microphone",
    SourceType.both: "Tab Audio + Microphone",
}


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StartRecordingMessage(_WireModel):
    type: Literal["startRecording"] = "startRecording"
    source_type: SourceType = Field(default=SourceType.current, alias="sourceType")


class StartCaptureControl(StartRecordingMessage):
    """startRecording as sent by a remote capture client over /capture."""

    fragment_ms: Optional[PositiveInt] = Field(default=None, alias="fragmentMs")


class StopRecordingMessage(_WireModel):
    type: Literal["stopRecording"] = "stopRecording"


class TranscribeAudioMessage(_WireModel):
    type: Literal["transcribeAudio"] = "transcribeAudio"
    # base64 text of the segment payload
    audio_data: str = Field(alias="audioData")
    timestamp: int
    has_overlap: bool = Field(default=False, alias="hasOverlap")


class TranscriptResult(_WireModel):
    text: str
    timestamp: int
    source: str
    confidence: Optional[float] = None
    provider: Optional[str] = None


class TranscriptionResultMessage(_WireModel):
    type: Literal["transcriptionResult"] = "transcriptionResult"
    data: TranscriptResult


class ErrorMessage(_WireModel):
    type: Literal["error"] = "error"
    message: str


Message = Annotated[
    Union[
        StartRecordingMessage,
        StopRecordingMessage,
        TranscribeAudioMessage,
        TranscriptionResultMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(raw: dict | str | bytes) -> Message:
    """Validate a decoded or JSON-encoded message into its model."""
    if isinstance(raw, (str, bytes)):
        return _message_adapter.validate_json(raw)
    return _message_adapter.validate_python(raw)


# --- Gateway HTTP payloads ---

class ConfigUpdate(BaseModel):
    api_provider: Optional[str] = None
    gemini_api_key: Optional[str] = None
    whisper_api_key: Optional[str] = None
    deepgram_api_key: Optional[str] = None
    fireworks_api_key: Optional[str] = None
    cadence_ms: Optional[int] = None
    overlap_ms: Optional[int] = None


class ConfigView(BaseModel):
    api_provider: str
    cadence_ms: int
    overlap_ms: int
    configured: dict[str, bool]
