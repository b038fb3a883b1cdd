from __future__ import annotations

import json
import logging
import uuid

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from common.config import ConfigStore, ServiceSettings
from common.router import MessageRouter
from common.schemas import (
    ConfigUpdate,
    ConfigView,
    ErrorMessage,
    MessageType,
    SOURCE_LABELS,
    StartCaptureControl,
    parse_message,
)
from display.transcript import TranscriptLog
from gateway.session import SessionManager
from transcriber.capture import CaptureSession
from transcriber.providers import ProviderId
from transcriber.service import TranscriptionService

logger = logging.getLogger(__name__)

settings = ServiceSettings()
config_store = ConfigStore()
router = MessageRouter()
service = TranscriptionService(router, config_store, settings)
capture = CaptureSession(router, config_store, settings)
manager = SessionManager(router, max_sessions=settings.max_display_sessions)
transcript = TranscriptLog()

service.attach()
router.on_message(
    MessageType.start_recording,
    lambda msg: transcript.start(SOURCE_LABELS.get(msg.source_type)),
)
router.on_message(MessageType.transcription_result, lambda msg: transcript.add(msg.data))

app = FastAPI(title="Chunked Transcriber Gateway")


@app.on_event("shutdown")
async def shutdown():
    if capture.recording:
        await capture.stop()
    service.detach()
    await service.dispatcher.aclose()


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "capturing": capture.recording,
        "display_sessions": manager.active_count,
        **service.status(),
    }


def _config_view() -> ConfigView:
    current = config_store.get()
    return ConfigView(
        api_provider=current.api_provider,
        cadence_ms=current.cadence_ms,
        overlap_ms=current.overlap_ms,
        configured={p.value: bool(current.credential_for(p.value)) for p in ProviderId},
    )


@app.get("/config", response_model=ConfigView)
async def get_config():
    return _config_view()


@app.post("/config", response_model=ConfigView)
async def update_config(update: ConfigUpdate):
    try:
        config_store.update(**update.model_dump())
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False, include_input=False))
    return _config_view()


@app.get("/transcript")
async def get_transcript(format: str = "json"):
    if format == "txt":
        return PlainTextResponse(transcript.render_text())
    if format != "json":
        raise HTTPException(status_code=400, detail=f"Unknown format: {format}")
    return transcript.render_json()


@app.websocket("/capture")
async def capture_endpoint(ws: WebSocket):
    await ws.accept()
    try:
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                capture.push_fragment(message["bytes"])
            elif message.get("text") is not None:
                try:
                    await _handle_capture_control(json.loads(message["text"]))
                except (ValueError, RuntimeError) as exc:
                    logger.warning("Rejected capture message: %s", exc)
                    await ws.send_text(ErrorMessage(message=str(exc)).model_dump_json())
    except WebSocketDisconnect:
        logger.info("Capture surface disconnected")
    except Exception:
        logger.exception("Unexpected error in capture endpoint")
    finally:
        if capture.recording:
            await capture.stop()


async def _handle_capture_control(data: dict) -> None:
    kind = data.get("type")
    if kind == MessageType.start_recording:
        control = StartCaptureControl(**data)
        capture.start(control.source_type, fragment_ms=control.fragment_ms)
    elif kind == MessageType.stop_recording:
        await capture.stop()
    elif kind == "pause":
        capture.pause()
    elif kind == "resume":
        capture.resume()
    elif kind == MessageType.transcribe_audio:
        # client that cuts its own segments
        router.send(parse_message(data))
    else:
        raise ValueError(f"Unknown message type: {kind}")


@app.websocket("/display")
async def display_endpoint(ws: WebSocket):
    await ws.accept()
    session_id = uuid.uuid4().hex
    try:
        await manager.create(session_id, ws)
    except RuntimeError as exc:
        logger.warning("Display rejected: %s", exc)
        await ws.send_text(ErrorMessage(message=str(exc)).model_dump_json())
        await ws.close()
        return

    try:
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        logger.info("Display disconnected: %s", session_id)
    finally:
        await manager.remove(session_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
