import time

import pytest
from fastapi.testclient import TestClient

from common.config import SessionSettings
from common.router import MessageRouter
from common.schemas import ErrorMessage, MessageType, TranscriptResult
from gateway import main
from gateway.session import SessionManager


def wait_for_count(expected, timeout=2.0):
    deadline = time.monotonic() + timeout
    while main.manager.active_count != expected:
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("websocket closed")
        self.sent.append(text)


class TestSessionManager:
    @pytest.fixture
    def router(self):
        return MessageRouter()

    @pytest.fixture
    def manager(self, router):
        return SessionManager(router, max_sessions=2)

    @pytest.mark.asyncio
    async def test_create_and_remove(self, manager, router):
        session = await manager.create("s1", None)
        assert session.session_id == "s1"
        assert manager.active_count == 1
        assert router.listeners(MessageType.error) == 1
        await manager.remove("s1")
        assert manager.active_count == 0
        assert router.listeners(MessageType.error) == 0
        assert router.listeners(MessageType.transcription_result) == 0

    @pytest.mark.asyncio
    async def test_max_sessions_enforced(self, manager):
        await manager.create("s1", None)
        await manager.create("s2", None)
        with pytest.raises(RuntimeError, match="Max display sessions"):
            await manager.create("s3", None)

    @pytest.mark.asyncio
    async def test_duplicate_session_id_rejected(self, manager):
        await manager.create("s1", None)
        with pytest.raises(RuntimeError, match="already exists"):
            await manager.create("s1", None)

    @pytest.mark.asyncio
    async def test_results_forwarded_with_wire_names(self, manager, router):
        ws = FakeWebSocket()
        session = await manager.create("s1", ws)

        router.send(ErrorMessage(message="Transcription failed: quota"))
        await router.drain()

        assert session.delivered == 1
        assert '"type":"error"' in ws.sent[0]
        assert "quota" in ws.sent[0]

    @pytest.mark.asyncio
    async def test_gone_display_does_not_break_others(self, manager, router):
        gone = await manager.create("gone", FakeWebSocket(fail=True))
        alive_ws = FakeWebSocket()
        alive = await manager.create("alive", alive_ws)

        router.send(ErrorMessage(message="x"))
        await router.drain()

        assert gone.delivered == 0
        assert alive.delivered == 1


class TestGatewayApp:
    @pytest.fixture
    def client(self):
        saved = main.config_store.get()
        main.transcript.start("Tab Audio")
        yield TestClient(main.app)
        main.config_store._settings = saved
        main.transcript.clear()

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["capturing"] is False
        assert body["retry_queue"] == 0

    def test_config_update_hides_credentials(self, client):
        resp = client.post("/config", json={"api_provider": "Deepgram", "deepgram_api_key": "secret"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["api_provider"] == "deepgram"
        assert body["configured"]["deepgram"] is True
        assert body["configured"]["gemini"] is False
        assert "secret" not in resp.text
        assert main.config_store.get().credential_for("deepgram") == "secret"

    def test_overlap_must_be_shorter_than_cadence(self, client):
        resp = client.post("/config", json={"cadence_ms": 5000, "overlap_ms": 5000, "whisper_api_key": "sk-x"})
        assert resp.status_code == 422
        assert "sk-x" not in resp.text
        assert main.config_store.get().cadence_ms == SessionSettings().cadence_ms

    def test_transcript_export(self, client):
        main.transcript.add(TranscriptResult(text="second", timestamp=60000, source="Tab Audio"))
        main.transcript.add(TranscriptResult(text="first", timestamp=30000, source="Tab Audio"))

        text = client.get("/transcript", params={"format": "txt"})
        assert text.text == "[00:00:30] Tab Audio: first\n[00:01:00] Tab Audio: second"

        exported = client.get("/transcript").json()
        assert [e["text"] for e in exported["entries"]] == ["first", "second"]

        assert client.get("/transcript", params={"format": "pdf"}).status_code == 400

    def test_capture_rejects_unknown_control(self, client):
        with client.websocket_connect("/capture") as ws:
            ws.send_json({"type": "rewind"})
            reply = ws.receive_json()
        assert reply["type"] == "error"
        assert "rewind" in reply["message"]

    def test_display_registered_while_connected(self, client):
        with client.websocket_connect("/display"):
            assert wait_for_count(1)
        assert wait_for_count(0)

    @pytest.mark.parametrize("fragment_ms", ["abc", -5, 0])
    def test_capture_rejects_invalid_fragment_duration(self, client, fragment_ms):
        before = main.capture.segmenter.fragment_ms
        with client.websocket_connect("/capture") as ws:
            ws.send_json({"type": "startRecording", "sourceType": "current", "fragmentMs": fragment_ms})
            reply = ws.receive_json()
            ws.send_bytes(b"fragment")
            ws.send_json({"type": "rewind"})
            follow_up = ws.receive_json()
        assert reply["type"] == "error"
        assert "fragmentMs" in reply["message"]
        # the socket survives the bad control message
        assert "rewind" in follow_up["message"]
        assert main.capture.recording is False
        assert main.capture.segmenter.fragment_ms == before
