"""
Tests for the FastAPI server endpoints.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.speechcoach.errors import AdapterError
from src.speechcoach.session import CallSession


@pytest.fixture
def client():
    from server.app import app
    return TestClient(app)


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics(self, client):
        data = client.get("/metrics").json()
        assert "uptime_seconds" in data
        assert "active_sessions" in data


class TestTwimlWebhook:
    """Tests for the voice webhook."""

    def test_form_call_sid(self, client):
        response = client.post("/twiml", data={"CallSid": "CA111", "From": "+15551112222"})

        assert response.status_code == 200
        assert "application/xml" in response.headers["content-type"]
        assert 'url="wss://test.ngrok.io/api/media-stream?callSid=CA111"' in response.text
        assert '<Parameter name="callSid" value="CA111" />' in response.text
        assert 'statusCallback="https://test.ngrok.io/api/stream-status"' in response.text
        assert 'statusCallbackMethod="POST"' in response.text

    def test_raw_body_call_sid(self, client):
        response = client.post(
            "/incoming-call",
            content="CallSid=CA222&AccountSid=AC1",
            headers={"content-type": "text/plain"},
        )
        assert "callSid=CA222" in response.text

    def test_query_call_sid(self, client):
        response = client.get("/twiml?CallSid=CA333")
        assert "callSid=CA333" in response.text

    def test_no_call_sid(self, client):
        response = client.get("/incoming-call")

        assert response.status_code == 200
        assert 'url="wss://test.ngrok.io/api/media-stream"' in response.text
        assert "<Parameter" not in response.text

    def test_forwarded_host_when_unconfigured(self, client, monkeypatch):
        from src.speechcoach.config import get_config

        monkeypatch.setenv("PUBLIC_HOST", "")
        get_config.cache_clear()

        response = client.get(
            "/twiml",
            headers={"x-forwarded-host": "abc.ngrok.app", "x-forwarded-proto": "https"},
        )
        assert 'url="wss://abc.ngrok.app/api/media-stream"' in response.text


class TestCallInitiation:
    """Tests for POST /api/call."""

    def test_missing_phone(self, client):
        response = client.post("/api/call", json={})

        assert response.status_code == 400
        assert "error" in response.json()

    def test_call_created(self, client):
        with patch("server.app.CallControl") as mock_control:
            mock_control.return_value.create_call = AsyncMock(return_value={"call_sid": "CA42", "status": "queued"})
            response = client.post("/api/call", json={"phone": "+15551234567"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "callSid": "CA42"}
        to, webhook_url = mock_control.return_value.create_call.await_args.args
        assert to == "+15551234567"
        assert webhook_url == "https://test.ngrok.io/twiml"

    def test_twilio_failure(self, client):
        with patch("server.app.CallControl") as mock_control:
            mock_control.return_value.create_call = AsyncMock(side_effect=AdapterError("invalid number"))
            response = client.post("/api/call", json={"phone": "+1"})

        assert response.status_code == 500

    def test_missing_from_number(self, client, monkeypatch):
        from src.speechcoach.config import get_config

        monkeypatch.setenv("TWILIO_FROM_NUMBER", "")
        get_config.cache_clear()

        with patch("src.speechcoach.call_control.TwilioClient"):
            response = client.post("/api/call", json={"phone": "+15551234567"})

        assert response.status_code == 500


class TestFeedbackAudio:
    """Tests for GET /api/tts-audio/{filename}."""

    def test_serves_saved_file(self, client, tmp_path):
        tts_dir = tmp_path / "results" / "tts"
        tts_dir.mkdir(parents=True)
        (tts_dir / "feedback_MZ1_1.wav").write_bytes(b"RIFFfake")

        response = client.get("/api/tts-audio/feedback_MZ1_1.wav")

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/wav"
        assert response.content == b"RIFFfake"

    @pytest.mark.parametrize("name", ["missing.wav", "notes.txt", "bad%20name.wav"])
    def test_rejects_unknown_or_unsafe(self, client, name):
        assert client.get(f"/api/tts-audio/{name}").status_code == 404


class TestStreamStatus:
    """Tests for the stream status callback."""

    def test_correlates_call_sid(self, client):
        from server.app import registry

        session = CallSession("MZ777")
        registry.register(session)
        try:
            response = client.post("/api/stream-status", data={"StreamSid": "MZ777", "CallSid": "CA777"})
        finally:
            registry.unregister("MZ777")

        assert response.status_code == 204
        assert session.call_sid == "CA777"

    def test_status_after_stream_ended(self, client):
        from server.app import registry

        registry.register(CallSession("MZ778"))
        registry.unregister("MZ778")
        pending = registry.pending

        response = client.post(
            "/api/stream-status",
            data={"StreamSid": "MZ778", "CallSid": "CA778", "StreamEvent": "stream-stopped"},
        )

        assert response.status_code == 204
        assert registry.pending == pending


class TestMediaStreamWebSocket:
    """Tests for the media-stream WebSocket wiring."""

    @pytest.mark.parametrize("path", ["/api/media-stream?callSid=CA1", "/ws?callSid=CA1"])
    def test_messages_forwarded_and_closed(self, client, path, twilio_start_message):
        orchestrator = MagicMock()
        orchestrator.handle_message = AsyncMock()
        orchestrator.close = AsyncMock()

        with patch("server.app.create_orchestrator", AsyncMock(return_value=orchestrator)) as factory:
            with client.websocket_connect(path) as ws:
                ws.send_text(twilio_start_message)

        assert factory.await_args.kwargs["call_sid_hint"] == "CA1"
        orchestrator.handle_message.assert_awaited_with(twilio_start_message)
        orchestrator.close.assert_awaited_once()
