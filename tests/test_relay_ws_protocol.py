from types import SimpleNamespace
import time

import pytest
from fastapi.testclient import TestClient

from voxrelay.cli.relay_ws import _create_app

SECRET = "s3cret"


class _FakeTranslator:
    def __init__(self, fail_texts=()):
        self.calls = []
        self.fail_texts = set(fail_texts)

    def translate(self, text: str, source_language: str = None, target_language: str = None):
        src = str(source_language or "")
        tgt = str(target_language or "")
        self.calls.append((str(text or ""), src, tgt))
        if text in self.fail_texts:
            raise RuntimeError("upstream 503")
        return f"[{src}->{tgt}] {text}"


def _args(**overrides):
    values = dict(
        publisher_secret=SECRET,
        interim_delay_sec=0.05,
        session_idle_sec=1.0,
        history_size=10,
        idle_timeout_sec=0,
        relay_trace_log=False,
        corrections_file=None,
        default_corrections=True,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _receive_until_type(ws, expected_type: str, max_steps: int = 40):
    seen = []
    for _ in range(max_steps):
        msg = ws.receive_json()
        if msg.get("type") == expected_type:
            return msg
        seen.append(msg.get("type"))
    pytest.fail(f"did not receive {expected_type}, seen={seen}")


def _authenticate(ws, secret: str = SECRET):
    ws.send_json({"type": "authenticate", "secret": secret})
    return _receive_until_type(ws, "auth_success" if secret == SECRET else "auth_failed")


def test_connect_reports_subscriber_count():
    app = _create_app(_args(), _FakeTranslator())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            msg = ws.receive_json()
            assert msg == {"type": "subscriber_count", "count": 1}
            with client.websocket_connect("/ws") as ws2:
                assert ws2.receive_json() == {"type": "subscriber_count", "count": 2}
                assert _receive_until_type(ws, "subscriber_count") == {"type": "subscriber_count", "count": 2}


def test_authenticate_success_and_failure():
    app = _create_app(_args(), _FakeTranslator())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            failed = _authenticate(ws, "wrong")
            assert failed["message"] == "Invalid password"
            ok = _authenticate(ws)
            assert ok["message"] == "Publisher mode activated"
            health = client.get("/api/health").json()
            assert health == {"status": "ok", "subscribers": 1, "has_publisher": True}


def test_final_fragment_is_broadcast_to_every_client():
    translator = _FakeTranslator()
    app = _create_app(_args(), translator)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as pub, client.websocket_connect("/ws") as sub:
            _authenticate(pub)
            pub.send_json({"type": "fragment", "text": "안녕하세요...", "isFinal": True})

            for ws in (pub, sub):
                msg = _receive_until_type(ws, "translation")
                event = msg["event"]
                assert event["final"] is True
                assert event["original_text"] == "안녕하세요."
                assert event["translated_text"] == "[Korean->English] 안녕하세요."
                assert event["source_language"] == "ko"
                assert event["target_language"] == "en"
                assert event["session_id"]
                assert isinstance(event["timestamp"], int)

            history = client.get("/api/history").json()["translations"]
            assert [row["original_text"] for row in history] == ["안녕하세요."]
    assert translator.calls == [("안녕하세요.", "Korean", "English")]


def test_interim_fragment_emits_live_preview():
    translator = _FakeTranslator()
    app = _create_app(_args(), translator)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as pub, client.websocket_connect("/ws") as sub:
            _authenticate(pub)
            pub.send_json({"type": "fragment", "text": "good morning", "isFinal": False})
            msg = _receive_until_type(sub, "translation")
            assert msg["event"]["final"] is False
            assert msg["event"]["original_text"] == "good morning"
            assert msg["event"]["target_language"] == "ko"
            assert client.get("/api/history").json() == {"translations": []}


def test_subscriber_fragment_is_rejected():
    translator = _FakeTranslator()
    app = _create_app(_args(), translator)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "fragment", "text": "hi", "isFinal": True})
            msg = _receive_until_type(ws, "error")
            assert msg["reason"] == "Only the publisher can send fragments"
    assert translator.calls == []


def test_malformed_json_keeps_connection_usable():
    app = _create_app(_args(), _FakeTranslator())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            err = _receive_until_type(ws, "error")
            assert err["reason"].startswith("invalid json")
            ws.send_bytes(b"\x00\x01")
            err = _receive_until_type(ws, "error")
            assert err["reason"] == "binary frames are not supported"
            _authenticate(ws)


def test_final_failure_reports_error_to_publisher():
    translator = _FakeTranslator(fail_texts={"broken"})
    app = _create_app(_args(), translator)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as pub:
            _authenticate(pub)
            pub.send_json({"type": "fragment", "text": "broken", "isFinal": True})
            err = _receive_until_type(pub, "error")
            assert err["reason"] == "Translation failed"


def test_publisher_disconnect_updates_count_and_clears_role():
    app = _create_app(_args(), _FakeTranslator())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as sub:
            sub.receive_json()
            with client.websocket_connect("/ws") as pub:
                _authenticate(pub)
                assert _receive_until_type(sub, "subscriber_count")["count"] == 2
            assert _receive_until_type(sub, "subscriber_count")["count"] == 1
            health = client.get("/api/health").json()
            assert health["has_publisher"] is False
            assert health["subscribers"] == 1


def test_mode_switch_to_subscriber_drops_publisher_role():
    app = _create_app(_args(), _FakeTranslator())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            _authenticate(ws)
            ws.send_json({"type": "mode", "mode": "subscriber"})
            assert _receive_until_type(ws, "mode") == {"type": "mode", "mode": "subscriber"}
            assert client.get("/api/health").json()["has_publisher"] is False


def test_idle_timeout_closes_silent_client():
    app = _create_app(_args(idle_timeout_sec=0.2), _FakeTranslator())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            time.sleep(0.3)
            err = _receive_until_type(ws, "error")
            assert err["reason"] == "idle timeout"


def test_create_app_rejects_empty_secret():
    with pytest.raises(ValueError, match="secret"):
        _create_app(_args(publisher_secret=""), _FakeTranslator())
