from __future__ import annotations

import asyncio
import logging

import numpy as np
from fastapi.testclient import TestClient

from vocal_synth.sequence import RecordedNote
from vocal_synth.web.server import app
from vocal_synth.web.session import EngineSession


def _receive_until(ws, kind: str, limit: int = 200) -> dict:
    for _ in range(limit):
        payload = ws.receive_json()
        if payload.get("type") == kind:
            return payload
    raise AssertionError(f"no {kind!r} event received")


def test_health_endpoint() -> None:
    client = TestClient(app)
    resp = client.get("/api/health")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "ok"
    assert "activeSessions" in payload


def test_catalog_endpoints() -> None:
    client = TestClient(app)
    scales = client.get("/api/scales").json()
    assert {"name": "Major", "offsets": [0, 2, 4, 5, 7, 9, 11]} in scales
    instruments = client.get("/api/instruments").json()
    assert {"id": "guitar", "name": "Guitar", "program": 24} in instruments


def test_recording_websocket_flow() -> None:
    client = TestClient(app)

    with client.websocket_connect("/ws/engine") as ws:
        first = ws.receive_json()
        assert first["type"] == "status"

        ws.send_json({"type": "init", "sampleRate": 44100})
        assert ws.receive_json()["type"] == "status"

        ws.send_json({"type": "start", "mode": "recording"})
        started = _receive_until(ws, "status")
        assert started == {"type": "status", "message": "Recording session started."}

        # A3 (220 Hz) is in C major, so autotune leaves it alone.
        for i in range(12):
            n = np.arange(i * 1024, (i + 1) * 1024)
            chunk = (0.3 * np.sin(2 * np.pi * 220 * n / 44100)).astype("<f4")
            ws.send_bytes(chunk.tobytes())

        note = _receive_until(ws, "note")
        assert note["midi"] == 57
        assert note["name"] == "A3"

        ws.send_json({"type": "stop"})
        off = _receive_until(ws, "note")
        assert off["midi"] is None

        ws.send_json({"type": "get_sequence"})
        sequence = _receive_until(ws, "sequence")
        assert [n["midi"] for n in sequence["notes"]] == [57]
        assert sequence["notes"][0]["durationSeconds"] > 0.0


def test_invalid_messages_are_reported() -> None:
    client = TestClient(app)

    with client.websocket_connect("/ws/engine") as ws:
        ws.receive_json()

        ws.send_text("not json")
        assert ws.receive_json()["code"] == "invalid_json"

        ws.send_json({"type": "configure", "octaveShift": 7})
        assert ws.receive_json()["code"] == "invalid_message"

        ws.send_json({"type": "configure", "scale": "Nope"})
        assert ws.receive_json()["code"] == "invalid_message"

        ws.send_json({"type": "teleport"})
        assert ws.receive_json()["code"] == "unknown_message"

        ws.send_json({"type": "preview"})
        assert ws.receive_json() == {"type": "status", "message": "Nothing recorded."}


def test_preview_failure_is_reported(caplog) -> None:
    events: list[dict] = []

    async def broken_preview(progress=None) -> bool:
        raise RuntimeError("browser synth gone")

    async def scenario() -> None:
        session = EngineSession("s1", events.append)
        session.engine.get_sequence = lambda: (RecordedNote(60, 0.0, 0.5),)
        session.engine.preview = broken_preview
        await session.handle_text('{"type": "preview"}')
        for _ in range(3):
            await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="vocal_synth.web.session"):
        asyncio.run(scenario())

    assert events[0] == {"type": "status", "message": "Preview started."}
    assert events[-1]["type"] == "error"
    assert events[-1]["code"] == "preview_failed"
    assert "browser synth gone" in events[-1]["message"]
    assert "preview failed" in caplog.text
