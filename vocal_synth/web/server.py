from __future__ import annotations

import argparse
import asyncio
import logging

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from vocal_synth import __version__
from vocal_synth.scale import SCALES
from vocal_synth.synth import describe_instruments
from vocal_synth.web.session import SessionManager, status_event

logger = logging.getLogger(__name__)

app = FastAPI(title="Vocal Synth", version=__version__)
sessions = SessionManager()


@app.get("/api/health")
async def health() -> dict[str, object]:
    return {
        "status": "ok",
        "version": __version__,
        "activeSessions": sessions.active_count,
    }


@app.get("/api/scales")
async def list_scales() -> list[dict[str, object]]:
    return [{"name": s.name, "offsets": list(s.offsets)} for s in SCALES.values()]


@app.get("/api/instruments")
async def list_instruments() -> list[dict[str, object]]:
    return describe_instruments()


@app.websocket("/ws/engine")
async def engine_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    # Single writer keeps note, synth and progress events in emission order.
    outbox: asyncio.Queue[dict[str, object]] = asyncio.Queue()
    session = sessions.create(outbox.put_nowait)
    sender = asyncio.create_task(_pump(websocket, outbox))
    outbox.put_nowait(status_event("Connected."))

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            text = message.get("text")
            binary = message.get("bytes")

            if text is not None:
                await session.handle_text(text)
            elif binary is not None:
                session.process_audio_bytes(binary)
    except WebSocketDisconnect:
        pass
    finally:
        sessions.remove(session.session_id)
        sender.cancel()


async def _pump(websocket: WebSocket, outbox: asyncio.Queue[dict[str, object]]) -> None:
    try:
        while True:
            event = await outbox.get()
            await websocket.send_json(event)
    except (WebSocketDisconnect, RuntimeError):
        # Socket closed under us; the receive loop handles cleanup.
        return


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(prog="vocal-synth-web")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--log-level", default="info")
    args = ap.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "vocal_synth.web.server:app",
        host=args.host,
        port=args.port,
        log_level=str(args.log_level).lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
