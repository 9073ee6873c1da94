"""WebSocket host for the engine. The ASGI app lives at ``vocal_synth.web.server:app``."""
