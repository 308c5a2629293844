# src/airwave/main.py
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from airwave.config import get_settings
from airwave.errors import SegmentNotFound, StreamNotReady
from airwave.station import Station

log = logging.getLogger(__name__)

SERVICE_NAME = "airwave streaming server"


def create_app(station: Optional[Station] = None) -> FastAPI:
    if station is None:
        station = Station(get_settings())

    app = FastAPI(title=SERVICE_NAME)
    app.state.station = station

    # Public content: wide open CORS, no credentials
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.on_event("startup")
    async def startup():
        log.info("Starting %s...", SERVICE_NAME)
        await station.start()

    @app.on_event("shutdown")
    async def shutdown():
        log.info("Shutting down...")
        await station.stop()

    @app.get("/health")
    async def health_check():
        snap = station.snapshot()
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "streaming": station.encoder.is_streaming,
            "autoDJ": station.playback.is_playing,
            "mode": snap["mode"],
            "encoder": snap["encoder"],
            "autodj": snap["autodj"],
        }

    @app.get("/live.m3u8")
    async def serve_manifest():
        try:
            manifest = station.encoder.get_manifest()
        except StreamNotReady as e:
            log.debug("manifest requested before it exists: %s", e)
            return PlainTextResponse("Stream offline", status_code=503)
        return Response(
            manifest,
            media_type="application/vnd.apple.mpegurl",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/segment-{number}.ts")
    async def serve_segment(number: str):
        try:
            data = station.encoder.get_segment(number)
        except SegmentNotFound as e:
            log.debug("segment %s unavailable: %s", number, e)
            return PlainTextResponse("Segment not found", status_code=404)
        return Response(
            data,
            media_type="video/mp2t",
            headers={"Cache-Control": "public, max-age=60"},
        )

    @app.websocket("/ingest")
    async def ingest(ws: WebSocket):
        """
        Broadcaster link. Text frames carry control messages
        ({"type": "live-start"} / {"type": "live-stop"}), binary frames carry
        live PCM in LIVE_SAMPLE_FORMAT.
        """
        await ws.accept()
        peer = f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown"
        log.info("Broadcaster connected: %s", peer)
        started_live = False
        try:
            while True:
                msg = await ws.receive()
                if msg["type"] == "websocket.disconnect":
                    break
                if msg.get("bytes") is not None:
                    station.push_live(msg["bytes"])
                    continue

                try:
                    mtype = json.loads(msg.get("text") or "{}").get("type")
                except (json.JSONDecodeError, AttributeError):
                    mtype = None
                if mtype == "live-start":
                    await station.go_live()
                    started_live = True
                    await ws.send_json({"type": "status", "mode": station.mode.value})
                elif mtype == "live-stop":
                    await station.go_autodj()
                    started_live = False
                    await ws.send_json({"type": "status", "mode": station.mode.value})
                else:
                    await ws.send_json({"error": f"unknown message type: {mtype}"})
        except WebSocketDisconnect:
            pass
        finally:
            log.info("Broadcaster disconnected: %s", peer)
            if started_live:
                log.warning("[LIVE] Broadcaster dropped without live-stop, falling back to Auto DJ")
                try:
                    await station.go_autodj()
                except Exception:
                    log.exception("[LIVE] Error resuming Auto DJ")

    return app


def run():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=settings.port)


# Run with: airwave   (or: python -m airwave, or: uvicorn airwave.main:create_app --factory --port 8081)


if __name__ == "__main__":
    run()
