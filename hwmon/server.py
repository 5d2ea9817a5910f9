"""Hardware telemetry server.

Exposes:
  POST /api/hardware             ingest one snapshot from an agent
  GET  /api/hosts                every host's ledger
  GET  /api/hosts/{hostname}     one host's ledger (``?limit=N`` newest records)
  GET  /api/latest               newest snapshot per host
  GET  /health                   liveness check
  WS   /ws                       live updates for viewers

Start with::

    python -m hwmon --port 8080
    # or
    uvicorn hwmon.server:create_app --factory --port 8080
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Sequence

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from hwmon.config import ServerConfig, parse_args
from hwmon.hub import Hub, ViewerConnection
from hwmon.models import HostLedger, SnapshotRecord
from hwmon.registry import Registry
from hwmon.sweeper import SweepScheduler

logger = logging.getLogger(__name__)

DEFAULT_HOST_LIMIT = 100


def create_app(config: ServerConfig | None = None) -> FastAPI:
    """Build the FastAPI app; the hub and sweeper live for the app's lifespan."""
    cfg = config or ServerConfig.from_env()
    registry = Registry(cfg.data_dir, max_hosts=cfg.max_hosts, max_records=cfg.max_records)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if cfg.restore_on_start:
            await asyncio.to_thread(registry.restore)
        hub = Hub(queue_size=cfg.broadcast_queue_size, write_timeout=cfg.write_timeout_seconds)
        sweeper = SweepScheduler(
            registry,
            hub,
            interval_seconds=cfg.sweep_interval_seconds,
            max_age_seconds=cfg.max_age_seconds,
        )
        app.state.hub = hub
        app.state.sweeper = sweeper
        await hub.start()
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await hub.stop()

    app = FastAPI(title="hwmon", version="1.0.0", lifespan=lifespan)
    app.state.config = cfg
    app.state.registry = registry

    # ── Agent ingestion ───────────────────────────────────────────

    @app.post("/api/hardware")
    async def ingest_hardware(record: SnapshotRecord, request: Request):
        if record.timestamp is None:
            record = record.model_copy(update={"timestamp": datetime.now(timezone.utc)})

        is_new = not await asyncio.to_thread(registry.__contains__, record.hostname)
        await asyncio.to_thread(registry.ingest, record)

        hub: Hub = request.app.state.hub
        hub.broadcast_hardware_info(await asyncio.to_thread(registry.latest_per_host))
        if is_new:
            hub.broadcast_host_list(await asyncio.to_thread(registry.summaries))

        response = {"message": "received", "timestamp": int(time.time())}
        if cfg.agent_directive:
            response["action"] = cfg.agent_directive
        return response

    # ── Queries ───────────────────────────────────────────────────

    @app.get("/api/hosts")
    async def list_hosts() -> dict[str, HostLedger]:
        return await asyncio.to_thread(registry.list_hosts)

    @app.get("/api/hosts/{hostname}")
    async def get_host(
        hostname: str,
        limit: int = Query(DEFAULT_HOST_LIMIT, ge=1),
    ) -> HostLedger:
        ledger = await asyncio.to_thread(registry.get_host, hostname, limit)
        if ledger is None:
            raise HTTPException(status_code=404, detail="Host not found")
        return ledger

    @app.get("/api/latest")
    async def latest() -> dict[str, SnapshotRecord]:
        return await asyncio.to_thread(registry.latest_per_host)

    @app.get("/health")
    async def health(request: Request):
        hub: Hub = request.app.state.hub
        hosts = await asyncio.to_thread(len, registry)
        return {"status": "ok", "hosts": hosts, "viewers": hub.connection_count}

    # ── Viewers ───────────────────────────────────────────────────

    @app.websocket("/ws")
    async def viewer_ws(websocket: WebSocket) -> None:
        hub: Hub = websocket.app.state.hub
        await websocket.accept()
        conn = ViewerConnection(websocket)
        if not await hub.register(conn):
            return
        try:
            # Viewers only listen; inbound frames just prove liveness.
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                logger.debug("Ignoring inbound frame from %s", conn.connection_id)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning("Viewer %s read failed: %s", conn.connection_id, exc)
        finally:
            await hub.unregister(conn)

    return app


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main(argv: Sequence[str] | None = None) -> None:
    import uvicorn
    cfg = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(
        "Starting hwmon server on %s:%d (max_hosts=%d, max_records=%d, data_dir=%s)",
        cfg.host, cfg.port, cfg.max_hosts, cfg.max_records, cfg.data_dir,
    )
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()
