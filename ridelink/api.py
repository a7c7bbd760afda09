from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ridelink.config import LinkConfig
from ridelink.manager import LinkManager

logger = logging.getLogger("ridelink.api")

_manager: Optional[LinkManager] = None
_connect_task: Optional[asyncio.Task] = None


async def _get_manager() -> LinkManager:
    global _manager
    if _manager is None:
        _manager = LinkManager(LinkConfig.from_env())
        await _manager.init()
    return _manager


def _status_payload(manager: LinkManager) -> Dict[str, Any]:
    failure = manager.failure
    handle = manager.connected_handle
    return {
        "state": manager.state.value,
        "device": handle.to_dict() if handle else None,
        "failure": {"reason": failure.reason, "message": str(failure)} if failure else None,
        "attempts": [
            {"strategy": a.strategy, "succeeded": a.succeeded, "detail": a.detail}
            for a in manager.attempts
        ],
    }


async def _shutdown() -> None:
    global _manager, _connect_task
    if _connect_task and not _connect_task.done():
        _connect_task.cancel()
    if _manager is not None:
        await _manager.teardown()
        _manager = None
    _connect_task = None


@contextlib.asynccontextmanager
async def _lifespan(_app: FastAPI):
    yield
    await _shutdown()


app = FastAPI(title="ridelink API", version="0.1.0", lifespan=_lifespan)


def _log_task_error(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background connect failed", exc_info=exc)


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/scan/start")
async def scan_start():
    manager = await _get_manager()
    await manager.start_scan()
    return _status_payload(manager)


@app.post("/scan/stop")
async def scan_stop():
    manager = await _get_manager()
    await manager.stop_scan()
    return _status_payload(manager)


@app.get("/devices")
async def devices():
    manager = await _get_manager()
    return JSONResponse([handle.to_dict() for handle in manager.devices()])


@app.post("/connect")
async def connect(
    address: str = Query(..., description="MAC/UUID of the cluster"),
    wait: bool = Query(False, description="Block until the attempt settles"),
):
    """Start a connection attempt.

    By default the attempt runs in the background and the caller polls
    ``/state``; ``wait=true`` returns once the session is Subscribed or Failed.
    """
    global _connect_task
    manager = await _get_manager()
    if wait:
        await manager.connect(address)
        return _status_payload(manager)
    _connect_task = asyncio.create_task(manager.connect(address))
    _connect_task.add_done_callback(_log_task_error)
    await asyncio.sleep(0)
    return {"status": "connecting", "address": address}


@app.post("/disconnect")
async def disconnect():
    manager = await _get_manager()
    await manager.disconnect()
    return _status_payload(manager)


@app.get("/state")
async def state():
    manager = await _get_manager()
    return _status_payload(manager)


@app.get("/telemetry")
async def telemetry():
    manager = await _get_manager()
    return {"state": manager.state.value, "snapshot": manager.snapshot.to_dict()}


@app.get("/layouts/{address}")
async def layout(address: str):
    manager = await _get_manager()
    cached = manager.cached_layout(address)
    if cached is None:
        raise HTTPException(status_code=404, detail=f"No cached layout for {address}")
    return cached


@app.get("/logs")
async def logs(limit: int = Query(200, ge=1, le=10_000)):
    manager = await _get_manager()
    entries = manager.logs()[:limit]
    return [{"timestamp": e.timestamp, "message": e.message} for e in entries]


@app.post("/logs/export")
async def export_logs(destination: Optional[str] = Query(None)):
    manager = await _get_manager()
    ok = manager.export_logs(destination)
    if not ok:
        raise HTTPException(status_code=500, detail="Failed to export logs")
    return {"status": "exported", "destination": destination or manager.config.export_name}


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    manager = await _get_manager()
    last_seq = 0
    try:
        while True:
            for entry in manager.log.since(last_seq):
                await ws.send_text(json.dumps({"timestamp": entry.timestamp, "message": entry.message}))
                last_seq = entry.seq
            await asyncio.sleep(0.5)
    except WebSocketDisconnect:
        return


@app.websocket("/telemetry/stream")
async def telemetry_stream(ws: WebSocket):
    await ws.accept()
    manager = await _get_manager()
    await ws.send_json(manager.snapshot.to_dict())
    try:
        async for snapshot in manager.subscribe():
            await ws.send_json(snapshot.to_dict())
    except WebSocketDisconnect:
        return
