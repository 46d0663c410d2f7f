"""
SafeGuard relay backend

Endpoints:
    GET    /devices                             — List child devices with online flag
    POST   /devices/heartbeat                   — Child heartbeat / registration
    GET    /commands/{device_id}                — Fetch pending commands (poll by child)
    DELETE /commands/{device_id}/{command_id}   — Claim (acknowledge) a command
    POST   /confirmations                       — Child reports a completed command
    POST   /status                              — Child reports its restriction status
    GET    /status/{device_id}                  — Latest status for the guardian UI
    POST   /commands                            — Guardian sends a structured command
    POST   /commands/text                       — Guardian sends grammar or free text
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request

from .config import Timings
from .dispatcher import (
    REASON_CHANNEL_ERROR,
    REASON_NO_DEVICE,
    REASON_UNRECOGNISED,
    DispatchResult,
    GuardianDispatcher,
)
from .models import (
    CommandRequest,
    ConfirmationPayload,
    DeviceView,
    HeartbeatPayload,
    ParsedCommand,
    StatusPayload,
    TextCommandRequest,
    restrictions_active,
    utcnow,
)
from .parser import format_command
from .presence import is_online
from .relay import RelayChannel

# ── Structured logging ─────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("safeguard-relay")

# ── Shared state (swap the in-memory store for a hosted one in production) ──

timings = Timings.from_env()
relay = RelayChannel()
dispatcher = GuardianDispatcher(relay, timings=timings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    dispatcher.start()
    try:
        yield
    finally:
        await dispatcher.stop()


app = FastAPI(title="SafeGuard Command Relay", version="0.3.0", lifespan=lifespan)


# ── Device endpoints ───────────────────────────────────────────────────

@app.get("/devices")
async def list_devices():
    """List registered child devices, most recently seen first."""
    now = utcnow()
    devices = sorted(await relay.list_devices(), key=lambda d: d.last_seen, reverse=True)
    views = [
        DeviceView(
            device_id=d.id,
            name=d.display_name,
            last_seen=d.last_seen,
            online=is_online(d, now, dispatcher.timings),
        )
        for d in devices
    ]
    logger.info(f"DEVICES | total={len(views)} online={sum(v.online for v in views)}")
    return {"devices": [v.model_dump(mode="json") for v in views], "total": len(views)}


@app.post("/devices/heartbeat")
async def heartbeat(payload: HeartbeatPayload, request: Request):
    """Register a child device or refresh its lastSeen."""
    client_ip = request.client.host if request.client else "unknown"
    device = await relay.heartbeat(payload.device_id, payload.name, payload.push_token)
    logger.info(f"HEARTBEAT | device={device.id} ip={client_ip}")
    return {"status": "ok", "device_id": device.id, "last_seen": device.last_seen.isoformat()}


# ── Child-facing relay endpoints ───────────────────────────────────────

@app.get("/commands/{device_id}")
async def get_commands(device_id: str):
    """Return pending commands for a device that polls instead of subscribing."""
    pending = await relay.pending_commands(device_id)
    logger.info(f"COMMANDS | device={device_id} pending={len(pending)}")
    return {"device_id": device_id, "commands": [c.to_record() for c in pending]}


@app.delete("/commands/{device_id}/{command_id}")
async def claim_command(device_id: str, command_id: str):
    """
    Claim a command. Exactly one caller gets 200 for a given id; everyone
    else gets 404 and must not execute it.
    """
    if not await relay.delete_command(device_id, command_id):
        raise HTTPException(status_code=404, detail=f"Command {command_id} not pending")
    return {"status": "ok", "command_id": command_id}


@app.post("/confirmations")
async def post_confirmation(payload: ConfirmationPayload):
    confirmation_id = await relay.send_confirmation(payload.command_id, payload.device_id, payload.action)
    return {"status": "ok", "confirmation_id": confirmation_id}


@app.post("/status")
async def post_status(payload: StatusPayload):
    await relay.publish_status(payload.device_id, payload.message)
    return {"status": "ok"}


@app.get("/status/{device_id}")
async def get_status(device_id: str):
    record = await relay.get_status(device_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No status for device {device_id}")
    return {
        "device_id": device_id,
        "message": record.message,
        "timestamp": record.timestamp.isoformat(),
        "restrictions_active": restrictions_active(record.message),
    }


# ── Guardian endpoints ─────────────────────────────────────────────────

@app.post("/commands")
async def send_command(payload: CommandRequest):
    """Send a structured command to the best child device and wait for its receipt."""
    command = ParsedCommand(**payload.model_dump())
    result = await dispatcher.dispatch(format_command(command))
    return _dispatch_response(result)


@app.post("/commands/text")
async def send_text_command(payload: TextCommandRequest):
    """Send grammar text as-is, or translate free text first."""
    result = await dispatcher.dispatch_natural_language(payload.text)
    return _dispatch_response(result)


# ── Helpers ────────────────────────────────────────────────────────────

def _dispatch_response(result: DispatchResult) -> dict:
    if result.success:
        return {
            "status": "confirmed",
            "command_id": result.command_id,
            "device_id": result.device_id,
            "command": result.text,
        }

    logger.warning(f"DISPATCH_FAILED | reason={result.reason} command='{result.text}'")
    if result.reason == REASON_NO_DEVICE:
        raise HTTPException(status_code=503, detail="No child devices registered")
    if result.reason == REASON_UNRECOGNISED:
        raise HTTPException(status_code=422, detail=f"Could not interpret command: {result.text}")
    if result.reason == REASON_CHANNEL_ERROR:
        raise HTTPException(status_code=502, detail="Relay channel unavailable")
    raise HTTPException(
        status_code=504,
        detail=f"Command {result.command_id} not confirmed by device {result.device_id}",
    )
