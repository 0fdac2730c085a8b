from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Dict

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from game import GameError
from rooms import RoomManager

logger = logging.getLogger(__name__)


class SocketIOTransport:
    """Room manager transport backed by a socket.io server (channels are socket.io rooms)."""

    def __init__(self, sio: socketio.AsyncServer) -> None:
        self.sio = sio

    async def emit(self, event: str, data: Any, to: str) -> None:
        await self.sio.emit(event, data, to=to)

    async def enter_room(self, sid: str, room: str) -> None:
        await self.sio.enter_room(sid, room)


sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")
ROOMS = RoomManager(SocketIOTransport(sio))


def _payload(data: Any) -> Dict[str, Any]:
    return data if isinstance(data, dict) else {}


async def _run(sid: str, event: str, op: Awaitable[Any]) -> None:
    try:
        await op
    except GameError as e:
        if e.public:
            await sio.emit("error_message", e.code, to=sid)
        else:
            logger.debug("Dropped %s from %s: %s", event, sid, e.code)
    except Exception:
        logger.exception("Unhandled error in %s from %s", event, sid)


@sio.event
async def connect(sid, environ, auth=None):
    logger.debug("Socket connect: %s", sid)


@sio.event
async def disconnect(sid, reason=None):
    logger.debug("Socket disconnect: %s (%s)", sid, reason)
    await _run(sid, "disconnect", ROOMS.disconnect(sid))


@sio.on("create_room")
async def on_create_room(sid, data=None):
    p = _payload(data)
    await _run(sid, "create_room", ROOMS.create_room(sid, p.get("name")))


@sio.on("join_room")
async def on_join_room(sid, data=None):
    p = _payload(data)
    await _run(sid, "join_room", ROOMS.join_room(sid, p.get("code"), p.get("name")))


@sio.on("configure_room")
async def on_configure_room(sid, data=None):
    p = _payload(data)
    await _run(sid, "configure_room", ROOMS.configure_room(sid, p.get("code"), p.get("timings")))


@sio.on("start_game")
async def on_start_game(sid, data=None):
    p = _payload(data)
    await _run(sid, "start_game", ROOMS.start_game(sid, p.get("code")))


@sio.on("night_action")
async def on_night_action(sid, data=None):
    p = _payload(data)
    await _run(sid, "night_action", ROOMS.night_action(sid, p.get("code"), p.get("target")))


@sio.on("day_chat")
async def on_day_chat(sid, data=None):
    p = _payload(data)
    await _run(sid, "day_chat", ROOMS.day_chat(sid, p.get("code"), p.get("message")))


@sio.on("accuse")
async def on_accuse(sid, data=None):
    p = _payload(data)
    await _run(sid, "accuse", ROOMS.accuse(sid, p.get("code"), p.get("target")))


@sio.on("vote")
async def on_vote(sid, data=None):
    p = _payload(data)
    await _run(sid, "vote", ROOMS.vote(sid, p.get("code"), p.get("target")))


@sio.on("advance")
async def on_advance(sid, data=None):
    p = _payload(data)
    await _run(sid, "advance", ROOMS.advance(sid, p.get("code")))


app = FastAPI(title="Murder Night")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = Path(os.environ.get("MURDER_NIGHT_PUBLIC_DIR", BASE_DIR / "public"))


@app.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return "ok"


@app.get("/api/health")
async def health():
    return {"ok": True, "rooms": len(ROOMS.registry)}


async def root():
    return {"ok": True, "hint": "Connect with socket.io and emit create_room or join_room."}


# The static mount catches every path, so it goes after the API routes.
if PUBLIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="public")
else:
    app.get("/")(root)

asgi_app = socketio.ASGIApp(sio, other_asgi_app=app, on_shutdown=ROOMS.shutdown)
