from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from game import (
    MAX_CHAT_LENGTH,
    MIN_PLAYERS,
    WIN_ANNOUNCEMENTS,
    Outcome,
    Phase,
    PhaseTimings,
    PreconditionFailed,
    Player,
    Role,
    Room,
    RoomNotFound,
    Unauthorized,
    alignment_of,
    assign_roles,
    clean_name,
    evaluate_winner,
    generate_code,
    public_state,
    resolve_night,
    resolve_votes,
)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the room manager needs from the real-time messaging layer.

    ``to`` is either a connection id or a channel name (the room code).
    """

    async def emit(self, event: str, data: Any, to: str) -> None: ...

    async def enter_room(self, sid: str, room: str) -> None: ...


def normalize_code(code: Any) -> str:
    return code.strip().upper() if isinstance(code, str) else ""


class RoomRegistry:
    """Live rooms by code, plus the rooms each connection belongs to."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.SystemRandom()
        self._rooms: Dict[str, Room] = {}
        self._memberships: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, code: str) -> bool:
        return normalize_code(code) in self._rooms

    def new_code(self) -> str:
        while True:
            code = generate_code(self._rng)
            if code not in self._rooms:
                return code

    def add(self, room: Room) -> None:
        self._rooms[room.code] = room

    def get(self, code: Any) -> Optional[Room]:
        return self._rooms.get(normalize_code(code))

    def require(self, code: Any) -> Room:
        room = self.get(code)
        if room is None or room.closed:
            raise RoomNotFound()
        return room

    def remove(self, room: Room) -> None:
        if self._rooms.get(room.code) is room:
            del self._rooms[room.code]

    def track(self, sid: str, code: str) -> None:
        self._memberships.setdefault(sid, set()).add(code)

    def untrack(self, sid: str, code: str) -> None:
        codes = self._memberships.get(sid)
        if codes is None:
            return
        codes.discard(code)
        if not codes:
            del self._memberships[sid]

    def rooms_of(self, sid: str) -> List[str]:
        return sorted(self._memberships.get(sid, ()))

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())


class RoomManager:
    """Runs every room: inbound operations, the phase scheduler and broadcasts.

    All mutations of a room happen while holding ``room.lock``. Timers are one
    task per room; each captures the room's phase generation and does nothing
    if the room has moved on by the time it fires.
    """

    def __init__(
        self,
        transport: Transport,
        registry: Optional[RoomRegistry] = None,
        timings: Optional[PhaseTimings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.rng = rng or random.SystemRandom()
        self.registry = registry if registry is not None else RoomRegistry(self.rng)
        self.timings = timings or PhaseTimings()
        self.clock = clock

    # ----------------- Outbound -----------------

    async def _broadcast_state(self, room: Room) -> None:
        await self.transport.emit("room_state", public_state(room), to=room.code)

    async def _announce(self, room: Room, message: str) -> None:
        await self.transport.emit("system_message", message, to=room.code)

    async def _send_private(self, sid: str, event: str, data: Any) -> None:
        await self.transport.emit(event, data, to=sid)

    # ----------------- Registry operations -----------------

    async def create_room(self, sid: str, name: Any) -> Room:
        code = self.registry.new_code()
        room = Room(code=code, host_id=sid, timings=self.timings)
        room.players[sid] = Player(id=sid, name=clean_name(name, "HOST"))
        self.registry.add(room)
        self.registry.track(sid, code)
        logger.info("Room %s created by %s", code, sid)

        async with room.lock:
            await self.transport.enter_room(sid, code)
            await self._send_private(sid, "room_joined", {"code": code, "you": sid, "host": True})
            await self._broadcast_state(room)
        return room

    async def join_room(self, sid: str, code: Any, name: Any) -> Room:
        room = self.registry.require(code)
        async with room.lock:
            if room.closed:
                raise RoomNotFound()
            if sid not in room.players:
                room.players[sid] = Player(id=sid, name=clean_name(name, "PLAYER"))
                if room.host_id is None:
                    room.host_id = sid
                self.registry.track(sid, room.code)
                await self.transport.enter_room(sid, room.code)
                logger.info("%s joined room %s (%d players)", sid, room.code, len(room.players))
            await self._send_private(
                sid, "room_joined", {"code": room.code, "you": sid, "host": room.host_id == sid}
            )
            await self._broadcast_state(room)
        return room

    async def disconnect(self, sid: str) -> None:
        for code in self.registry.rooms_of(sid):
            room = self.registry.get(code)
            if room is None:
                continue
            async with room.lock:
                await self._remove_member(room, sid)
        logger.debug("Connection %s cleaned up", sid)

    async def _remove_member(self, room: Room, sid: str) -> None:
        if room.closed or sid not in room.players:
            return
        del room.players[sid]
        self.registry.untrack(sid, room.code)
        if room.host_id == sid:
            room.host_id = next(iter(room.players), None)
            if room.host_id is None:
                self._destroy(room)
                return
            logger.info("Room %s host is now %s", room.code, room.host_id)
        await self._broadcast_state(room)

    def _destroy(self, room: Room) -> None:
        room.closed = True
        self._cancel_timer(room)
        room.ends_at = None
        self.registry.remove(room)
        logger.info("Room %s destroyed", room.code)

    # ----------------- Host operations -----------------

    def _require_host(self, room: Room, sid: str) -> None:
        if room.host_id != sid:
            raise Unauthorized()

    async def configure_room(self, sid: str, code: Any, cfg: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            self._require_host(room, sid)
            if room.phase != Phase.LOBBY:
                raise PreconditionFailed()
            if not isinstance(cfg, dict):
                raise PreconditionFailed()
            room.timings = room.timings.configured(cfg)
            logger.info("Room %s timings set to %s", room.code, room.timings)
            await self._broadcast_state(room)

    async def start_game(self, sid: str, code: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            self._require_host(room, sid)
            if room.phase != Phase.LOBBY:
                raise PreconditionFailed()
            if len(room.players) < MIN_PLAYERS:
                raise PreconditionFailed("need_4_players", public=True)

            room.assignments = assign_roles(list(room.players), self.rng)
            for pid, role in room.assignments.items():
                await self._send_private(pid, "role_assignment", {"role": role.value})
            logger.info("Room %s game started with %d players", room.code, len(room.players))
            await self._enter_night(room)

    async def advance(self, sid: str, code: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            self._require_host(room, sid)
            if room.phase in (Phase.LOBBY, Phase.END):
                raise PreconditionFailed()
            await self._advance(room)

    # ----------------- Player operations -----------------

    async def night_action(self, sid: str, code: Any, target: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            if room.phase != Phase.NIGHT:
                raise PreconditionFailed()
            role = room.role_of(sid)
            if role is None or role == Role.CIVILIAN:
                raise Unauthorized()
            if not room.is_alive(sid) or not room.is_alive(target):
                raise PreconditionFailed()

            if role == Role.MURDERER:
                room.night_actions.kill = target
            elif role == Role.DOCTOR:
                room.night_actions.save = target
            elif role == Role.DETECTIVE:
                room.night_actions.inspect = target
                await self._send_private(
                    sid,
                    "inspect_result",
                    {"target": target, "alignment": alignment_of(room.role_of(target))},
                )

    async def day_chat(self, sid: str, code: Any, message: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            if room.phase != Phase.DAY or not room.is_alive(sid):
                raise PreconditionFailed()
            text = "" if message is None else str(message)
            await self.transport.emit(
                "chat_message",
                {"from": room.players[sid].name, "message": text[:MAX_CHAT_LENGTH]},
                to=room.code,
            )

    async def accuse(self, sid: str, code: Any, target: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            if room.phase != Phase.DAY:
                raise PreconditionFailed()
            if not room.is_alive(sid) or not room.is_alive(target):
                raise PreconditionFailed()
            accuser = room.players[sid].name
            accused = room.players[target].name
            await self._announce(room, f"accuse:{accuser}->{accused}")

    async def vote(self, sid: str, code: Any, target: Any) -> None:
        room = self.registry.require(code)
        async with room.lock:
            if room.phase != Phase.VOTE or not room.is_alive(sid):
                raise PreconditionFailed()
            if target and not room.is_alive(target):
                raise PreconditionFailed()
            room.players[sid].vote_for = target or None
            await self._broadcast_state(room)

    # ----------------- Phase scheduler -----------------

    async def _set_phase(self, room: Room, phase: Phase) -> None:
        room.phase = phase
        room.generation += 1
        self._cancel_timer(room)
        seconds = room.timings.duration_for(phase)
        if seconds:
            room.ends_at = self.clock() + seconds
            room.timer_task = asyncio.create_task(self._run_timer(room.code, room.generation, seconds))
        else:
            room.ends_at = None
        logger.info("Room %s entered %s", room.code, phase.value)
        await self._broadcast_state(room)

    async def _enter_night(self, room: Room) -> None:
        room.night += 1
        await self._set_phase(room, Phase.NIGHT)

    async def _advance(self, room: Room) -> None:
        """Perform the transition out of the current phase. Caller holds the lock."""
        if room.phase == Phase.NIGHT:
            outcome = resolve_night(room)
            if outcome is not None:
                await self._announce(room, outcome.value)
            if not await self._check_win(room):
                room.day += 1
                await self._set_phase(room, Phase.DAY)
        elif room.phase == Phase.DAY:
            for p in room.players.values():
                p.vote_for = None
            await self._set_phase(room, Phase.VOTE)
        elif room.phase == Phase.VOTE:
            victim = resolve_votes(room)
            if victim is not None:
                await self._announce(room, f"eject:{victim.name}")
            else:
                await self._announce(room, Outcome.NO_EJECT.value)
            await self._set_phase(room, Phase.RESOLVE)
        elif room.phase == Phase.RESOLVE:
            if not await self._check_win(room):
                room.night_actions.kill = None
                room.night_actions.save = None
                room.night_actions.inspect = None
                for p in room.players.values():
                    p.vote_for = None
                await self._enter_night(room)

    async def _check_win(self, room: Room) -> bool:
        winner = evaluate_winner(room)
        if winner is None:
            return False
        room.winner = winner
        await self._announce(room, WIN_ANNOUNCEMENTS[winner].value)
        logger.info("Room %s game over, %s win", room.code, winner)
        await self._set_phase(room, Phase.END)
        return True

    def _cancel_timer(self, room: Room) -> None:
        task = room.timer_task
        room.timer_task = None
        if task is None or task.done():
            return
        # A firing timer drives the transition itself and must not cancel itself.
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _run_timer(self, code: str, generation: int, seconds: float) -> None:
        await asyncio.sleep(seconds)
        try:
            await self.on_timer(code, generation)
        except Exception:
            logger.exception("Phase timer for room %s failed", code)

    async def on_timer(self, code: str, generation: int) -> bool:
        """Advance ``code`` if it is still in the phase generation that armed the timer."""
        room = self.registry.get(code)
        if room is None:
            return False
        async with room.lock:
            if room.closed or room.generation != generation or room.phase in (Phase.LOBBY, Phase.END):
                logger.debug("Stale timer for room %s (generation %d) ignored", code, generation)
                return False
            await self._advance(room)
            return True

    async def shutdown(self) -> None:
        """Cancel every outstanding phase timer."""
        for room in self.registry.rooms():
            self._cancel_timer(room)
