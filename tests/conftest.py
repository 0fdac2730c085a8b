"""Shared fixtures and utilities for room server tests."""
from __future__ import annotations

import asyncio
import random
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from game import Phase, PhaseTimings, Role, Room
from rooms import RoomManager


class FakeTransport:
    """Records every emission instead of sending it."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Any, str]] = []
        self.channels: Dict[str, Set[str]] = {}

    async def emit(self, event: str, data: Any, to: str) -> None:
        self.sent.append((event, data, to))

    async def enter_room(self, sid: str, room: str) -> None:
        self.channels.setdefault(room, set()).add(sid)

    def events(self, event: str, to: Optional[str] = None) -> List[Any]:
        return [data for name, data, dest in self.sent if name == event and (to is None or dest == to)]

    def system_messages(self, code: str) -> List[str]:
        return self.events("system_message", to=code)

    def last_state(self, code: str) -> Dict[str, Any]:
        return self.events("room_state", to=code)[-1]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
async def manager(transport: FakeTransport):
    """Room manager with the default (long) phase timers."""
    mgr = RoomManager(transport, rng=random.Random(1234))
    yield mgr
    await mgr.shutdown()


@pytest.fixture
async def fast_manager(transport: FakeTransport):
    """Room manager whose NIGHT timer fires almost immediately."""
    mgr = RoomManager(transport, timings=PhaseTimings(night=0.02, day=60, vote=60, resolve=60), rng=random.Random(99))
    yield mgr
    await mgr.shutdown()


async def setup_room(manager: RoomManager, count: int, names: List[str] | None = None) -> Tuple[Room, List[str]]:
    """Create a room hosted by ``sid-0`` and join ``count - 1`` more players. Returns the room and all sids."""
    if names is None:
        names = [f"Player{i+1}" for i in range(count)]
    sids = [f"sid-{i}" for i in range(count)]
    room = await manager.create_room(sids[0], names[0])
    for sid, name in zip(sids[1:], names[1:count]):
        await manager.join_room(sid, room.code, name)
    return room, sids


async def start_room(manager: RoomManager, count: int, names: List[str] | None = None) -> Tuple[Room, List[str]]:
    room, sids = await setup_room(manager, count, names)
    await manager.start_game(sids[0], room.code)
    return room, sids


def sid_with_role(room: Room, role: Role) -> str:
    return next(pid for pid, r in room.assignments.items() if r == role)


def sids_with_role(room: Room, role: Role) -> List[str]:
    return [pid for pid, r in room.assignments.items() if r == role]


def set_roles(room: Room, roles: Dict[str, Role]) -> None:
    """Override the assignment (for testing specific scenarios)."""
    room.assignments = dict(roles)


def kill_player(room: Room, player_id: str) -> None:
    """Kill a player directly (for testing win conditions)."""
    room.players[player_id].alive = False


async def advance_to(manager: RoomManager, room: Room, phase: Phase) -> None:
    """Manually advance as host until ``room`` reaches ``phase``."""
    for _ in range(10):
        if room.phase == phase:
            return
        await manager.advance(room.host_id, room.code)
    raise AssertionError(f"room never reached {phase}, stuck in {room.phase}")


async def wait_for_phase(room: Room, phase: Phase, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while room.phase != phase:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
