from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 4
MIN_PLAYERS = 4
MAX_NAME_LENGTH = 24
MAX_CHAT_LENGTH = 300


class Role(str, Enum):
    MURDERER = "MURDERER"
    DETECTIVE = "DETECTIVE"
    DOCTOR = "DOCTOR"
    CIVILIAN = "CIVILIAN"


# Order in which the shuffled ids receive the unique roles.
UNIQUE_ROLES = (Role.MURDERER, Role.DETECTIVE, Role.DOCTOR)


class Phase(str, Enum):
    LOBBY = "LOBBY"
    NIGHT = "NIGHT"
    DAY = "DAY"
    VOTE = "VOTE"
    RESOLVE = "RESOLVE"
    END = "END"


class Outcome(str, Enum):
    """System message codes announced to a room."""

    KILL = "kill"
    SAVE = "save"
    NO_EJECT = "no_eject"
    CITIZENS_WIN = "citizens_win"
    MURDERER_WIN = "murderer_win"


WINNER_CITIZENS = "citizens"
WINNER_MURDERERS = "murderers"

WIN_ANNOUNCEMENTS = {
    WINNER_CITIZENS: Outcome.CITIZENS_WIN,
    WINNER_MURDERERS: Outcome.MURDERER_WIN,
}


class GameError(Exception):
    """Base for every rejected room operation.

    ``code`` is the string sent to the client as ``error_message``; only errors
    with ``public`` set are surfaced, the rest are dropped silently.
    """

    code = "error"
    public = False

    def __init__(self, code: Optional[str] = None, public: Optional[bool] = None) -> None:
        if code is not None:
            self.code = code
        if public is not None:
            self.public = public
        super().__init__(self.code)


class RoomNotFound(GameError):
    code = "room_not_found"
    public = True


class Unauthorized(GameError):
    code = "unauthorized"


class PreconditionFailed(GameError):
    code = "precondition_failed"


# Bounds used when a host configures phase durations.
TIMING_LIMITS = {
    "night": (10, 120),
    "day": (10, 300),
    "vote": (10, 120),
    "resolve": (3, 30),
}


@dataclass
class PhaseTimings:
    night: float = 35
    day: float = 75
    vote: float = 35
    resolve: float = 3

    def duration_for(self, phase: Phase) -> Optional[float]:
        return {
            Phase.NIGHT: self.night,
            Phase.DAY: self.day,
            Phase.VOTE: self.vote,
            Phase.RESOLVE: self.resolve,
        }.get(phase)

    def configured(self, cfg: Dict[str, Any]) -> "PhaseTimings":
        """Return a copy with the values from ``cfg`` applied and clamped."""
        values = {name: getattr(self, name) for name in TIMING_LIMITS}
        for name, (low, high) in TIMING_LIMITS.items():
            if name not in cfg:
                continue
            try:
                seconds = int(cfg[name])
            except (TypeError, ValueError, OverflowError):
                continue
            values[name] = max(low, min(high, seconds))
        return PhaseTimings(**values)


@dataclass
class Player:
    id: str
    name: str
    alive: bool = True
    vote_for: Optional[str] = None


@dataclass
class NightActions:
    kill: Optional[str] = None
    save: Optional[str] = None
    inspect: Optional[str] = None


@dataclass(eq=False)
class Room:
    code: str
    host_id: Optional[str]
    timings: PhaseTimings = field(default_factory=PhaseTimings)
    phase: Phase = Phase.LOBBY
    players: Dict[str, Player] = field(default_factory=dict)
    assignments: Dict[str, Role] = field(default_factory=dict)
    night_actions: NightActions = field(default_factory=NightActions)
    ends_at: Optional[float] = None
    generation: int = 0
    night: int = 0
    day: int = 0
    winner: Optional[str] = None
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    timer_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def started(self) -> bool:
        return self.phase != Phase.LOBBY

    def alive_players(self) -> List[Player]:
        return [p for p in self.players.values() if p.alive]

    def is_alive(self, player_id: Optional[str]) -> bool:
        p = self.players.get(player_id) if isinstance(player_id, str) else None
        return bool(p and p.alive)

    def role_of(self, player_id: str) -> Optional[Role]:
        return self.assignments.get(player_id)


def clean_name(name: Any, default: str) -> str:
    text = name.strip() if isinstance(name, str) else ""
    return text[:MAX_NAME_LENGTH] or default


def generate_code(rng: random.Random) -> str:
    return "".join(rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def assign_roles(player_ids: List[str], rng: random.Random) -> Dict[str, Role]:
    """Partition ``player_ids`` into roles.

    Returns an empty mapping when there are fewer than ``MIN_PLAYERS`` ids.
    ``random.shuffle`` is a Fisher-Yates permutation, so every ordering, and
    therefore every role placement, is equally likely.
    """
    if len(player_ids) < MIN_PLAYERS:
        return {}
    ids = list(player_ids)
    rng.shuffle(ids)
    assignments: Dict[str, Role] = {}
    for i, pid in enumerate(ids):
        assignments[pid] = UNIQUE_ROLES[i] if i < len(UNIQUE_ROLES) else Role.CIVILIAN
    return assignments


def alignment_of(role: Optional[Role]) -> str:
    return "evil" if role == Role.MURDERER else "good"


def resolve_night(room: Room) -> Optional[Outcome]:
    """Apply the deferred kill/save pair. Returns the outcome to announce."""
    kill = room.night_actions.kill
    if not kill or not room.is_alive(kill):
        return None
    if room.night_actions.save == kill:
        return Outcome.SAVE
    room.players[kill].alive = False
    return Outcome.KILL


def tally_votes(room: Room) -> Dict[str, int]:
    tally: Dict[str, int] = {}
    for p in room.alive_players():
        if p.vote_for and p.vote_for in room.players:
            tally[p.vote_for] = tally.get(p.vote_for, 0) + 1
    return tally


def pick_ejected(tally: Dict[str, int]) -> Optional[str]:
    """Return the single strictly-highest target, or None on no votes or a tie."""
    if not tally:
        return None
    top = max(tally.values())
    leaders = [pid for pid, count in tally.items() if count == top]
    if len(leaders) != 1:
        return None
    return leaders[0]


def resolve_votes(room: Room) -> Optional[Player]:
    ejected = pick_ejected(tally_votes(room))
    if ejected is None:
        return None
    victim = room.players[ejected]
    if not victim.alive:
        return None
    victim.alive = False
    return victim


def evaluate_winner(room: Room) -> Optional[str]:
    # Players who joined after roles were dealt take no side.
    alive = [p for p in room.alive_players() if p.id in room.assignments]
    alive_m = sum(1 for p in alive if room.role_of(p.id) == Role.MURDERER)
    alive_c = len(alive) - alive_m
    # Zero alive players falls into the first branch.
    if alive_m == 0:
        return WINNER_CITIZENS
    if alive_m >= alive_c:
        return WINNER_MURDERERS
    return None


def public_state(room: Room) -> Dict[str, Any]:
    return {
        "code": room.code,
        "phase": room.phase.value,
        "host": room.host_id,
        "endsAt": room.ends_at,
        "night": room.night,
        "day": room.day,
        "winner": room.winner,
        "players": [
            {"id": p.id, "name": p.name, "alive": p.alive, "voteFor": p.vote_for}
            for p in room.players.values()
        ],
    }
