import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Set

from errors import InvalidRequest, NotFound
from logging_config import get_logger

logger = get_logger(__name__)

DASHED_TOKEN = re.compile(r"^[A-Z0-9]{1,3}-[A-Z0-9]{1,3}-[A-Z0-9]{1,3}$")
COMPACT_TOKEN = re.compile(r"^[A-Z0-9]{6,9}$")


def is_valid_room_token(token) -> bool:
    """XX-XX-XX groups of 1-3 chars, or 6-9 chars once dashes are stripped."""
    if not isinstance(token, str):
        return False
    return bool(DASHED_TOKEN.match(token) or COMPACT_TOKEN.match(token.replace("-", "")))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Room:
    token: str
    created_at: datetime
    message_count: int = 0


@dataclass
class RoomStats:
    room_token: str
    participant_count: int
    message_count: int
    created_at: datetime


@dataclass
class RoomRegistry:
    """In-memory authority over rooms and their participants.

    Only ever touched from the event loop thread, so handlers run to completion
    without interleaving and no lock is needed.
    """

    now: Callable[[], datetime] = utcnow
    _rooms: Dict[str, Room] = field(default_factory=dict)
    _participants: Dict[str, Set[str]] = field(default_factory=dict)

    def check_join(self, room_token: str, agent_id: str):
        if not is_valid_room_token(room_token) or not agent_id:
            raise InvalidRequest("Invalid room token or agent ID")

    def join(self, room_token: str, agent_id: str) -> FrozenSet[str]:
        self.check_join(room_token, agent_id)
        self._participants.setdefault(room_token, set()).add(agent_id)
        if room_token not in self._rooms:
            self._rooms[room_token] = Room(token=room_token, created_at=self.now())
            logger.info(f"Room {room_token} created")
        return frozenset(self._participants[room_token])

    def leave(self, room_token: str, agent_id: str) -> FrozenSet[str]:
        """Remove the agent and return who is left; an emptied room is destroyed."""
        participants = self._participants.get(room_token)
        if participants is None:
            return frozenset()
        participants.discard(agent_id)
        if not participants:
            del self._participants[room_token]
            self._rooms.pop(room_token, None)
            logger.info(f"Room {room_token} destroyed, last participant {agent_id} left")
            return frozenset()
        return frozenset(participants)

    def record_message(self, room_token: str):
        room = self._rooms.get(room_token)
        if room is None:
            logger.debug(f"Message recorded for missing room {room_token}, ignoring")
            return
        room.message_count += 1

    def stats(self, room_token: str) -> RoomStats:
        room = self._rooms.get(room_token)
        if room is None:
            raise NotFound("Room not found")
        return RoomStats(
            room_token=room_token,
            participant_count=len(self._participants.get(room_token, ())),
            message_count=room.message_count,
            created_at=room.created_at,
        )

    def participants(self, room_token: str) -> FrozenSet[str]:
        return frozenset(self._participants.get(room_token, ()))

    def has_room(self, room_token: str) -> bool:
        return room_token in self._rooms

    @property
    def active_room_count(self) -> int:
        return len(self._rooms)

    @property
    def total_participants(self) -> int:
        return sum(len(members) for members in self._participants.values())
