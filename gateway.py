"""Presence and broadcast for live room connections.

Every client event is parsed into one of the event dataclasses below and routed
through ``Gateway.handle``, which drives the per-connection state machine::

    UNJOINED -> JOINED -> LEFT | DISCONNECTED

Handlers run on the single event loop and never yield between reading and
mutating registry state, so rooms and participant sets need no locking.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import ValidationError

from errors import InvalidRequest, NotJoined, RelayError
from logging_config import get_logger
from messages import MessageManager
from registry import RoomRegistry
from schemas.events import ClientFrame, JoinRoomData, LeaveRoomData, SendImageData, SendMessageData
from schemas.messages import ImagePayload

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    UNJOINED = "unjoined"
    JOINED = "joined"
    LEFT = "left"
    DISCONNECTED = "disconnected"


@dataclass
class JoinRoom:
    room_token: str
    agent_id: str


@dataclass
class LeaveRoom:
    pass


@dataclass
class SendText:
    room_token: str
    message: str
    sender: str
    ttl: Any = None


@dataclass
class SendImage:
    room_token: str
    image: Optional[ImagePayload]
    sender: str
    ttl: Any = None
    caption: Optional[str] = ""


@dataclass
class Disconnect:
    pass


Event = Union[JoinRoom, LeaveRoom, SendText, SendImage, Disconnect]


def parse_frame(raw: str) -> Event:
    """Turn a ``{"event": ..., "data": {...}}`` frame into an event."""
    try:
        frame = ClientFrame.model_validate_json(raw)
        if frame.event == "join-room":
            data = JoinRoomData.model_validate(frame.data)
            return JoinRoom(room_token=data.roomToken, agent_id=data.agentId)
        if frame.event == "leave-room":
            LeaveRoomData.model_validate(frame.data)
            return LeaveRoom()
        if frame.event == "send-message":
            data = SendMessageData.model_validate(frame.data)
            return SendText(room_token=data.roomToken, message=data.message, sender=data.sender, ttl=data.ttl)
        if frame.event == "send-image":
            data = SendImageData.model_validate(frame.data)
            return SendImage(room_token=data.roomToken, image=data.imageData, sender=data.sender,
                             ttl=data.ttl, caption=data.caption)
    except ValidationError as e:
        logger.debug(f"Rejected malformed frame: {e}")
        raise InvalidRequest("Malformed event")
    raise InvalidRequest(f"Unknown event: {frame.event}")


class Connection:
    """One live transport connection; ``send`` delivers an (event, payload) pair."""

    def __init__(self, connection_id: str, send: Callable[[str, dict], Awaitable[None]]):
        self.connection_id = connection_id
        self._send = send
        self.state = ConnectionState.UNJOINED
        self.room_token: Optional[str] = None
        self.agent_id: Optional[str] = None

    async def emit(self, event: str, payload: dict):
        await self._send(event, payload)

    def __repr__(self):
        return f"Connection({self.connection_id!r}, {self.state.value}, room={self.room_token!r})"


class Gateway:
    def __init__(self, registry: RoomRegistry, messages: MessageManager):
        self.registry = registry
        self.messages = messages
        # room token -> {connection id: connection}
        self._rooms: Dict[str, Dict[str, Connection]] = {}
        self._handlers = {
            JoinRoom: self._join,
            LeaveRoom: self._leave,
            SendText: self._send_text,
            SendImage: self._send_image,
            Disconnect: self._disconnect,
        }

    @property
    def active_connection_count(self) -> int:
        return sum(len(members) for members in self._rooms.values())

    def connections_in(self, room_token: str):
        return list(self._rooms.get(room_token, {}).values())

    async def handle(self, connection: Connection, event: Event):
        handler = self._handlers[type(event)]
        try:
            await handler(connection, event)
        except RelayError as e:
            logger.warning(f"{type(e).__name__} from connection {connection.connection_id}: {e.message}")
            await self._report(connection, e.message)
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__} for connection {connection.connection_id}: {e}",
                         exc_info=True)
            await self._report(connection, "Failed to process event")

    async def _report(self, connection: Connection, message: str):
        if connection.state == ConnectionState.DISCONNECTED:
            return
        try:
            await connection.emit("error", {"message": message})
        except Exception as e:
            logger.debug(f"Could not report error to connection {connection.connection_id}: {e}")

    async def broadcast(self, room_token: str, event: str, payload: dict, exclude: Optional[Connection] = None):
        targets = [conn for conn in self.connections_in(room_token) if conn is not exclude]
        if not targets:
            return
        results = await asyncio.gather(*(conn.emit(event, payload) for conn in targets), return_exceptions=True)
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Error sending {event} to connection {conn.connection_id} in room {room_token}: {result}")
        logger.debug(f"Broadcast {event} to {len(targets)} connections in room {room_token}")

    async def _join(self, connection: Connection, event: JoinRoom):
        self.registry.check_join(event.room_token, event.agent_id)
        if connection.state == ConnectionState.JOINED and (
                connection.room_token != event.room_token or connection.agent_id != event.agent_id):
            await self._depart(connection)

        # no awaits from here until the connection is registered in its new room
        newcomer = event.agent_id not in self.registry.participants(event.room_token)
        participants = self.registry.join(event.room_token, event.agent_id)
        self._rooms.setdefault(event.room_token, {})[connection.connection_id] = connection
        connection.state = ConnectionState.JOINED
        connection.room_token = event.room_token
        connection.agent_id = event.agent_id

        await connection.emit("room-joined", {"roomToken": event.room_token, "participants": sorted(participants)})
        if newcomer:
            await self.broadcast(event.room_token, "participant-joined", {"agentId": event.agent_id},
                                 exclude=connection)
        logger.info(f"{event.agent_id} joined room {event.room_token}")

    def _require_joined(self, connection: Connection, room_token: str):
        if connection.state != ConnectionState.JOINED:
            raise NotJoined("Join a room before sending messages")
        if room_token and room_token != connection.room_token:
            raise NotJoined(f"Not joined to room {room_token}")

    async def _send_text(self, connection: Connection, event: SendText):
        self._require_joined(connection, event.room_token)
        message = await self.messages.send_text(event.room_token, event.message, event.sender, event.ttl)
        await self._deliver(message)

        room_token = message.roomToken

        async def _notify_expired(message_id: str):
            await self.broadcast(room_token, "message-expired", {"messageId": message_id})

        self.messages.schedule_expiry_notice(message, _notify_expired)
        logger.info(f"Text message sent in room {room_token} by {message.sender} (TTL: {message.ttl}s)")

    async def _send_image(self, connection: Connection, event: SendImage):
        self._require_joined(connection, event.room_token)
        message = await self.messages.send_image(event.room_token, event.image, event.sender, event.ttl,
                                                 event.caption)
        await self._deliver(message)
        logger.info(f"Image sent in room {message.roomToken} by {message.sender} (TTL: {message.ttl}s)")

    async def _deliver(self, message):
        self.registry.record_message(message.roomToken)
        await self.broadcast(message.roomToken, "new-message", message.model_dump())

    async def _leave(self, connection: Connection, event: LeaveRoom):
        if connection.state != ConnectionState.JOINED:
            raise NotJoined("Not joined to a room")
        await self._depart(connection)
        connection.state = ConnectionState.LEFT

    async def _disconnect(self, connection: Connection, event: Disconnect):
        previous = connection.state
        connection.state = ConnectionState.DISCONNECTED
        logger.info(f"Client disconnected: {connection.connection_id}")
        if previous == ConnectionState.JOINED:
            await self._depart(connection)

    async def _depart(self, connection: Connection):
        room_token, agent_id = connection.room_token, connection.agent_id
        members = self._rooms.get(room_token, {})
        members.pop(connection.connection_id, None)
        if not members:
            self._rooms.pop(room_token, None)
        connection.room_token = None

        # presence is tracked per agent, so another live connection keeps the agent in the room
        if any(other.agent_id == agent_id for other in members.values()):
            logger.debug(f"{agent_id} still connected to room {room_token} elsewhere")
            return

        remaining = self.registry.leave(room_token, agent_id)
        logger.info(f"{agent_id} left room {room_token}")
        if remaining:
            await self.broadcast(room_token, "participant-left", {"agentId": agent_id})
