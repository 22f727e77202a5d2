"""Chat events over websocket connections: subscriptions, new messages, status updates."""

from __future__ import annotations

import dataclasses
import inspect
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any

from chatserve.connector import Event, WebSocketConnection
from chatserve.domain import User
from chatserve.dto import UserDto, user_to_dto
from chatserve.validation import VALIDATE_METADATA_KEY, Validator

CHAT_DOMAIN = "chat"

_MAX_UINT64 = 2**64
_MAX_UINT8 = 2**8
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


class EventType(IntEnum):
    SUBSCRIBE_CHATS = 1
    UNSUBSCRIBE_CHATS = 2
    SET_CURRENT_CHAT = 3
    UNSET_CURRENT_CHAT = 4
    CREATE_MESSAGE = 5
    EDIT_MESSAGE = 6
    DELETE_MESSAGE = 7
    UPDATE_MESSAGES_STATUS = 8


def _parse_uint(value: Any, name: str, limit: int = _MAX_UINT64) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < limit:
        raise ValueError(f"{name} must be an unsigned integer below {limit}")
    return value


def _parse_str(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


def _parse_uint_list(value: Any, name: str) -> list[int] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list of unsigned integers")
    return [_parse_uint(item, name) for item in value]


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(value: Any, name: str) -> datetime:
    if value is None:
        return _ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a timestamp string")
    match = _TIME_RE.fullmatch(value)
    if match is None:
        raise ValueError(f"{name} is not an RFC 3339 timestamp")
    base, fraction, zone = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    text += "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(text)


@dataclass
class NewMessage:
    """A message about to be stored."""

    text: str = ""
    chat_id: int = 0
    created_by: int = 0


@dataclass
class MessageDto:
    uuid: str = ""
    id: int = 0
    text: str = ""
    status: int = 0
    chat_id: int = 0
    creator: UserDto | None = None
    created_by: int = 0
    created_at: datetime = _ZERO_TIME
    updated_at: datetime = _ZERO_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "id": self.id,
            "text": self.text,
            "status": self.status,
            "chatId": self.chat_id,
            "creator": self.creator.to_dict() if self.creator is not None else None,
            "createdBy": self.created_by,
            "createdAt": _format_time(self.created_at),
            "updatedAt": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> MessageDto:
        """Build from decoded JSON; raises ValueError on wrongly typed fields."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("message must be a JSON object")
        creator = data.get("creator")
        if creator is not None and not isinstance(creator, Mapping):
            raise ValueError("creator must be a JSON object")
        return cls(
            uuid=_parse_str(data.get("uuid"), "uuid"),
            id=_parse_uint(data.get("id"), "id"),
            text=_parse_str(data.get("text"), "text"),
            status=_parse_uint(data.get("status"), "status", _MAX_UINT8),
            chat_id=_parse_uint(data.get("chatId"), "chatId"),
            creator=UserDto.from_dict(creator) if creator is not None else None,
            created_by=_parse_uint(data.get("createdBy"), "createdBy"),
            created_at=_parse_time(data.get("createdAt"), "createdAt"),
            updated_at=_parse_time(data.get("updatedAt"), "updatedAt"),
        )


@dataclass
class MessagesStatusDto:
    status: int = field(default=0, metadata={VALIDATE_METADATA_KEY: "required,oneof=2 3"})
    message_ids: list[int] | None = field(
        default=None, metadata={VALIDATE_METADATA_KEY: "required,gte=0"}
    )

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "messageIds": self.message_ids}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> MessagesStatusDto:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("messages status must be a JSON object")
        return cls(
            status=_parse_uint(data.get("status"), "status", _MAX_UINT8),
            message_ids=_parse_uint_list(data.get("messageIds"), "messageIds"),
        )


class ChatConnection(WebSocketConnection):
    """A websocket connection that tracks its current and subscribed chats."""

    def __init__(self, websocket: Any, user: User) -> None:
        super().__init__(websocket, user)
        self.subscribed_chats: list[int] | None = None
        self.current_chat: int | None = None

    def is_subscribed(self, chat_id: int) -> bool:
        return chat_id in (self.subscribed_chats or ())

    def is_current_chat(self, chat_id: int) -> bool:
        return self.current_chat is not None and self.current_chat == chat_id


def message_to_dto(message: Any) -> MessageDto:
    """Map a stored message (with creator, status and timestamps) to its DTO."""
    creator = message.creator
    return MessageDto(
        id=message.id,
        text=message.text,
        status=int(message.status),
        chat_id=message.chat_id,
        creator=user_to_dto(creator) if creator is not None else None,
        created_by=message.created_by,
        created_at=message.created_at,
        updated_at=message.updated_at,
    )


def message_from_create_dto(dto: MessageDto) -> NewMessage:
    return NewMessage(text=dto.text)


async def _resolve(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


def _peers(conn: ChatConnection) -> list[Any]:
    return conn.connector.connections if conn.connector is not None else []


def _follows(conn: Any, chat_id: int) -> bool:
    return conn.is_current_chat(chat_id) or conn.is_subscribed(chat_id)


class EventHandler:
    """Dispatches chat events to their handlers.

    The message service offers ``create_message(message)`` and
    ``update_message_status(message_ids, status)``, plain or coroutine.
    """

    def __init__(self, validator: Validator, message_service: Any) -> None:
        self._validator = validator
        self._message_service = message_service
        self._handlers = {
            EventType.SUBSCRIBE_CHATS: self._subscribe_chats,
            EventType.UNSUBSCRIBE_CHATS: self._unsubscribe_chats,
            EventType.SET_CURRENT_CHAT: self._set_current_chat,
            EventType.UNSET_CURRENT_CHAT: self._unset_current_chat,
            EventType.CREATE_MESSAGE: self._create_message,
            EventType.UPDATE_MESSAGES_STATUS: self._update_messages_status,
        }

    async def handle_event(self, conn: ChatConnection, event: Event) -> None:
        try:
            event_type = EventType(event.type)
        except ValueError:
            return
        handler = self._handlers.get(event_type)
        if handler is not None:
            await handler(conn, event.data)

    async def _subscribe_chats(self, conn: ChatConnection, data: Any) -> None:
        conn.subscribed_chats = _parse_uint_list(data, "chat ids")

    async def _unsubscribe_chats(self, conn: ChatConnection, data: Any) -> None:
        conn.current_chat = None

    async def _set_current_chat(self, conn: ChatConnection, data: Any) -> None:
        conn.current_chat = _parse_uint(data, "chat id")

    async def _unset_current_chat(self, conn: ChatConnection, data: Any) -> None:
        conn.subscribed_chats = None

    async def _create_message(self, conn: ChatConnection, data: Any) -> None:
        request = MessageDto.from_dict(data)
        chat_id = conn.current_chat
        if chat_id is None:
            return

        new_message = message_from_create_dto(request)
        new_message.chat_id = chat_id
        new_message.created_by = conn.user.id

        message = await _resolve(self._message_service.create_message(new_message))
        if message is None:
            return

        dto = message_to_dto(message)
        for peer in _peers(conn):
            if peer.connection_id == conn.connection_id or not _follows(peer, chat_id):
                continue
            await peer.send_event(EventType.CREATE_MESSAGE, dto)

        await conn.send_event(EventType.CREATE_MESSAGE, dataclasses.replace(dto, uuid=request.uuid))

    async def _update_messages_status(self, conn: ChatConnection, data: Any) -> None:
        dto = MessagesStatusDto.from_dict(data)
        self._validator.struct(CHAT_DOMAIN, dto)

        chat_id = conn.current_chat
        if chat_id is None or not dto.message_ids:
            return

        await _resolve(self._message_service.update_message_status(dto.message_ids, dto.status))

        for peer in _peers(conn):
            if not _follows(peer, chat_id):
                continue
            await peer.send_event(EventType.UPDATE_MESSAGES_STATUS, dto)