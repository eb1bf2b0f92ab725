"""Decodificación tipada de los eventos push del socket.

Cada payload entrante se convierte en uno de un conjunto cerrado de eventos
o se rechaza con ``MalformedPayload``. Nada sin tipar sale de aquí.
"""
import json
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from chatsync.core.errors import MalformedPayload
from chatsync.schemas.models import Message, MessageScope, PresenceEntry, ref_id

# Nombres de evento del protocolo
DIRECT_MESSAGE = "directMessage"
CHANNEL_MESSAGE = "channelMessage"
ONLINE_USERS = "onlineUsers"
USER_TYPING = "userTyping"
MESSAGES_READ = "messagesRead"

JOIN = "join"
JOIN_CHANNEL = "joinChannel"
LEAVE_CHANNEL = "leaveChannel"
TYPING = "typing"
MARK_AS_READ = "markAsRead"


class DirectMessageEvent(BaseModel):
    kind: Literal["directMessage"] = DIRECT_MESSAGE
    message: Message


class ChannelMessageEvent(BaseModel):
    kind: Literal["channelMessage"] = CHANNEL_MESSAGE
    message: Message


class OnlineUsersEvent(BaseModel):
    kind: Literal["onlineUsers"] = ONLINE_USERS
    entries: List[PresenceEntry]
    seq: Optional[int] = None


class UserTypingEvent(BaseModel):
    kind: Literal["userTyping"] = USER_TYPING
    sender_id: str = Field(validation_alias=AliasChoices("senderId", "sender_id"))
    is_typing: bool = Field(validation_alias=AliasChoices("isTyping", "is_typing"))
    channel_id: Optional[str] = Field(None, validation_alias=AliasChoices("channelId", "channel_id"))
    recipient_id: Optional[str] = Field(None, validation_alias=AliasChoices("recipientId", "recipient_id"))

    @field_validator("sender_id", mode="before")
    @classmethod
    def _sender(cls, value: Any) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError("senderId vacío")
        return normalized

    @field_validator("channel_id", "recipient_id", mode="before")
    @classmethod
    def _optional_ref(cls, value: Any) -> Optional[str]:
        return ref_id(value)

    @model_validator(mode="after")
    def _single_target(self) -> "UserTypingEvent":
        # Para isTyping=false basta el senderId
        if self.is_typing and (self.channel_id is None) == (self.recipient_id is None):
            raise ValueError("typing necesita channelId o recipientId (solo uno)")
        return self


class MessagesReadEvent(BaseModel):
    kind: Literal["messagesRead"] = MESSAGES_READ
    conversation_id: str = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    reader_id: str = Field(validation_alias=AliasChoices("readerId", "reader_id"))

    @field_validator("conversation_id", "reader_id", mode="before")
    @classmethod
    def _required(cls, value: Any, info) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError(f"{info.field_name} vacío")
        return normalized


RealtimeEvent = Union[DirectMessageEvent, ChannelMessageEvent, OnlineUsersEvent, UserTypingEvent, MessagesReadEvent]


def _object(payload: Any, name: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedPayload(f"{name}: se esperaba un objeto, llegó {type(payload).__name__}")
    return payload


def _direct_message(payload: Any) -> DirectMessageEvent:
    message = Message.model_validate(_object(payload, DIRECT_MESSAGE))
    return DirectMessageEvent(message=message.model_copy(update={"scope": MessageScope.DM}))


def _channel_message(payload: Any) -> ChannelMessageEvent:
    message = Message.model_validate(_object(payload, CHANNEL_MESSAGE))
    return ChannelMessageEvent(message=message.model_copy(update={"scope": MessageScope.CHANNEL}))


def _online_users(payload: Any) -> OnlineUsersEvent:
    # Lista plana (protocolo actual) o {seq, users} si el servidor numera los snapshots
    seq = None
    if isinstance(payload, dict):
        seq = payload.get("seq")
        payload = payload.get("users")
    if not isinstance(payload, list):
        raise MalformedPayload(f"{ONLINE_USERS}: se esperaba una lista")
    return OnlineUsersEvent(entries=[PresenceEntry.model_validate(item) for item in payload], seq=seq)


def _user_typing(payload: Any) -> UserTypingEvent:
    return UserTypingEvent.model_validate(_object(payload, USER_TYPING))


def _messages_read(payload: Any) -> MessagesReadEvent:
    return MessagesReadEvent.model_validate(_object(payload, MESSAGES_READ))


DECODERS: Dict[str, Callable[[Any], RealtimeEvent]] = {
    DIRECT_MESSAGE: _direct_message,
    CHANNEL_MESSAGE: _channel_message,
    ONLINE_USERS: _online_users,
    USER_TYPING: _user_typing,
    MESSAGES_READ: _messages_read,
}

INBOUND_EVENTS = tuple(DECODERS)


def decode_event(name: str, payload: Any) -> RealtimeEvent:
    decoder = DECODERS.get(name)
    if decoder is None:
        raise MalformedPayload(f"Evento desconocido: {name}")
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise MalformedPayload(f"{name}: JSON inválido") from e
    try:
        return decoder(payload)
    except ValidationError as e:
        raise MalformedPayload(f"{name}: {e.error_count()} campos inválidos") from e
