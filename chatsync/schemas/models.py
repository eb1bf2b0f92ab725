from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ref_id(value: Any) -> Optional[str]:
    """Acepta un id plano o un objeto poblado ({_id|id: ...})."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("_id", value.get("id"))
        if value is None:
            return None
    value = str(value).strip()
    return value or None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MessageKind(str, Enum):
    TEXT = "text"
    CODE = "code"
    IMAGE = "image"
    FILE = "file"


class MessageScope(str, Enum):
    DM = "dm"
    CHANNEL = "channel"


class DeliveryState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ChannelType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class User(WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id", "uid"))
    display_name: str = Field("", validation_alias=AliasChoices("displayName", "display_name"))
    handle: str = Field("", validation_alias=AliasChoices("username", "handle"))
    avatar_url: str = Field("", validation_alias=AliasChoices("avatar", "avatarUrl", "avatar_url"))
    role: str = "member"
    is_online: bool = Field(False, validation_alias=AliasChoices("isOnline", "is_online"))
    status: str = "offline"
    last_seen_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("lastSeen", "lastSeenAt", "last_seen_at")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError("user id vacío")
        return normalized

    @field_validator("display_name", "handle", "avatar_url", "role", "status", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any, info) -> Any:
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("last_seen_at", mode="before")
    @classmethod
    def _blank_timestamp(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("last_seen_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def name(self) -> str:
        return self.display_name or self.handle or self.id


class Reaction(WireModel):
    emoji: str
    user_ids: List[str] = Field(default_factory=list, validation_alias=AliasChoices("users", "userIds", "user_ids"))

    @field_validator("user_ids", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> List[str]:
        return [uid for uid in (ref_id(v) for v in (value or [])) if uid]


class Message(WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    thread_id: str
    scope: MessageScope = MessageScope.DM
    sender_id: str
    recipient_id: Optional[str] = None
    content: str = ""
    kind: MessageKind = Field(MessageKind.TEXT, validation_alias=AliasChoices("messageType", "kind"))
    code_language: Optional[str] = Field(None, validation_alias=AliasChoices("codeLanguage", "code_language"))
    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "created_at"))
    updated_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("updatedAt", "updated_at"))
    delivered: bool = False
    read: bool = False
    edited_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("editedAt", "edited_at"))
    deleted_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("deletedAt", "deleted_at"))
    is_pinned: bool = Field(False, validation_alias=AliasChoices("isPinned", "is_pinned"))
    reactions: List[Reaction] = Field(default_factory=list)
    # Solo local: estado del envío optimista
    delivery: DeliveryState = DeliveryState.CONFIRMED

    @model_validator(mode="before")
    @classmethod
    def _normalize_wire(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "thread_id" not in data:
            channel = ref_id(data.get("channel") or data.get("channelId"))
            conversation = ref_id(data.get("conversation") or data.get("conversationId"))
            if channel:
                data["thread_id"] = channel
                data.setdefault("scope", MessageScope.CHANNEL)
            elif conversation:
                data["thread_id"] = conversation
        if "sender_id" not in data:
            data["sender_id"] = ref_id(data.get("sender") or data.get("senderId"))
        if "recipient_id" not in data:
            data["recipient_id"] = ref_id(data.get("receiver") or data.get("recipientId"))
        if data.get("content") is None:
            data["content"] = ""
        return data

    @field_validator("id", "thread_id", "sender_id", mode="before")
    @classmethod
    def _required_ref(cls, value: Any, info) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError(f"{info.field_name} vacío")
        return normalized

    @field_validator("kind", mode="before")
    @classmethod
    def _known_kind(cls, value: Any) -> Any:
        try:
            return MessageKind(value)
        except ValueError:
            return MessageKind.TEXT

    @field_validator("updated_at", "edited_at", "deleted_at", mode="before")
    @classmethod
    def _blank_timestamps(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("created_at", "updated_at", "edited_at", "deleted_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def display_content(self) -> Optional[str]:
        return None if self.is_deleted else self.content

    @property
    def version(self) -> datetime:
        stamps = [s for s in (self.updated_at, self.edited_at, self.deleted_at) if s is not None]
        return max([self.created_at, *stamps])

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)


class Conversation(WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id", "chatId"))
    participant_ids: List[str]
    last_message_preview: str = ""
    last_activity_at: Optional[datetime] = None
    unread_count: int = Field(0, validation_alias=AliasChoices("unreadCount", "unread_count"))

    @model_validator(mode="before")
    @classmethod
    def _normalize_wire(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "participant_ids" not in data:
            raw = data.get("participants") or data.get("participantIds") or []
            data["participant_ids"] = [ref_id(p) for p in raw]
        if "last_message_preview" not in data:
            last = data.get("lastMessagePreview", data.get("lastMessage"))
            if isinstance(last, dict):
                last = last.get("content")
            data["last_message_preview"] = last or ""
        if "last_activity_at" not in data:
            data["last_activity_at"] = _blank_to_none(
                data.get("lastActivityAt")
                or data.get("lastMessageAt")
                or data.get("lastMessageTimestamp")
                or data.get("updatedAt")
            )
        if data.get("unreadCount") is None and data.get("unread_count") is None:
            data.pop("unreadCount", None)
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError("conversation id vacío")
        return normalized

    @field_validator("participant_ids")
    @classmethod
    def _two_participants(cls, value: List[Optional[str]]) -> List[str]:
        ids = [v for v in value if v]
        if len(ids) != 2 or len(set(ids)) != 2:
            raise ValueError("una conversación necesita exactamente dos participantes distintos")
        return ids

    @field_validator("last_activity_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def other_participant_id(self, current_user_id: Optional[str]) -> Optional[str]:
        others = [pid for pid in self.participant_ids if pid != current_user_id]
        return others[0] if len(others) == 1 else None


class ConversationView(BaseModel):
    conversation: Conversation
    other_participant: Optional[User] = None

    @property
    def id(self) -> str:
        return self.conversation.id


def resolve_other_participant(
    conversation: Conversation,
    current_user_id: Optional[str],
    directory: Mapping[str, User],
) -> Optional[User]:
    other_id = conversation.other_participant_id(current_user_id)
    if other_id is None:
        return None
    return directory.get(other_id)


class Channel(WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    slug: str
    name: str = ""
    description: str = ""
    type: ChannelType = ChannelType.PUBLIC
    member_ids: Set[str] = Field(default_factory=set, validation_alias=AliasChoices("members", "memberIds", "member_ids"))
    admin_ids: Set[str] = Field(default_factory=set, validation_alias=AliasChoices("admins", "adminIds", "admin_ids"))
    is_member: bool = Field(False, validation_alias=AliasChoices("isMember", "is_member"))
    is_admin: bool = Field(False, validation_alias=AliasChoices("isAdmin", "is_admin"))
    member_count: int = Field(0, validation_alias=AliasChoices("memberCount", "member_count"))
    last_activity_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("lastActivity", "lastActivityAt", "last_activity_at")
    )

    @field_validator("id", "slug", mode="before")
    @classmethod
    def _required(cls, value: Any, info) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError(f"channel {info.field_name} vacío")
        return normalized

    @field_validator("member_ids", "admin_ids", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Set[str]:
        return {uid for uid in (ref_id(v) for v in (value or [])) if uid}

    @field_validator("last_activity_at", mode="before")
    @classmethod
    def _blank_timestamp(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("last_activity_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @model_validator(mode="after")
    def _admins_are_members(self) -> "Channel":
        # Un admin siempre es miembro
        if not self.admin_ids <= self.member_ids:
            self.member_ids = self.member_ids | self.admin_ids
        if self.member_count < len(self.member_ids):
            self.member_count = len(self.member_ids)
        return self


class PresenceEntry(WireModel):
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"))
    status: str = "online"
    joined_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("joinedAt", "joined_at"))

    @field_validator("user_id", mode="before")
    @classmethod
    def _required(cls, value: Any) -> str:
        normalized = ref_id(value)
        if not normalized:
            raise ValueError("userId vacío")
        return normalized

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> Any:
        return value or "online"

    @field_validator("joined_at", mode="before")
    @classmethod
    def _blank_timestamp(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("joined_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class PresenceSnapshot(BaseModel):
    seq: int = 0
    entries: Dict[str, PresenceEntry] = Field(default_factory=dict)
    received_at: Optional[datetime] = None


class TypingEntry(BaseModel):
    sender_id: str
    channel_id: Optional[str] = None
    recipient_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _single_target(self) -> "TypingEntry":
        if (self.channel_id is None) == (self.recipient_id is None):
            raise ValueError("typing necesita channelId o recipientId (solo uno)")
        return self
