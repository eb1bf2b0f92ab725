from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field

from chatsync.schemas.models import Channel, Conversation, Message, MessageKind, MessageScope, User, WireModel


class AuthCheck(WireModel):
    is_authenticated: bool = Field(False, validation_alias=AliasChoices("isAuthenticated", "is_authenticated"))
    user: Optional[User] = None


class Pagination(WireModel):
    page: int = 1
    limit: int = 50
    total: int = 0
    pages: int = Field(0, validation_alias=AliasChoices("pages", "totalPages"))
    has_more: bool = Field(False, validation_alias=AliasChoices("hasMore", "has_more"))


class ConversationPage(BaseModel):
    conversation_id: Optional[str] = None
    conversation: Optional[Conversation] = None
    messages: List[Message] = Field(default_factory=list)
    pagination: Optional[Pagination] = None


class ChannelPage(BaseModel):
    channel: Channel
    members: List[User] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    pinned_messages: List[Message] = Field(default_factory=list)
    pagination: Optional[Pagination] = None


class TeamMembers(WireModel):
    cofounders: List[User] = Field(default_factory=list)
    core_team: List[User] = Field(default_factory=list, validation_alias=AliasChoices("coreTeam", "core_team"))


class SendMessageRequest(BaseModel):
    content: str
    kind: MessageKind = MessageKind.TEXT
    code_language: Optional[str] = None

    def to_wire(self) -> dict:
        body = {"content": self.content, "messageType": self.kind.value}
        if self.code_language:
            body["codeLanguage"] = self.code_language
        return body


class ReactionRequest(BaseModel):
    emoji: str
    scope: MessageScope = MessageScope.DM

    def to_wire(self) -> dict:
        return {"emoji": self.emoji, "messageType": self.scope.value}


class UpdateStatusRequest(BaseModel):
    status: str  # online, offline, away, busy


class SessionRequest(BaseModel):
    cookie: str


class TypingRequest(BaseModel):
    is_typing: bool
    recipient_id: Optional[str] = None
    channel_id: Optional[str] = None


class MarkReadRequest(BaseModel):
    conversation_id: str
    sender_id: str


class ThreadView(BaseModel):
    thread_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    superseded: bool = False
