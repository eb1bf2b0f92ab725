import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from chatsync.core.errors import AppError
from chatsync.realtime.connection import RealtimeConnection
from chatsync.schemas.api import AuthCheck, ChannelPage, ConversationPage, ReactionRequest, SendMessageRequest, TeamMembers
from chatsync.schemas.models import Channel, Conversation, Message, MessageScope, User
from chatsync.services.session_store import SessionStore
from chatsync.services.sync_repository import SyncRepository

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def build_message(id: str, thread_id: str = "c1", sender_id: str = "u2", content: str = "hola", seconds: int = 0, **extra) -> Message:
    return Message(
        id=id,
        thread_id=thread_id,
        sender_id=sender_id,
        content=content,
        created_at=BASE_TIME + timedelta(seconds=seconds),
        **extra,
    )


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.handlers: Dict[str, object] = {}
        self.emitted: List[tuple] = []
        self.connected = False
        self.connect_calls = 0
        self.headers: Dict[str, str] = {}

    def on(self, event, handler):
        self.handlers[event] = handler

    def off(self):
        self.handlers.clear()

    async def connect(self, url, headers, timeout):
        self.connect_calls += 1
        self.headers = headers
        if self.fail:
            raise ConnectionError("connection refused")
        self.connected = True

    async def emit(self, event, data):
        self.emitted.append((event, data))

    async def disconnect(self):
        self.connected = False

    def push(self, event, payload):
        handler = self.handlers.get(event)
        if handler is not None:
            handler(payload)

    def drop(self, reason="transport close"):
        self.connected = False
        handler = self.handlers.get("disconnect")
        if handler is not None:
            handler(reason)


class FakeTransportFactory:
    def __init__(self):
        self.created: List[FakeTransport] = []
        self.failures = 0

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail=len(self.created) < self.failures)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]

    def emitted(self, event: str) -> list:
        return [data for t in self.created for (name, data) in t.emitted if name == event]


class FakeApi:
    """Backend en memoria con la misma interfaz que ChatApiClient."""

    def __init__(self):
        self.me = User(id="u1", displayName="Ada", username="ada")
        self.auth = AuthCheck(is_authenticated=True, user=self.me)
        self.users = [
            self.me,
            User(id="u2", displayName="Grace", username="grace"),
            User(id="u3", displayName="Linus", username="linus"),
        ]
        self.conversations = [
            Conversation(id="c1", participant_ids=["u1", "u2"], last_activity_at=BASE_TIME),
        ]
        self.channels = [
            Channel(id="ch1", slug="general", name="general", members=["u1", "u2"], isMember=True),
        ]
        self.pages: Dict[str, ConversationPage] = {}
        self.channel_pages: Dict[str, ChannelPage] = {}
        self.dm_threads = {"u2": "c1", "u3": "c2"}
        self.errors: Dict[str, AppError] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.sent_count = 0

    async def _enter(self, name: str, gate_key: Optional[str] = None) -> None:
        self.calls.append(name)
        gate = self.gates.get(gate_key or name)
        if gate is not None:
            await gate.wait()
        error = self.errors.get(name)
        if error is not None:
            raise error

    async def check_auth(self):
        await self._enter("check_auth")
        return self.auth

    async def get_current_user(self):
        await self._enter("get_current_user")
        return self.me

    async def logout(self):
        await self._enter("logout")

    async def list_users(self):
        await self._enter("list_users")
        return list(self.users)

    async def list_online_users(self):
        await self._enter("list_online_users")
        return [u for u in self.users if u.is_online]

    async def search_users(self, query):
        await self._enter("search_users")
        return [u for u in self.users if query.lower() in u.handle]

    async def get_team_members(self):
        await self._enter("get_team_members")
        return TeamMembers(cofounders=[self.me])

    async def get_user_profile(self, username):
        await self._enter("get_user_profile")
        return next(u for u in self.users if u.handle == username)

    async def update_status(self, status):
        await self._enter("update_status")

    async def list_channels(self):
        await self._enter("list_channels")
        return list(self.channels)

    async def get_channel(self, slug, page=1, limit=None):
        await self._enter("get_channel", gate_key=slug)
        return self.channel_pages[slug]

    async def join_channel(self, channel_id):
        await self._enter("join_channel")

    async def leave_channel(self, channel_id):
        await self._enter("leave_channel")

    async def list_conversations(self):
        await self._enter("list_conversations")
        return list(self.conversations)

    async def get_conversation(self, recipient_id, page=1, limit=None):
        await self._enter("get_conversation", gate_key=recipient_id)
        return self.pages.get(recipient_id) or ConversationPage(conversation_id=self.dm_threads.get(recipient_id))

    def _server_message(self, thread_id: str, payload: SendMessageRequest, scope: MessageScope) -> Message:
        self.sent_count += 1
        return build_message(
            f"m-{self.sent_count}",
            thread_id=thread_id,
            sender_id=self.me.id,
            content=payload.content,
            seconds=100 + self.sent_count,
            scope=scope,
        )

    async def send_direct_message(self, recipient_id, payload):
        await self._enter("send_direct_message")
        return self._server_message(self.dm_threads[recipient_id], payload, MessageScope.DM)

    async def send_channel_message(self, channel_id, payload):
        await self._enter("send_channel_message")
        return self._server_message(channel_id, payload, MessageScope.CHANNEL)

    async def toggle_reaction(self, message_id, payload: ReactionRequest):
        await self._enter("toggle_reaction")
        return None


async def settle(rounds: int = 10) -> None:
    """Deja correr las tareas pendientes del loop (consumidor de eventos)."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(str(tmp_path / "session.json"))


@pytest.fixture
def transports():
    return FakeTransportFactory()


@pytest.fixture
def connection(session_store, transports):
    return RealtimeConnection(
        session_store,
        url="http://chat.test",
        transport_factory=transports,
        reconnect_attempts=5,
        reconnect_delay=0,
        reconnect_delay_max=0,
        connect_timeout=1,
        typing_ttl=0,
    )


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
async def repo(api, connection, session_store):
    session_store.save("connect.sid=abc")
    repository = SyncRepository(api, connection, session_store)
    await repository.start()
    yield repository
    await repository.close()


@pytest.fixture
async def logged_in(repo):
    user = await repo.check_auth()
    assert user is not None
    await repo.fetch_users()
    await repo.fetch_conversations()
    return repo
