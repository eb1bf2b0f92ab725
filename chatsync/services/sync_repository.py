import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from chatsync.core.config import settings
from chatsync.core.errors import AppError, NotFound, Result, Unauthenticated
from chatsync.core.streams import StateStream, Subscription
from chatsync.realtime.connection import RealtimeConnection
from chatsync.realtime.events import (
    ChannelMessageEvent,
    DirectMessageEvent,
    MessagesReadEvent,
    OnlineUsersEvent,
    RealtimeEvent,
)
from chatsync.schemas.api import ChannelPage, ConversationPage, ReactionRequest, SendMessageRequest, TeamMembers
from chatsync.schemas.models import (
    Channel,
    ConnectionState,
    Conversation,
    ConversationView,
    DeliveryState,
    Message,
    MessageKind,
    MessageScope,
    PresenceSnapshot,
    TypingEntry,
    User,
    resolve_other_participant,
    utcnow,
)
from chatsync.services.api_client import ChatApiClient
from chatsync.services.merge import (
    confirm_pending,
    mark_failed,
    mark_read,
    merge_messages,
    touch_conversation,
)
from chatsync.services.session_store import SessionStore

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Selection = Tuple[str, str, int]


class SyncRepository:
    """
    Fuente única de verdad del cliente: mezcla lo que llega por las llamadas
    durables con los eventos push del socket y lo expone como estado reactivo.

    Los comandos nunca lanzan: devuelven un Result (o None en check_auth).
    """

    def __init__(
        self,
        api: ChatApiClient,
        connection: RealtimeConnection,
        session_store: SessionStore,
        page_limit: Optional[int] = None,
    ):
        self.api = api
        self.connection = connection
        self.session_store = session_store
        self.page_limit = page_limit or settings.PAGE_LIMIT

        self.current_user: StateStream[Optional[User]] = StateStream(None)
        self.users: StateStream[List[User]] = StateStream([])
        self.conversations: StateStream[List[ConversationView]] = StateStream([])
        self.channels: StateStream[List[Channel]] = StateStream([])
        self.active_thread: StateStream[Optional[str]] = StateStream(None)
        self.displayed_messages: StateStream[List[Message]] = StateStream([])

        self._threads: Dict[str, StateStream[List[Message]]] = {}
        self._fetched_users: Dict[str, User] = {}
        self._conversations: Dict[str, Conversation] = {}
        # recipient id -> conversation id
        self._dm_threads: Dict[str, str] = {}
        self._selection: Optional[Selection] = None
        self._selection_counter = 0
        # Cada logout invalida los resultados de llamadas en vuelo
        self._epoch = 0

        self._session_lock = asyncio.Lock()
        self._users_lock = asyncio.Lock()
        self._conversations_lock = asyncio.Lock()
        self._channels_lock = asyncio.Lock()

        self._subscription: Optional[Subscription[RealtimeEvent]] = None
        self._consumer: Optional["asyncio.Task[None]"] = None

    # --- Estado proxied desde la conexión ---

    @property
    def connection_state(self) -> StateStream[ConnectionState]:
        return self.connection.state

    @property
    def presence(self) -> StateStream[PresenceSnapshot]:
        return self.connection.presence

    @property
    def typing(self) -> StateStream[Dict[str, TypingEntry]]:
        return self.connection.typing

    @property
    def current_user_id(self) -> Optional[str]:
        user = self.current_user.value
        return user.id if user else None

    def messages(self, thread_id: str) -> StateStream[List[Message]]:
        """Secuencia del hilo; se crea en el primer acceso y vive toda la sesión."""
        stream = self._threads.get(thread_id)
        if stream is None:
            stream = self._threads[thread_id] = StateStream([])
        return stream

    def thread_for_recipient(self, recipient_id: str) -> Optional[str]:
        return self._dm_threads.get(recipient_id)

    @staticmethod
    def provisional_thread(recipient_id: str) -> str:
        """Hilo local para DMs a un destinatario cuya conversación aún no se conoce."""
        return f"draft:{recipient_id}"

    def _session_changed(self, epoch: int, what: str) -> bool:
        if epoch == self._epoch:
            return False
        logger.info("Sesión cerrada durante %s; se descarta el resultado", what)
        return True

    # --- Ciclo de vida ---

    async def start(self) -> None:
        if self._consumer is None:
            self._subscription = self.connection.events.subscribe()
            self._consumer = asyncio.create_task(self._consume(self._subscription))

    async def close(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        await self.connection.disconnect()

    async def _consume(self, subscription: Subscription[RealtimeEvent]) -> None:
        async for event in subscription:
            try:
                self.apply_event(event)
            except Exception:
                logger.exception("Error aplicando evento %s", event.kind)

    # --- Eventos push ---

    def apply_event(self, event: RealtimeEvent) -> None:
        if isinstance(event, DirectMessageEvent):
            self._receive_direct_message(event.message)
        elif isinstance(event, ChannelMessageEvent):
            self._update_thread(event.message.thread_id, lambda seq: merge_messages(seq, [event.message]))
        elif isinstance(event, OnlineUsersEvent):
            self._publish_users()
        elif isinstance(event, MessagesReadEvent):
            self._apply_read(event.conversation_id, event.reader_id)
        # userTyping ya quedó aplicado en la tabla de la conexión

    def _receive_direct_message(self, message: Message) -> None:
        me = self.current_user_id
        thread_id = message.thread_id
        is_new = all(m.id != message.id for m in self.messages(thread_id).value)
        self._update_thread(thread_id, lambda seq: merge_messages(seq, [message]))

        other = message.recipient_id if message.sender_id == me else message.sender_id
        if other:
            self._dm_threads.setdefault(other, thread_id)

        conversation = self._conversations.get(thread_id)
        if conversation is not None:
            count_unread = is_new and message.sender_id != me and self.active_thread.value != thread_id
            self._conversations[thread_id] = touch_conversation(conversation, message, count_unread)
            self._publish_conversations()

    def _apply_read(self, conversation_id: str, reader_id: str) -> None:
        if conversation_id in self._threads:
            self._update_thread(conversation_id, lambda seq: mark_read(seq, reader_id))
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and reader_id == self.current_user_id and conversation.unread_count:
            self._conversations[conversation_id] = conversation.model_copy(update={"unread_count": 0})
            self._publish_conversations()

    # --- Publicación de estado derivado ---

    def _update_thread(self, thread_id: str, fn: Callable[[List[Message]], List[Message]]) -> None:
        stream = self.messages(thread_id)
        stream.set(fn(stream.value))
        if self.active_thread.value == thread_id:
            self.displayed_messages.set(stream.value)

    def _activate(self, thread_id: Optional[str]) -> None:
        self.active_thread.set(thread_id)
        self.displayed_messages.set(self.messages(thread_id).value if thread_id else [])

    def _publish_users(self) -> None:
        snapshot = self.connection.presence.value
        users = list(self._fetched_users.values())
        if snapshot.seq:
            users = [self._with_presence(user, snapshot) for user in users]
        self.users.set(users)
        self._publish_conversations()

    @staticmethod
    def _with_presence(user: User, snapshot: PresenceSnapshot) -> User:
        entry = snapshot.entries.get(user.id)
        if entry is not None:
            return user.model_copy(update={"is_online": True, "status": entry.status})
        if user.is_online:
            return user.model_copy(
                update={"is_online": False, "status": "offline", "last_seen_at": snapshot.received_at}
            )
        return user

    def _publish_conversations(self) -> None:
        me = self.current_user_id
        directory = {user.id: user for user in self.users.value}
        views = [
            ConversationView(conversation=c, other_participant=resolve_other_participant(c, me, directory))
            for c in self._conversations.values()
        ]
        views.sort(key=lambda v: v.conversation.last_activity_at or _EPOCH, reverse=True)
        self.conversations.set(views)

    def _index_conversation(self, conversation: Conversation) -> None:
        other = conversation.other_participant_id(self.current_user_id)
        if other:
            self._dm_threads[other] = conversation.id

    # --- Autenticación ---

    async def check_auth(self) -> Optional[User]:
        async with self._session_lock:
            return await self._check_auth_locked()

    async def _check_auth_locked(self) -> Optional[User]:
        try:
            check = await self.api.check_auth()
        except Unauthenticated as e:
            logger.info("Sin sesión válida: %s", e.message)
            self.current_user.set(None)
            return None
        except AppError as e:
            logger.warning("check_auth falló: %s", e.message)
            return None

        if not check.is_authenticated or check.user is None:
            logger.info("El backend no reconoce la sesión")
            self.current_user.set(None)
            return None

        user = check.user
        self.current_user.set(user)
        self.session_store.save_user_id(user.id)
        for conversation in self._conversations.values():
            self._index_conversation(conversation)
        self._publish_conversations()
        await self.connection.connect(user.id)
        return user

    async def handle_oauth_callback(self, cookie: str) -> Optional[User]:
        """Guarda la cookie entregada por el flujo OAuth externo y valida la sesión."""
        async with self._session_lock:
            self.session_store.save(cookie)
            return await self._check_auth_locked()

    async def restore_session(self) -> Optional[User]:
        if not self.session_store.has_session():
            return None
        return await self.check_auth()

    async def logout(self) -> None:
        async with self._session_lock:
            try:
                await self.api.logout()
            except AppError as e:
                logger.warning("Logout remoto falló (se limpia igual): %s", e.message)
            await self.connection.disconnect()
            self.session_store.clear()
            self._reset()
        logger.info("Sesión cerrada")

    def _reset(self) -> None:
        self._epoch += 1
        self.current_user.set(None)
        self._fetched_users = {}
        self.users.set([])
        self._conversations = {}
        self.conversations.set([])
        self.channels.set([])
        self._dm_threads = {}
        self._selection = None
        self._selection_counter += 1
        self._activate(None)
        for stream in self._threads.values():
            stream.set([])
        self._threads.clear()

    # --- Usuarios ---

    async def fetch_current_user(self) -> Result[User]:
        epoch = self._epoch
        try:
            user = await self.api.get_current_user()
        except AppError as e:
            return Result.failure(e)
        if self._session_changed(epoch, "fetch_current_user"):
            return Result.failure(Unauthenticated())
        if user is None:
            return Result.failure(Unauthenticated())
        self.current_user.set(user)
        self._publish_conversations()
        return Result.success(user)

    async def fetch_users(self) -> Result[List[User]]:
        async with self._users_lock:
            epoch = self._epoch
            try:
                users = await self.api.list_users()
            except AppError as e:
                logger.warning("fetch_users falló, se mantiene la caché: %s", e.message)
                return Result.failure(e)
            if self._session_changed(epoch, "fetch_users"):
                return Result.failure(Unauthenticated())
            self._fetched_users = {user.id: user for user in users}
            self._publish_users()
            return Result.success(self.users.value)

    async def fetch_online_users(self) -> Result[List[User]]:
        try:
            return Result.success(await self.api.list_online_users())
        except AppError as e:
            return Result.failure(e)

    async def search_users(self, query: str) -> Result[List[User]]:
        if not query.strip():
            return Result.success([])
        try:
            return Result.success(await self.api.search_users(query.strip()))
        except AppError as e:
            return Result.failure(e)

    async def fetch_team_members(self) -> Result[TeamMembers]:
        try:
            return Result.success(await self.api.get_team_members())
        except AppError as e:
            return Result.failure(e)

    async def get_user_profile(self, username: str) -> Result[User]:
        try:
            return Result.success(await self.api.get_user_profile(username))
        except AppError as e:
            return Result.failure(e)

    async def update_status(self, status: str) -> Result[None]:
        try:
            await self.api.update_status(status)
        except AppError as e:
            return Result.failure(e)
        return Result.success()

    # --- Conversaciones ---

    async def fetch_conversations(self) -> Result[List[ConversationView]]:
        async with self._conversations_lock:
            epoch = self._epoch
            try:
                conversations = await self.api.list_conversations()
            except AppError as e:
                logger.warning("fetch_conversations falló, se mantiene la caché: %s", e.message)
                return Result.failure(e)
            if self._session_changed(epoch, "fetch_conversations"):
                return Result.failure(Unauthenticated())
            self._conversations = {c.id: c for c in conversations}
            for conversation in conversations:
                self._index_conversation(conversation)
            self._publish_conversations()
            return Result.success(self.conversations.value)

    async def get_conversation(self, recipient_id: str, page: int = 1) -> Result[ConversationPage]:
        """Página de historial; no toca la secuencia en vivo del hilo."""
        epoch = self._epoch
        try:
            conversation_page = await self.api.get_conversation(recipient_id, page, self.page_limit)
        except AppError as e:
            return Result.failure(e)
        if self._session_changed(epoch, "get_conversation"):
            return Result.failure(Unauthenticated())
        self._remember_conversation(recipient_id, conversation_page)
        return Result.success(conversation_page)

    def _remember_conversation(self, recipient_id: str, conversation_page: ConversationPage) -> None:
        if conversation_page.conversation_id:
            self._dm_threads[recipient_id] = conversation_page.conversation_id
        if conversation_page.conversation is not None and conversation_page.conversation.id not in self._conversations:
            self._conversations[conversation_page.conversation.id] = conversation_page.conversation
            self._publish_conversations()

    def _select(self, kind: str, key: str) -> Selection:
        self._selection_counter += 1
        self._selection = (kind, key, self._selection_counter)
        return self._selection

    async def load_messages(self, recipient_id: str, page: int = 1) -> Result[List[Message]]:
        """Activa el hilo con recipient_id y mezcla la página pedida en su secuencia."""
        epoch = self._epoch
        token = self._select("dm", recipient_id)
        self._activate(self._dm_threads.get(recipient_id))
        try:
            conversation_page = await self.api.get_conversation(recipient_id, page, self.page_limit)
        except AppError as e:
            if token == self._selection:
                logger.warning("No se pudieron cargar mensajes de %s: %s", recipient_id, e.message)
            return Result.failure(e)

        if self._session_changed(epoch, "load_messages"):
            return Result.failure(Unauthenticated())
        if token != self._selection:
            logger.info("Descartando página de %s: la selección cambió", recipient_id)
            return Result.success(None)

        self._remember_conversation(recipient_id, conversation_page)
        thread_id = conversation_page.conversation_id
        if thread_id is None:
            self._activate(None)
            return Result.success([])
        self._update_thread(thread_id, lambda seq: merge_messages(seq, conversation_page.messages))
        self._activate(thread_id)
        return Result.success(self.displayed_messages.value)

    # --- Canales ---

    async def fetch_channels(self) -> Result[List[Channel]]:
        async with self._channels_lock:
            epoch = self._epoch
            try:
                channels = await self.api.list_channels()
            except AppError as e:
                logger.warning("fetch_channels falló, se mantiene la caché: %s", e.message)
                return Result.failure(e)
            if self._session_changed(epoch, "fetch_channels"):
                return Result.failure(Unauthenticated())
            self.channels.set(channels)
            return Result.success(channels)

    def _upsert_channel(self, channel: Channel) -> None:
        channels = [c for c in self.channels.value if c.id != channel.id]
        channels.append(channel)
        channels.sort(key=lambda c: c.name or c.slug)
        self.channels.set(channels)

    async def get_channel(self, slug: str, page: int = 1) -> Result[ChannelPage]:
        epoch = self._epoch
        try:
            channel_page = await self.api.get_channel(slug, page, self.page_limit)
        except AppError as e:
            return Result.failure(e)
        if self._session_changed(epoch, "get_channel"):
            return Result.failure(Unauthenticated())
        self._upsert_channel(channel_page.channel)
        return Result.success(channel_page)

    async def load_channel(self, slug: str, page: int = 1) -> Result[List[Message]]:
        epoch = self._epoch
        token = self._select("channel", slug)
        known = next((c.id for c in self.channels.value if c.slug == slug), None)
        self._activate(known)
        try:
            channel_page = await self.api.get_channel(slug, page, self.page_limit)
        except AppError as e:
            return Result.failure(e)

        if self._session_changed(epoch, "load_channel"):
            return Result.failure(Unauthenticated())
        if token != self._selection:
            logger.info("Descartando página del canal %s: la selección cambió", slug)
            return Result.success(None)

        channel = channel_page.channel
        self._upsert_channel(channel)
        self._update_thread(channel.id, lambda seq: merge_messages(seq, channel_page.messages))
        self._activate(channel.id)
        await self.connection.join_channel_room(channel.id)
        return Result.success(self.displayed_messages.value)

    async def join_channel(self, channel_id: str) -> Result[None]:
        try:
            await self.api.join_channel(channel_id)
        except AppError as e:
            logger.warning("join_channel %s falló: %s", channel_id, e.message)
            return Result.failure(e)
        await self.connection.join_channel_room(channel_id)
        await self.fetch_channels()
        return Result.success()

    async def leave_channel(self, channel_id: str) -> Result[None]:
        try:
            await self.api.leave_channel(channel_id)
        except AppError as e:
            logger.warning("leave_channel %s falló: %s", channel_id, e.message)
            return Result.failure(e)
        await self.connection.leave_channel_room(channel_id)
        await self.fetch_channels()
        return Result.success()

    async def join_channel_room(self, channel_id: str) -> bool:
        return await self.connection.join_channel_room(channel_id)

    async def leave_channel_room(self, channel_id: str) -> bool:
        return await self.connection.leave_channel_room(channel_id)

    async def refresh(self) -> Result[None]:
        results = [await self.fetch_users(), await self.fetch_conversations(), await self.fetch_channels()]
        failed = next((r for r in results if not r.ok), None)
        return Result.failure(failed.error) if failed else Result.success()

    # --- Envío ---

    def _optimistic(
        self,
        thread_id: str,
        scope: MessageScope,
        sender_id: str,
        recipient_id: Optional[str],
        request: SendMessageRequest,
    ) -> Message:
        return Message(
            id=f"local-{uuid.uuid4().hex}",
            thread_id=thread_id,
            scope=scope,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=request.content,
            kind=request.kind,
            code_language=request.code_language,
            created_at=utcnow(),
            delivery=DeliveryState.PENDING,
        )

    def _settle(self, local: Optional[Message], local_thread: Optional[str], message: Message) -> None:
        if local is not None and local_thread is not None and local_thread != message.thread_id:
            # El hilo provisional cede el mensaje al hilo real
            self._update_thread(local_thread, lambda seq: [m for m in seq if m.id != local.id])
            self._update_thread(message.thread_id, lambda seq: merge_messages(seq, [message]))
            if self.active_thread.value == local_thread:
                self._activate(message.thread_id)
            return
        if local is not None:
            self._update_thread(message.thread_id, lambda seq: confirm_pending(seq, local.id, message))
        else:
            self._update_thread(message.thread_id, lambda seq: merge_messages(seq, [message]))

    def _thread_for_send(self, recipient_id: str) -> str:
        thread_id = self._dm_threads.get(recipient_id)
        if thread_id is not None:
            return thread_id
        thread_id = self.provisional_thread(recipient_id)
        selection = self._selection
        if self.active_thread.value is None and selection is not None and selection[:2] == ("dm", recipient_id):
            self._activate(thread_id)
        return thread_id

    async def send_direct_message(
        self,
        recipient_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        code_language: Optional[str] = None,
    ) -> Result[Message]:
        me = self.current_user_id
        if me is None:
            return Result.failure(Unauthenticated())
        if not content.strip():
            return Result.failure(AppError("Mensaje vacío", 422))

        request = SendMessageRequest(content=content, kind=kind, code_language=code_language)
        thread_id = self._thread_for_send(recipient_id)
        local = self._optimistic(thread_id, MessageScope.DM, me, recipient_id, request)
        self._update_thread(thread_id, lambda seq: merge_messages(seq, [local]))

        epoch = self._epoch
        try:
            message = await self.api.send_direct_message(recipient_id, request)
        except AppError as e:
            logger.error("Error enviando mensaje a %s: %s", recipient_id, e.message)
            if not self._session_changed(epoch, "send_direct_message"):
                self._update_thread(thread_id, lambda seq: mark_failed(seq, local.id))
            return Result.failure(e)
        if self._session_changed(epoch, "send_direct_message"):
            return Result.failure(Unauthenticated())

        self._dm_threads[recipient_id] = message.thread_id
        self._settle(local, thread_id, message)
        conversation = self._conversations.get(message.thread_id)
        if conversation is not None:
            self._conversations[message.thread_id] = touch_conversation(conversation, message, count_unread=False)
            self._publish_conversations()
        return Result.success(message)

    async def send_channel_message(
        self,
        channel_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        code_language: Optional[str] = None,
    ) -> Result[Message]:
        me = self.current_user_id
        if me is None:
            return Result.failure(Unauthenticated())
        if not content.strip():
            return Result.failure(AppError("Mensaje vacío", 422))

        request = SendMessageRequest(content=content, kind=kind, code_language=code_language)
        local = self._optimistic(channel_id, MessageScope.CHANNEL, me, None, request)
        self._update_thread(channel_id, lambda seq: merge_messages(seq, [local]))

        epoch = self._epoch
        try:
            message = await self.api.send_channel_message(channel_id, request)
        except AppError as e:
            logger.error("Error enviando al canal %s: %s", channel_id, e.message)
            if not self._session_changed(epoch, "send_channel_message"):
                self._update_thread(channel_id, lambda seq: mark_failed(seq, local.id))
            return Result.failure(e)
        if self._session_changed(epoch, "send_channel_message"):
            return Result.failure(Unauthenticated())

        self._settle(local, channel_id, message)
        return Result.success(message)

    async def toggle_reaction(
        self, message_id: str, emoji: str, scope: MessageScope = MessageScope.DM
    ) -> Result[Optional[Message]]:
        epoch = self._epoch
        try:
            message = await self.api.toggle_reaction(message_id, ReactionRequest(emoji=emoji, scope=scope))
        except AppError as e:
            return Result.failure(e)
        if self._session_changed(epoch, "toggle_reaction"):
            return Result.failure(Unauthenticated())
        if message is not None:
            self._update_thread(message.thread_id, lambda seq: merge_messages(seq, [message]))
        return Result.success(message)

    # --- Señales efímeras (best-effort) ---

    async def send_typing(
        self, is_typing: bool, recipient_id: Optional[str] = None, channel_id: Optional[str] = None
    ) -> bool:
        return await self.connection.send_typing(is_typing, recipient_id=recipient_id, channel_id=channel_id)

    async def mark_as_read(self, conversation_id: str, sender_id: str) -> bool:
        me = self.current_user_id
        if me is not None:
            self._apply_read(conversation_id, me)
        return await self.connection.mark_as_read(conversation_id, sender_id)

    def thread_snapshot(self, thread_id: str) -> Result[List[Message]]:
        stream = self._threads.get(thread_id)
        if stream is None:
            return Result.failure(NotFound(f"Hilo {thread_id} no cargado"))
        return Result.success(stream.value)


def build_repository(
    session_store: Optional[SessionStore] = None,
    api: Optional[ChatApiClient] = None,
    connection: Optional[RealtimeConnection] = None,
) -> SyncRepository:
    """Arma el grafo de servicios de una sesión (inyectable en tests)."""
    session_store = session_store or SessionStore(settings.SESSION_STORE_PATH)
    api = api or ChatApiClient(session_store)
    connection = connection or RealtimeConnection(session_store)
    return SyncRepository(api, connection, session_store)
