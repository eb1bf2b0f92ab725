import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from chatsync.core.config import settings
from chatsync.core.errors import MalformedPayload
from chatsync.core.streams import EventStream, StateStream
from chatsync.realtime.events import (
    INBOUND_EVENTS,
    JOIN,
    JOIN_CHANNEL,
    LEAVE_CHANNEL,
    MARK_AS_READ,
    TYPING,
    OnlineUsersEvent,
    RealtimeEvent,
    UserTypingEvent,
    decode_event,
)
from chatsync.realtime.transport import Transport, TransportFactory, socketio_transport_factory
from chatsync.schemas.models import ConnectionState, PresenceSnapshot, TypingEntry, utcnow
from chatsync.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class RealtimeConnection:
    """
    Un único stream de eventos por usuario autenticado.

    Estados: disconnected -> connecting -> connected -> disconnected, o
    -> error tras agotar los reintentos. Desde error solo se sale con un
    connect() explícito.
    """

    def __init__(
        self,
        session_store: SessionStore,
        url: Optional[str] = None,
        transport_factory: Optional[TransportFactory] = None,
        *,
        reconnect_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        reconnect_delay_max: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        typing_ttl: Optional[float] = None,
    ):
        self.session_store = session_store
        self.url = url or settings.SOCKET_URL
        self._transport_factory = transport_factory or socketio_transport_factory
        self._attempts = max(1, reconnect_attempts if reconnect_attempts is not None else settings.SOCKET_RECONNECT_ATTEMPTS)
        self._delay = reconnect_delay if reconnect_delay is not None else settings.SOCKET_RECONNECT_DELAY
        self._delay_max = reconnect_delay_max if reconnect_delay_max is not None else settings.SOCKET_RECONNECT_DELAY_MAX
        self._timeout = connect_timeout if connect_timeout is not None else settings.SOCKET_CONNECT_TIMEOUT
        self._typing_ttl = typing_ttl if typing_ttl is not None else settings.TYPING_TTL_SECONDS

        self.state: StateStream[ConnectionState] = StateStream(ConnectionState.DISCONNECTED)
        self.presence: StateStream[PresenceSnapshot] = StateStream(PresenceSnapshot())
        self.typing: StateStream[Dict[str, TypingEntry]] = StateStream({})
        self.events: EventStream[RealtimeEvent] = EventStream()

        self._transport: Optional[Transport] = None
        self._user_id: Optional[str] = None
        self._task: Optional["asyncio.Task[None]"] = None
        # Cada disconnect() invalida los intentos en curso
        self._generation = 0
        self._typing_timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_connected(self) -> bool:
        return self.state.value is ConnectionState.CONNECTED and self._transport is not None

    # --- Ciclo de vida ---

    async def connect(self, user_id: str) -> None:
        if self._user_id == user_id:
            if self.is_connected:
                logger.debug("Socket ya conectado para %s", user_id)
                return
            if self._task is not None and not self._task.done():
                await self._wait(self._task)
                return
        if self._user_id is not None or self._transport is not None:
            await self.disconnect()

        self._user_id = user_id
        self._generation += 1
        self._task = asyncio.create_task(self._run_attempts(self._generation))
        await self._wait(self._task)

    async def _wait(self, task: "asyncio.Task[None]") -> None:
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # Un disconnect() concurrente canceló el handshake; quien llamó no
            if task.cancelled():
                return
            raise

    async def disconnect(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        transport, self._transport = self._transport, None
        if transport is not None:
            transport.off()
            await self._close_quietly(transport)

        self._user_id = None
        self._clear_typing()
        self.presence.set(PresenceSnapshot())
        self.state.set(ConnectionState.DISCONNECTED)
        logger.info("🔌 Socket desconectado y limpio")

    async def _run_attempts(self, generation: int) -> None:
        self.state.set(ConnectionState.CONNECTING)
        for attempt in range(1, self._attempts + 1):
            if generation != self._generation:
                return
            transport = self._transport_factory()
            self._bind(transport, generation)
            try:
                await asyncio.wait_for(
                    transport.connect(self.url, self._headers(), self._timeout), timeout=self._timeout
                )
            except asyncio.CancelledError:
                transport.off()
                await self._close_quietly(transport)
                raise
            except Exception as e:
                transport.off()
                await self._close_quietly(transport)
                logger.warning("🔌 Intento %s/%s fallido: %s", attempt, self._attempts, str(e) or type(e).__name__)
                if attempt < self._attempts:
                    await asyncio.sleep(self._backoff(attempt))
                continue

            if generation != self._generation:
                transport.off()
                await self._close_quietly(transport)
                return
            self._transport = transport
            self.presence.set(PresenceSnapshot())
            self.state.set(ConnectionState.CONNECTED)
            logger.info("🔌 Socket conectado (intento %s) para %s", attempt, self._user_id)
            await self._emit(JOIN, self._user_id)
            return

        logger.error("🔌 Reintentos agotados (%s); se requiere connect() explícito", self._attempts)
        self.state.set(ConnectionState.ERROR)

    def _backoff(self, attempt: int) -> float:
        return min(self._delay * (2 ** (attempt - 1)), self._delay_max)

    def _headers(self) -> Dict[str, str]:
        cookie = self.session_store.get()
        return {"Cookie": cookie} if cookie else {}

    def _bind(self, transport: Transport, generation: int) -> None:
        for name in INBOUND_EVENTS:
            transport.on(name, lambda payload, name=name: self._dispatch(name, payload))
        transport.on("disconnect", lambda reason=None: self._handle_drop(transport, generation, reason))

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.disconnect()
        except Exception as e:
            logger.debug("Error cerrando transporte: %s", e)

    def _handle_drop(self, transport: Transport, generation: int, reason: Any) -> None:
        if generation != self._generation or transport is not self._transport:
            return
        logger.warning("🔌 Conexión perdida (%s); reintentando", reason)
        transport.off()
        self._transport = None
        self.state.set(ConnectionState.DISCONNECTED)
        self._task = asyncio.create_task(self._run_attempts(generation))

    # --- Eventos entrantes ---

    def _dispatch(self, name: str, payload: Any) -> None:
        try:
            event = decode_event(name, payload)
        except MalformedPayload as e:
            logger.warning("Evento %s descartado: %s", name, e.message)
            return

        if isinstance(event, OnlineUsersEvent):
            if not self._apply_presence(event):
                return
        elif isinstance(event, UserTypingEvent):
            self._apply_typing(event)
        self.events.publish(event)

    def _apply_presence(self, event: OnlineUsersEvent) -> bool:
        last = self.presence.value.seq
        if event.seq is not None:
            if event.seq <= last:
                logger.debug("Snapshot de presencia %s descartado (último %s)", event.seq, last)
                return False
            seq = event.seq
        else:
            seq = last + 1
        self.presence.set(
            PresenceSnapshot(
                seq=seq,
                entries={entry.user_id: entry for entry in event.entries},
                received_at=utcnow(),
            )
        )
        return True

    def _apply_typing(self, event: UserTypingEvent) -> None:
        sender = event.sender_id
        self._cancel_typing_timer(sender)
        current = dict(self.typing.value)
        if event.is_typing:
            expires_at = None
            if self._typing_ttl > 0:
                expires_at = utcnow() + timedelta(seconds=self._typing_ttl)
                loop = asyncio.get_running_loop()
                self._typing_timers[sender] = loop.call_later(self._typing_ttl, self._expire_typing, sender)
            current[sender] = TypingEntry(
                sender_id=sender,
                channel_id=event.channel_id,
                recipient_id=event.recipient_id,
                expires_at=expires_at,
            )
        else:
            current.pop(sender, None)
        self.typing.set(current)

    def _expire_typing(self, sender: str) -> None:
        self._typing_timers.pop(sender, None)
        if sender in self.typing.value:
            logger.debug("Typing de %s expirado", sender)
            current = dict(self.typing.value)
            current.pop(sender)
            self.typing.set(current)

    def _cancel_typing_timer(self, sender: str) -> None:
        timer = self._typing_timers.pop(sender, None)
        if timer is not None:
            timer.cancel()

    def _clear_typing(self) -> None:
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        self.typing.set({})

    # --- Comandos salientes (best-effort, sin ack) ---

    async def _emit(self, event: str, data: Any) -> bool:
        transport = self._transport
        if transport is None or self.state.value is not ConnectionState.CONNECTED:
            logger.debug("Socket no conectado; se omite %s", event)
            return False
        try:
            await transport.emit(event, data)
        except Exception as e:
            logger.warning("No se pudo emitir %s: %s", event, e)
            return False
        return True

    async def join_channel_room(self, channel_id: str) -> bool:
        return await self._emit(JOIN_CHANNEL, channel_id)

    async def leave_channel_room(self, channel_id: str) -> bool:
        return await self._emit(LEAVE_CHANNEL, channel_id)

    async def send_typing(
        self, is_typing: bool, recipient_id: Optional[str] = None, channel_id: Optional[str] = None
    ) -> bool:
        data: Dict[str, Any] = {"isTyping": is_typing}
        if recipient_id:
            data["recipientId"] = recipient_id
        if channel_id:
            data["channelId"] = channel_id
        return await self._emit(TYPING, data)

    async def mark_as_read(self, conversation_id: str, sender_id: str) -> bool:
        return await self._emit(MARK_AS_READ, {"conversationId": conversation_id, "senderId": sender_id})
