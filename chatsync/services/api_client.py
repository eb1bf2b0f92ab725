# chatsync/services/api_client.py
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from chatsync.core.config import settings
from chatsync.core.errors import MalformedPayload, NetworkFailure, NotFound, ServerRejected, Unauthenticated
from chatsync.schemas.api import (
    AuthCheck,
    ChannelPage,
    ConversationPage,
    Pagination,
    ReactionRequest,
    SendMessageRequest,
    TeamMembers,
)
from chatsync.schemas.models import Channel, Conversation, Message, MessageScope, User
from chatsync.services.session_store import SessionStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse(model: Type[M], data: Any, what: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error("Respuesta inválida (%s): %s", what, e)
        raise MalformedPayload(f"Respuesta inválida del backend: {what}") from e


def _parse_list(model: Type[M], items: Any, what: str) -> List[M]:
    """Un elemento roto no tumba la lista entera: se descarta y se loguea."""
    if items is None:
        return []
    if not isinstance(items, list):
        raise MalformedPayload(f"Respuesta inválida del backend: {what}")
    out: List[M] = []
    for item in items:
        try:
            out.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning("Descartando %s inválido: %s", what, e)
    return out


def _with_thread(items: Any, key: str, thread_id: Optional[str]) -> Any:
    # Las páginas a veces omiten el id del hilo en cada mensaje
    if not thread_id or not isinstance(items, list):
        return items
    out = []
    for item in items:
        if isinstance(item, dict) and not item.get(key):
            item = {**item, key: thread_id}
        out.append(item)
    return out


def _error_message(resp: httpx.Response) -> str:
    try:
        err = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    if isinstance(err, dict):
        detail = err.get("message") or err.get("error") or err.get("detail")
        if isinstance(detail, dict):
            detail = detail.get("message")
        return str(detail or err)
    return str(err)


class ChatApiClient:
    """
    Operaciones durables contra el backend. Un intento por llamada, sin
    reintentos: quien llama decide. Cada error sale clasificado.
    """

    def __init__(
        self,
        session_store: SessionStore,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_store = session_store
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        cookie = self.session_store.get()
        if not cookie:
            raise Unauthenticated("No hay cookie de sesión guardada")
        return {"Cookie": cookie, "Accept": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        # Sin credencial se falla antes de tocar la red
        headers = self._headers()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Timeout %s %s", method, path)
            raise NetworkFailure(f"Timeout en {method} {path}") from e
        except httpx.TransportError as e:
            logger.error("Error de red %s %s: %s", method, path, e)
            raise NetworkFailure(f"Error de red en {method} {path}: {e}") from e

        if resp.status_code in (401, 403):
            raise Unauthenticated(_error_message(resp))
        if resp.status_code == 404:
            raise NotFound(_error_message(resp))
        if not resp.is_success:
            msg = _error_message(resp)
            logger.error("%s %s error (%s): %s", method, path, resp.status_code, msg)
            raise ServerRejected(msg, resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedPayload(f"JSON inválido en {method} {path}") from e
        if not isinstance(data, dict):
            raise MalformedPayload(f"Se esperaba un objeto JSON en {method} {path}")
        if data.get("success") is False:
            raise ServerRejected(str(data.get("message") or "Operación rechazada"), 400)
        return data

    # --- Auth ---

    async def check_auth(self) -> AuthCheck:
        data = await self._request("GET", "/auth/check")
        return _parse(AuthCheck, data, "auth/check")

    async def get_current_user(self) -> Optional[User]:
        data = await self._request("GET", "/auth/me")
        if not data.get("user"):
            return None
        return _parse(User, data["user"], "auth/me")

    async def logout(self) -> None:
        await self._request("POST", "/auth/logout")

    # --- Usuarios ---

    async def list_users(self) -> List[User]:
        data = await self._request("GET", "/users")
        return _parse_list(User, data.get("users"), "user")

    async def list_online_users(self) -> List[User]:
        data = await self._request("GET", "/users/online")
        return _parse_list(User, data.get("users"), "user")

    async def search_users(self, query: str) -> List[User]:
        data = await self._request("GET", "/users/search", params={"q": query})
        return _parse_list(User, data.get("users"), "user")

    async def get_team_members(self) -> TeamMembers:
        data = await self._request("GET", "/users/team")
        return _parse(TeamMembers, data, "users/team")

    async def get_user_profile(self, username: str) -> User:
        data = await self._request("GET", f"/users/{username}")
        raw = data.get("user")
        # ApiResponse<UserResponse> puede anidar {"user": {"user": {...}}}
        if isinstance(raw, dict) and isinstance(raw.get("user"), dict):
            raw = raw["user"]
        if not raw:
            raise NotFound(f"Usuario {username} no encontrado")
        return _parse(User, raw, "users/{username}")

    async def update_status(self, status: str) -> None:
        await self._request("PATCH", "/users/status", json={"status": status})

    # --- Canales ---

    async def list_channels(self) -> List[Channel]:
        data = await self._request("GET", "/channels")
        return _parse_list(Channel, data.get("channels"), "channel")

    async def get_channel(self, slug: str, page: int = 1, limit: Optional[int] = None) -> ChannelPage:
        data = await self._request(
            "GET", f"/channels/{slug}", params={"page": page, "limit": limit or settings.PAGE_LIMIT}
        )
        detail = data.get("channel")
        if isinstance(detail, dict) and isinstance(detail.get("channel"), dict):
            container, raw_channel = detail, detail["channel"]
        else:
            container, raw_channel = data, detail
        if not isinstance(raw_channel, dict):
            raise MalformedPayload(f"Canal {slug} sin datos")

        channel = _parse(Channel, raw_channel, "channel")
        members = [m for m in raw_channel.get("members") or [] if isinstance(m, dict)]
        messages = _with_thread(container.get("messages"), "channel", channel.id)
        pinned = _with_thread(container.get("pinnedMessages"), "channel", channel.id)
        return ChannelPage(
            channel=channel,
            members=_parse_list(User, members, "member"),
            messages=[
                m.model_copy(update={"scope": MessageScope.CHANNEL})
                for m in _parse_list(Message, messages, "channel message")
            ],
            pinned_messages=[
                m.model_copy(update={"scope": MessageScope.CHANNEL})
                for m in _parse_list(Message, pinned, "pinned message")
            ],
            pagination=_parse(Pagination, container["pagination"], "pagination")
            if isinstance(container.get("pagination"), dict)
            else None,
        )

    async def join_channel(self, channel_id: str) -> None:
        await self._request("POST", f"/channels/{channel_id}/join")

    async def leave_channel(self, channel_id: str) -> None:
        await self._request("POST", f"/channels/{channel_id}/leave")

    # --- Mensajes directos ---

    async def list_conversations(self) -> List[Conversation]:
        data = await self._request("GET", "/messages/dm/conversations")
        return _parse_list(Conversation, data.get("conversations"), "conversation")

    async def get_conversation(self, recipient_id: str, page: int = 1, limit: Optional[int] = None) -> ConversationPage:
        """Trae una página del hilo con recipient_id (el backend lo crea si no existe)."""
        data = await self._request(
            "GET",
            f"/messages/dm/{recipient_id}",
            params={"page": page, "limit": limit or settings.PAGE_LIMIT},
        )
        detail = data.get("conversation")
        if isinstance(detail, dict) and "messages" in detail:
            container, raw_conversation = detail, detail.get("conversation")
        else:
            container, raw_conversation = data, detail

        conversation_id = None
        conversation = None
        if isinstance(raw_conversation, dict):
            conversation_id = str(raw_conversation.get("_id") or raw_conversation.get("id") or "") or None
            try:
                conversation = Conversation.model_validate(raw_conversation)
            except ValidationError:
                logger.debug("Conversación sin participantes completos para %s", recipient_id)
        elif isinstance(raw_conversation, str):
            conversation_id = raw_conversation

        messages = _parse_list(
            Message, _with_thread(container.get("messages"), "conversation", conversation_id), "message"
        )
        if conversation_id is None and messages:
            conversation_id = messages[0].thread_id
        return ConversationPage(
            conversation_id=conversation_id,
            conversation=conversation,
            messages=messages,
            pagination=_parse(Pagination, container["pagination"], "pagination")
            if isinstance(container.get("pagination"), dict)
            else None,
        )

    async def send_direct_message(self, recipient_id: str, payload: SendMessageRequest) -> Message:
        data = await self._request("POST", f"/messages/dm/{recipient_id}", json=payload.to_wire())
        raw = data.get("messageData") or data.get("message") or data.get("data")
        if not isinstance(raw, dict):
            raise MalformedPayload("Respuesta de envío sin mensaje")
        raw = {"receiver": recipient_id, **raw}
        return _parse(Message, raw, "dm message")

    # --- Mensajes de canal ---

    async def send_channel_message(self, channel_id: str, payload: SendMessageRequest) -> Message:
        data = await self._request("POST", f"/messages/channel/{channel_id}", json=payload.to_wire())
        raw = data.get("message") or data.get("messageData") or data.get("data")
        if not isinstance(raw, dict):
            raise MalformedPayload("Respuesta de envío sin mensaje")
        if not raw.get("channel"):
            raw = {**raw, "channel": channel_id}
        message = _parse(Message, raw, "channel message")
        return message.model_copy(update={"scope": MessageScope.CHANNEL})

    async def toggle_reaction(self, message_id: str, payload: ReactionRequest) -> Optional[Message]:
        data = await self._request("PATCH", f"/messages/reaction/{message_id}", json=payload.to_wire())
        raw = data.get("message") or data.get("messageData")
        if not isinstance(raw, dict):
            return None
        try:
            message = Message.model_validate(raw)
        except ValidationError:
            logger.debug("Reacción aplicada, respuesta sin mensaje completo (%s)", message_id)
            return None
        if payload.scope == MessageScope.CHANNEL:
            message = message.model_copy(update={"scope": MessageScope.CHANNEL})
        return message
