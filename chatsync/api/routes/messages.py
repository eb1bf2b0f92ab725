from typing import List, Optional

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_repository
from chatsync.schemas.api import (
    ConversationPage,
    MarkReadRequest,
    ReactionRequest,
    SendMessageRequest,
    ThreadView,
    TypingRequest,
)
from chatsync.schemas.models import ConversationView, Message
from chatsync.services.sync_repository import SyncRepository

# --------------------------------------------------------------------
# Mensajes directos, de canal y señales efímeras
# --------------------------------------------------------------------
router = APIRouter()


@router.get("/conversations", response_model=List[ConversationView])
async def list_conversations(refresh: bool = False, repo: SyncRepository = Depends(get_repository)):
    if refresh or not repo.conversations.value:
        (await repo.fetch_conversations()).unwrap()
    return repo.conversations.value


@router.get("/dm/{recipient_id}", response_model=ConversationPage)
async def conversation_page(recipient_id: str, page: int = 1, repo: SyncRepository = Depends(get_repository)):
    """Página de historial sin tocar el hilo en vivo."""
    return (await repo.get_conversation(recipient_id, page)).unwrap()


@router.post("/dm/{recipient_id}/open", response_model=ThreadView)
async def open_conversation(recipient_id: str, page: int = 1, repo: SyncRepository = Depends(get_repository)):
    messages = (await repo.load_messages(recipient_id, page)).unwrap()
    return thread_view(repo, messages)


@router.post("/dm/{recipient_id}", response_model=Message)
async def send_direct_message(
    recipient_id: str,
    payload: SendMessageRequest,
    repo: SyncRepository = Depends(get_repository),
):
    result = await repo.send_direct_message(recipient_id, payload.content, payload.kind, payload.code_language)
    return result.unwrap()


@router.post("/channel/{channel_id}", response_model=Message)
async def send_channel_message(
    channel_id: str,
    payload: SendMessageRequest,
    repo: SyncRepository = Depends(get_repository),
):
    result = await repo.send_channel_message(channel_id, payload.content, payload.kind, payload.code_language)
    return result.unwrap()


@router.get("/threads/{thread_id}", response_model=ThreadView)
async def thread(thread_id: str, repo: SyncRepository = Depends(get_repository)):
    messages = repo.thread_snapshot(thread_id).unwrap()
    return ThreadView(thread_id=thread_id, messages=messages)


@router.patch("/reaction/{message_id}", response_model=Optional[Message])
async def toggle_reaction(message_id: str, payload: ReactionRequest, repo: SyncRepository = Depends(get_repository)):
    return (await repo.toggle_reaction(message_id, payload.emoji, payload.scope)).unwrap()


@router.post("/typing")
async def typing(payload: TypingRequest, repo: SyncRepository = Depends(get_repository)):
    sent = await repo.send_typing(payload.is_typing, recipient_id=payload.recipient_id, channel_id=payload.channel_id)
    return {"sent": sent}


@router.post("/read")
async def mark_as_read(payload: MarkReadRequest, repo: SyncRepository = Depends(get_repository)):
    sent = await repo.mark_as_read(payload.conversation_id, payload.sender_id)
    return {"sent": sent}


def thread_view(repo: SyncRepository, messages: Optional[List[Message]]) -> ThreadView:
    # messages=None: la carga quedó obsoleta por otra selección
    if messages is None:
        return ThreadView(thread_id=repo.active_thread.value, messages=repo.displayed_messages.value, superseded=True)
    return ThreadView(thread_id=repo.active_thread.value, messages=messages)
