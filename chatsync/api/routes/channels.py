from typing import List

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_repository
from chatsync.api.routes.messages import thread_view
from chatsync.schemas.api import ChannelPage, ThreadView
from chatsync.schemas.models import Channel
from chatsync.services.sync_repository import SyncRepository

router = APIRouter()


@router.get("", response_model=List[Channel])
async def list_channels(refresh: bool = False, repo: SyncRepository = Depends(get_repository)):
    if refresh or not repo.channels.value:
        (await repo.fetch_channels()).unwrap()
    return repo.channels.value


@router.get("/{slug}", response_model=ChannelPage)
async def channel_page(slug: str, page: int = 1, repo: SyncRepository = Depends(get_repository)):
    return (await repo.get_channel(slug, page)).unwrap()


@router.post("/{slug}/open", response_model=ThreadView)
async def open_channel(slug: str, page: int = 1, repo: SyncRepository = Depends(get_repository)):
    messages = (await repo.load_channel(slug, page)).unwrap()
    return thread_view(repo, messages)


@router.post("/{channel_id}/join")
async def join_channel(channel_id: str, repo: SyncRepository = Depends(get_repository)):
    (await repo.join_channel(channel_id)).unwrap()
    return {"detail": "ok"}


@router.post("/{channel_id}/leave")
async def leave_channel(channel_id: str, repo: SyncRepository = Depends(get_repository)):
    (await repo.leave_channel(channel_id)).unwrap()
    return {"detail": "ok"}
