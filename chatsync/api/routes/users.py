from typing import List

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_repository
from chatsync.schemas.api import TeamMembers, UpdateStatusRequest
from chatsync.schemas.models import User
from chatsync.services.sync_repository import SyncRepository

router = APIRouter()


@router.get("", response_model=List[User])
async def list_users(refresh: bool = False, repo: SyncRepository = Depends(get_repository)):
    if refresh or not repo.users.value:
        (await repo.fetch_users()).unwrap()
    return repo.users.value


@router.get("/online", response_model=List[User])
async def online_users(repo: SyncRepository = Depends(get_repository)):
    return (await repo.fetch_online_users()).unwrap()


@router.get("/search", response_model=List[User])
async def search_users(q: str, repo: SyncRepository = Depends(get_repository)):
    return (await repo.search_users(q)).unwrap()


@router.get("/team", response_model=TeamMembers)
async def team_members(repo: SyncRepository = Depends(get_repository)):
    return (await repo.fetch_team_members()).unwrap()


@router.patch("/status")
async def update_status(payload: UpdateStatusRequest, repo: SyncRepository = Depends(get_repository)):
    (await repo.update_status(payload.status)).unwrap()
    return {"detail": "ok"}


@router.get("/{username}", response_model=User)
async def user_profile(username: str, repo: SyncRepository = Depends(get_repository)):
    return (await repo.get_user_profile(username)).unwrap()
