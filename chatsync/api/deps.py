from fastapi import Depends, Request

from chatsync.core.errors import Unauthenticated
from chatsync.schemas.models import User
from chatsync.services.sync_repository import SyncRepository


def get_repository(request: Request) -> SyncRepository:
    return request.app.state.repository


def require_user(repo: SyncRepository = Depends(get_repository)) -> User:
    user = repo.current_user.value
    if user is None:
        raise Unauthenticated()
    return user
