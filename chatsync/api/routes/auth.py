import logging

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_repository, require_user
from chatsync.core.errors import Unauthenticated
from chatsync.schemas.api import SessionRequest
from chatsync.schemas.models import User
from chatsync.services.sync_repository import SyncRepository

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/session", response_model=User)
async def create_session(
    payload: SessionRequest,
    repo: SyncRepository = Depends(get_repository),
):
    """
    Recibe la cookie capturada al final del flujo OAuth (WebView) y abre la
    sesión: la guarda, valida contra el backend y conecta el socket.
    """
    user = await repo.handle_oauth_callback(payload.cookie)
    if user is None:
        raise Unauthenticated("Autenticación fallida, intenta de nuevo")
    return user


@router.post("/check", response_model=User)
async def check(repo: SyncRepository = Depends(get_repository)):
    user = await repo.check_auth()
    if user is None:
        raise Unauthenticated()
    return user


@router.get("/me", response_model=User)
async def me(user: User = Depends(require_user)):
    return user


@router.post("/logout")
async def logout(repo: SyncRepository = Depends(get_repository)):
    await repo.logout()
    return {"detail": "ok"}
