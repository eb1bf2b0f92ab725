import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chatsync.api.routes import auth, channels, messages, users
from chatsync.core.config import settings
from chatsync.core.errors import register_exception_handlers
from chatsync.core.logging import configure_logging
from chatsync.services.sync_repository import SyncRepository, build_repository


def create_app(repository: Optional[SyncRepository] = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repo = repository or build_repository()
        app.state.repository = repo
        await repo.start()
        # Si hay cookie guardada, se revalida al arrancar
        restore = asyncio.create_task(repo.restore_session()) if settings.AUTO_RESTORE_SESSION else None
        try:
            yield
        finally:
            if restore is not None and not restore.done():
                restore.cancel()
            await repo.close()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        max_age=3600,
    )

    register_exception_handlers(app)

    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(users.router, prefix="/users", tags=["users"])
    app.include_router(messages.router, prefix="/messages", tags=["messages"])
    app.include_router(channels.router, prefix="/channels", tags=["channels"])

    @app.get("/healthz")
    async def healthz(request: Request) -> dict:
        repo: SyncRepository = request.app.state.repository
        return {
            "status": "ok",
            "connection": repo.connection_state.value.value,
            "authenticated": repo.current_user.value is not None,
            "online_users": len(repo.presence.value.entries),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatsync.main:app", host="127.0.0.1", port=int(settings.PORT), reload=settings.ENV == "development")
