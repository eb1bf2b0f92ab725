import logging
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)

T = TypeVar("T")


class AppError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class Unauthenticated(AppError):
    """No hay credencial guardada o el backend la rechazó."""

    def __init__(self, message: str = "No autenticado"):
        super().__init__(message, 401)


class NetworkFailure(AppError):
    """Timeout, DNS, conexión rechazada (el backend puede estar arrancando en frío)."""

    def __init__(self, message: str = "Backend no disponible"):
        super().__init__(message, 503)


class ServerRejected(AppError):
    """Respuesta no-2xx con cuerpo de error del backend."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, status_code)


class MalformedPayload(AppError):
    def __init__(self, message: str = "Payload inválido"):
        super().__init__(message, 502)


class NotFound(AppError):
    def __init__(self, message: str = "No encontrado"):
        super().__init__(message, 404)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Resultado de un comando del repositorio: valor o error clasificado."""

    value: Optional[T] = None
    error: Optional[AppError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AppError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> Optional[T]:
        if self.error is not None:
            raise self.error
        return self.value


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError):
        logger.warning("%s: %s", type(exc).__name__, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_: Request, exc: ValidationError):  # pragma: no cover
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):  # pragma: no cover
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
