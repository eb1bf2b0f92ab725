import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import socketio

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Optional[Awaitable[None]]]


class Transport(Protocol):
    """Stream bidireccional de eventos. Una instancia por intento de conexión."""

    @property
    def connected(self) -> bool: ...

    def on(self, event: str, handler: Handler) -> None: ...

    def off(self) -> None: ...

    async def connect(self, url: str, headers: Dict[str, str], timeout: float) -> None: ...

    async def emit(self, event: str, data: Any) -> None: ...

    async def disconnect(self) -> None: ...


TransportFactory = Callable[[], Transport]


class SocketIOTransport:
    """
    Adaptador sobre socketio.AsyncClient. La reconexión propia de socketio
    queda desactivada: la política de reintentos vive en RealtimeConnection.
    """

    def __init__(self) -> None:
        self._client = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._handlers: Dict[str, Handler] = {}

    @property
    def connected(self) -> bool:
        return self._client.connected

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event] = handler

        async def _relay(*args: Any) -> None:
            current = self._handlers.get(event)
            if current is None:
                return
            result = current(args[0] if args else None)
            if result is not None:
                await result

        self._client.on(event, _relay)

    def off(self) -> None:
        # socketio no expone off(); los relays consultan este dict
        self._handlers.clear()

    async def connect(self, url: str, headers: Dict[str, str], timeout: float) -> None:
        await self._client.connect(url, headers=headers, transports=["websocket", "polling"], wait_timeout=timeout)

    async def emit(self, event: str, data: Any) -> None:
        await self._client.emit(event, data)

    async def disconnect(self) -> None:
        await self._client.disconnect()


def socketio_transport_factory() -> Transport:
    return SocketIOTransport()
