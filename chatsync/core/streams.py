"""Estado reactivo y flujos de eventos multi-suscriptor sobre asyncio.

``StateStream`` guarda el último valor, lo entrega al suscribirse y luego
entrega solo el más reciente (conflación).
``EventStream`` reparte cada evento publicado a todos los suscriptores
registrados, sin reproducir eventos anteriores.
"""
import asyncio
from typing import AsyncIterator, Generic, Set, TypeVar

T = TypeVar("T")


class StateStream(Generic[T]):
    def __init__(self, initial: T):
        self._value = initial
        self._subscribers: Set["asyncio.Queue[T]"] = set()

    @property
    def value(self) -> T:
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(value)

    async def subscribe(self) -> AsyncIterator[T]:
        queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=1)
        self._subscribers.add(queue)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)


class Subscription(Generic[T]):
    def __init__(self, stream: "EventStream[T]"):
        self._stream = stream
        self._queue: "asyncio.Queue[T]" = asyncio.Queue()

    def _push(self, item: T) -> None:
        self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> T:
        return await self._queue.get()

    def close(self) -> None:
        self._stream._subscribers.discard(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self._queue.get()


class EventStream(Generic[T]):
    def __init__(self) -> None:
        self._subscribers: Set[Subscription[T]] = set()

    def subscribe(self) -> Subscription[T]:
        # Registro inmediato: no se pierden eventos publicados antes del primer await
        sub: Subscription[T] = Subscription(self)
        self._subscribers.add(sub)
        return sub

    def publish(self, item: T) -> None:
        for sub in list(self._subscribers):
            sub._push(item)
