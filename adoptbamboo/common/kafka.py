"""In-process stand-ins for the Kafka producer/consumer used for domain events."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

Handler = Callable[[dict[str, Any]], Awaitable[None]]


class _InMemoryBroker:
    """Fan-out dispatcher shared by the producer and consumer stubs."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(topic, None)

    async def publish(self, topic: str, message: dict[str, Any]) -> None:
        for handler in list(self._subscribers.get(topic, [])):
            await handler(message)


_BROKER = _InMemoryBroker()


class KafkaProducerStub:
    """Producer placeholder; messages are delivered to in-process subscribers."""

    def __init__(self, **_kwargs: Any) -> None:
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def send(self, topic: str, value: dict[str, Any], *, key: str | None = None) -> None:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        message = dict(value)
        if key is not None:
            message.setdefault("key", key)
        await _BROKER.publish(topic, message)

    async def close(self) -> None:
        self._connected = False


class KafkaConsumerStub:
    """Consumer placeholder used by local tooling and tests to observe events."""

    def __init__(
        self,
        topics: Sequence[str],
        handler: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> None:
        self._topics = list(topics)
        self._handler = handler
        self._registrations: list[tuple[str, Handler]] = []

    async def start(self) -> None:
        if self._registrations:
            return
        for topic in self._topics:
            async def _callback(message: dict[str, Any], current_topic: str = topic) -> None:
                await self._handler(current_topic, message)

            _BROKER.subscribe(topic, _callback)
            self._registrations.append((topic, _callback))

    async def stop(self) -> None:
        for topic, callback in self._registrations:
            _BROKER.unsubscribe(topic, callback)
        self._registrations.clear()
