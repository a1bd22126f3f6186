"""Pytest configuration, fakes and helpers."""

import asyncio
import itertools
import json
import re
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import aio_pika
import httpx
import pytest
import pytest_asyncio

from visit_relay.dedup import MemoryDedupWindow
from visit_relay.errors import BrokerUnavailableError
from visit_relay.filters import build_pattern
from visit_relay.poller import VisitPoller

TARGET_PREFIX = "https://www.example.com/domestic-flights"
FLIGHT_URL = f"{TARGET_PREFIX}/123"
OTHER_URL = "https://other.example.com/x"

_ids = itertools.count(1)


def create_test_visit(
    visit_id: str | None = None,
    visitor_id: str = "v1",
    user_id: str | None = "u1",
    urls: list[Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Create a visit dictionary shaped like a Matomo Live API item."""
    if urls is None:
        urls = [FLIGHT_URL]
    return {
        "id": visit_id or f"visit-{next(_ids)}",
        "visitorId": visitor_id,
        "userId": user_id,
        "actionDetails": [{"url": url, "type": "action"} for url in urls],
        "serverDate": "2026-10-19",
        **extra,
    }


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until true, failing the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


class FakeClock:
    """Deterministic clock; each call returns the current value."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakePublisher:
    """Stands in for BrokerConnection.publish."""

    def __init__(self) -> None:
        self.bodies: list[bytes] = []
        self.fail_after: int | None = None

    async def publish(self, body: bytes) -> None:
        if self.fail_after is not None and len(self.bodies) >= self.fail_after:
            raise BrokerUnavailableError("Channel RabbitMQ tidak tersedia")
        self.bodies.append(body)

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(body) for body in self.bodies]


class FakeStore:
    """In-memory raw visit store; visitor ids in fail_for raise on insert."""

    def __init__(self) -> None:
        self.saved: list[dict[str, Any]] = []
        self.fail_for: set[str] = set()

    async def create_raw_event(
        self,
        visitor_id: str | None,
        user_id: str | None,
        action_details: Any,
        visit_info: dict[str, Any],
    ) -> dict[str, Any]:
        if visitor_id in self.fail_for:
            raise RuntimeError(f"insert failed for {visitor_id}")
        record = {
            "visitorId": visitor_id,
            "userId": user_id,
            "actionDetails": action_details,
            "visitInfo": visit_info,
        }
        self.saved.append(record)
        return record


class MatomoStub:
    """httpx MockTransport handler that serves queued Matomo responses."""

    def __init__(self) -> None:
        self.responses: list[httpx.Response | Exception] = []
        self.requests: list[httpx.Request] = []

    def queue(self, payload: Any, status_code: int = 200) -> None:
        self.responses.append(httpx.Response(status_code, json=payload))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def form(self, index: int = -1) -> dict[str, str]:
        pairs = httpx.QueryParams(self.requests[index].content.decode())
        return dict(pairs.items())


class FakeIncomingMessage:
    """Minimal aio-pika incoming message recording settle calls."""

    def __init__(self, body: bytes | dict[str, Any] | list[Any]) -> None:
        self.body: bytes = body if isinstance(body, bytes) else json.dumps(body).encode()
        self.acks: int = 0
        self.rejects: list[bool] = []

    async def ack(self, multiple: bool = False) -> None:
        self.acks += 1

    async def reject(self, requeue: bool = False) -> None:
        self.rejects.append(requeue)


class FakeCallbacks:
    """Mimics aio-pika CallbackCollection: callbacks get (sender, *args)."""

    def __init__(self, sender: Any) -> None:
        self._sender = sender
        self._callbacks: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any], weak: bool = False) -> None:
        self._callbacks.append(callback)

    def fire(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            callback(self._sender, *args)


class FakeQueue:
    def __init__(self, name: str, durable: bool) -> None:
        self.name = name
        self.durable = durable
        self.bindings: list[tuple[Any, str]] = []
        self.consumers: list[Callable[..., Any]] = []

    async def bind(self, exchange: Any, routing_key: str = "") -> None:
        self.bindings.append((exchange, routing_key))

    async def consume(self, callback: Callable[..., Any]) -> str:
        self.consumers.append(callback)
        return f"ctag-{len(self.consumers)}"


class FakeExchange:
    def __init__(self, name: str, type_: Any, durable: bool) -> None:
        self.name = name
        self.type = type_
        self.durable = durable
        self.published: list[tuple[Any, str]] = []

    async def publish(self, message: Any, routing_key: str) -> None:
        self.published.append((message, routing_key))


class FakeChannel:
    def __init__(self) -> None:
        self.is_closed = False
        self.close_callbacks = FakeCallbacks(self)
        self.exchanges: dict[str, FakeExchange] = {}
        self.queues: dict[str, FakeQueue] = {}

    async def declare_exchange(
        self, name: str, type_: Any = None, durable: bool = False
    ) -> FakeExchange:
        exchange = FakeExchange(name, type_, durable)
        self.exchanges[name] = exchange
        return exchange

    async def declare_queue(self, name: str, durable: bool = False) -> FakeQueue:
        queue = self.queues.get(name) or FakeQueue(name, durable)
        self.queues[name] = queue
        return queue

    async def close(self) -> None:
        self.is_closed = True
        self.close_callbacks.fire(None)


class FakeConnection:
    def __init__(self) -> None:
        self.is_closed = False
        self.close_callbacks = FakeCallbacks(self)
        self.channels: list[FakeChannel] = []

    async def channel(self) -> FakeChannel:
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True
        self.close_callbacks.fire(None)

    def drop(self, exc: Exception) -> None:
        """Simulate the broker dropping the connection."""
        self.is_closed = True
        for channel in self.channels:
            channel.is_closed = True
        self.close_callbacks.fire(exc)


class FakeAmqp:
    """Replacement for aio_pika.connect; fails the first `failures` calls."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.connections: list[FakeConnection] = []

    async def connect(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls += 1
        await asyncio.sleep(0)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


@pytest.fixture
def fake_amqp(monkeypatch: pytest.MonkeyPatch) -> FakeAmqp:
    """Patch aio_pika.connect with an in-memory fake broker."""
    fake = FakeAmqp()
    monkeypatch.setattr(aio_pika, "connect", fake.connect)
    return fake


@pytest.fixture
def pattern() -> re.Pattern[str]:
    return build_pattern(TARGET_PREFIX)


@pytest.fixture
def matomo() -> MatomoStub:
    return MatomoStub()


@pytest_asyncio.fixture
async def http_client(matomo: MatomoStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client whose requests are answered by the Matomo stub."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(matomo)) as client:
        yield client


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(
    http_client: httpx.AsyncClient,
    publisher: FakePublisher,
    store: FakeStore,
    clock: FakeClock,
    pattern: re.Pattern[str],
) -> VisitPoller:
    return VisitPoller(
        broker=publisher,  # pyright: ignore[reportArgumentType]
        store=store,
        window=MemoryDedupWindow(capacity=1000),
        client=http_client,
        pattern=pattern,
        interval_minutes=2,
        clock=clock,
    )
