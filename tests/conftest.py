import asyncio
import json
from typing import Any, Callable, List, Optional, Union

import pytest

from freshline.realtime.transport import TransportError


@pytest.fixture(scope="session", autouse=True)
def _set_test_env():
    """Reset cached settings so every session starts from the test environment."""

    from freshline.core import settings as settings_module

    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    """In-memory transport session: tests push frames in, inspect frames sent out."""

    def __init__(self, *, auto_pong: bool = False) -> None:
        self.sent: List[str] = []
        self.auto_pong = auto_pong
        self.fail_send = False
        self._inbox: "asyncio.Queue[Optional[Union[str, bytes]]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_text(self, data: str) -> None:
        if self._closed or self.fail_send:
            raise TransportError("session is not writable")
        self.sent.append(data)
        if self.auto_pong and json.loads(data).get("type") == "ping":
            self.feed({"type": "pong"})

    async def receive(self) -> Optional[Union[str, bytes]]:
        if self._closed and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._inbox.put_nowait(None)

    def feed(self, frame: Any) -> None:
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._inbox.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the remote end closing the session."""

        self._closed = True
        self._inbox.put_nowait(None)

    def sent_messages(self) -> List[dict]:
        return [json.loads(item) for item in self.sent]

    def sent_types(self) -> List[str]:
        return [message["type"] for message in self.sent_messages()]


class FakeConnector:
    """Hands out scripted outcomes (sessions or exceptions); refuses once exhausted."""

    def __init__(self, outcomes: Optional[List[Any]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls = 0
        self.urls: List[str] = []
        self.sessions: List[FakeSession] = []

    async def __call__(self, url: str) -> FakeSession:
        self.calls += 1
        self.urls.append(url)
        if not self.outcomes:
            raise TransportError("connection refused")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        self.sessions.append(outcome)
        return outcome


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_session() -> Callable[..., FakeSession]:
    return FakeSession


@pytest.fixture
def make_connector() -> Callable[..., FakeConnector]:
    return FakeConnector


@pytest.fixture
def eventually():
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _eventually
