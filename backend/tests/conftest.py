"""Shared test fixtures for backend tests.

Provides an in-memory Redis stand-in, a controllable clock, a prompt-routing
mock LLM client and helpers that build generation services with generous rate
limits, so tests never touch real Redis or LLM APIs.
"""

import sys
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from agents.decomposer import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.generation import GenerationService  # noqa: E402
from agents.utils import LLMClient, LLMResponse, MockLLMClient, make_llm_response  # noqa: E402
from background import BackgroundTasks  # noqa: E402
from config import ProviderLimit  # noqa: E402
from events.bus import EventBus  # noqa: E402
from events.types import EventType, OrchestrationEvent  # noqa: E402
from rate_limiter import DistributedRateLimiter  # noqa: E402

# Markers that identify each prompt template.
DECOMPOSE_MARKER = "project planner"
REVIEW_MARKER = "lead code verifier"
FIX_MARKER = "failed validation"
MERGE_MARKER = "code merger"
FAST_MARKER = "senior React engineer"

# ---------------------------------------------------------------------------
# Clock and Redis
# ---------------------------------------------------------------------------


class FakeClock:
    """Millisecond wall clock that only moves when told to."""

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class FakeRedis:
    """The subset of ``redis.asyncio.Redis`` the rate limiter uses.

    Values are stored as strings like a client created with
    ``decode_responses=True``. Key expiry follows the injected clock. Set
    ``fail = True`` to make every command raise a connection error.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    def _live(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    async def get(self, key: str) -> str | None:
        self._check()
        return self._data[key] if self._live(key) else None

    async def set(
        self,
        key: str,
        value: Any,
        px: int | None = None,
        nx: bool = False,
    ) -> bool | None:
        self._check()
        if nx and self._live(key):
            return None
        self._data[key] = str(value)
        if px is not None:
            self._expires[key] = self._clock() + px
        else:
            self._expires.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self._data[key]) + 1 if self._live(key) else 1
        self._data[key] = str(value)
        return value

    async def decr(self, key: str) -> int:
        self._check()
        value = int(self._data[key]) - 1 if self._live(key) else -1
        self._data[key] = str(value)
        return value

    async def pexpire(self, key: str, ms: int, nx: bool = False) -> bool:
        self._check()
        if not self._live(key):
            return False
        if nx and key in self._expires:
            return False
        self._expires[key] = self._clock() + ms
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        return await self.pexpire(key, seconds * 1000)

    async def aclose(self) -> None:
        return None


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


# ---------------------------------------------------------------------------
# Event Bus and background tasks
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


@pytest.fixture()
def background() -> BackgroundTasks:
    return BackgroundTasks()


def event_types(event_bus: EventBus, job_id: str) -> list[EventType]:
    """Types of every event recorded for ``job_id``, in order."""
    return [event.type for event in event_bus.get_event_history(job_id)]


def events_of(event_bus: EventBus, job_id: str, event_type: EventType) -> list[OrchestrationEvent]:
    return [e for e in event_bus.get_event_history(job_id) if e.type == event_type]


# ---------------------------------------------------------------------------
# RoutingMockLLMClient
# ---------------------------------------------------------------------------

Route = str | list[str] | Exception | Callable[[str], Awaitable[str]]


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes responses by a marker found in the prompt.

    Parallel tasks share one client, and asyncio interleaving makes call
    order non-deterministic, so responses are picked by the first marker
    (in insertion order) contained in the user prompt.

    Args:
        routes: Marker to route. A string is returned on every call, a list
            is consumed in order (its last item repeats), an exception is
            raised, and an async callable receives the prompt and returns
            the reply.
        default: Reply for prompts that match no marker.
    """

    def __init__(
        self,
        routes: dict[str, Route],
        default: str = "NO_CHANGES",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.routes: dict[str, Route] = {
            marker: list(route) if isinstance(route, list) else route
            for marker, route in routes.items()
        }
        self.default = default

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        job_id: str | None = None,
    ) -> LLMResponse:
        prompt = messages[-1]["content"]
        self.call_history.append({
            "messages": messages,
            "prompt": prompt,
            "model": model,
            "temperature": temperature,
        })

        route = next(
            (route for marker, route in self.routes.items() if marker in prompt),
            None,
        )
        if route is None:
            return make_llm_response(self.default)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, list):
            content = route.pop(0) if len(route) > 1 else route[0]
        elif callable(route):
            content = await route(prompt)
        else:
            content = route
        return make_llm_response(content)

    def prompts_matching(self, marker: str) -> list[str]:
        return [call["prompt"] for call in self.call_history if marker in call["prompt"]]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

GENEROUS_LIMITS = {"default": ProviderLimit(max_rpm=10_000, max_concurrent=100)}


def make_generation(
    llm_client: LLMClient,
    admission_timeout_seconds: float = 5.0,
) -> GenerationService:
    """A generation service whose rate limiter never gets in the way."""
    limiter = DistributedRateLimiter(None, GENEROUS_LIMITS, estimated_instances=1)
    return GenerationService(llm_client, limiter, admission_timeout_seconds=admission_timeout_seconds)


def file_block(path: str, content: str) -> str:
    """A fenced block with a filename attribute, as the prompts request."""
    lang = path.rsplit(".", 1)[-1]
    return f'```{lang} filename="{path}"\n{content}\n```'
