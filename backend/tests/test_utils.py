"""Tests for agents/utils.py -- LLM client utilities and helpers.

Covers:
- LLMClient: retry, fallback, metrics events and the mock_response passthrough
- MockLLMClient: scripted replies
- topological_sort: dependency layering
- extract_json_from_response: balanced-brace JSON extraction
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from litellm.exceptions import APIConnectionError, AuthenticationError, InternalServerError, RateLimitError

from agents.utils import LLMClient, MockLLMClient, extract_json_from_response, topological_sort
from errors import ProviderError
from events.bus import EventBus
from events.types import EventType
from tests.conftest import events_of


def _model_response(content: str = "hello", prompt_tokens: int = 12, completion_tokens: int = 5) -> MagicMock:
    response = MagicMock()
    choice = MagicMock()
    choice.message.content = content
    choice.finish_reason = "stop"
    response.choices = [choice]
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    return response


def _rate_limited() -> RateLimitError:
    return RateLimitError(message="slow down", llm_provider="groq", model="groq/llama")


MESSAGES: list[dict[str, Any]] = [{"role": "user", "content": "Build a todo app"}]


# =========================================================================
# LLMClient
# =========================================================================


class TestLLMClient:
    async def test_success_returns_content_and_emits_metrics(self) -> None:
        bus = EventBus()
        client = LLMClient(event_bus=bus, default_model="groq/llama", retry_attempts=0)

        with patch("agents.utils.acompletion", AsyncMock(return_value=_model_response())) as mocked:
            response = await client.call(MESSAGES, temperature=0.2, max_tokens=100, job_id="job_1")

        assert response.content == "hello"
        assert response.finish_reason == "stop"
        assert response.metrics.input_tokens == 12
        assert response.metrics.output_tokens == 5
        kwargs = mocked.await_args.kwargs
        assert kwargs["model"] == "groq/llama"
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 100
        assert "mock_response" not in kwargs

        [event] = events_of(bus, "job_1", EventType.LLM_CALL_COMPLETE)
        assert event.data["model"] == "groq/llama"

    async def test_no_event_without_job_id(self) -> None:
        bus = EventBus()
        client = LLMClient(event_bus=bus, default_model="groq/llama", retry_attempts=0)
        with patch("agents.utils.acompletion", AsyncMock(return_value=_model_response())):
            await client.call(MESSAGES)
        assert bus.get_event_history("job_1") == []

    async def test_mock_response_is_passed_to_litellm(self) -> None:
        client = LLMClient(default_model="groq/llama", retry_attempts=0, mock_response='{"files": {}}')
        with patch("agents.utils.acompletion", AsyncMock(return_value=_model_response())) as mocked:
            await client.call(MESSAGES)
        assert mocked.await_args.kwargs["mock_response"] == '{"files": {}}'

    async def test_retries_transient_errors(self) -> None:
        client = LLMClient(default_model="groq/llama", retry_attempts=2, retry_delay=0)
        mocked = AsyncMock(side_effect=[_rate_limited(), _model_response("second try")])

        with patch("agents.utils.acompletion", mocked):
            response = await client.call(MESSAGES)

        assert response.content == "second try"
        assert mocked.await_count == 2

    async def test_does_not_retry_authentication_errors(self) -> None:
        client = LLMClient(default_model="groq/llama", retry_attempts=3, retry_delay=0)
        error = AuthenticationError(message="bad key", llm_provider="groq", model="groq/llama")
        mocked = AsyncMock(side_effect=error)

        with patch("agents.utils.acompletion", mocked), pytest.raises(ProviderError) as exc_info:
            await client.call(MESSAGES)

        assert mocked.await_count == 1
        assert exc_info.value.provider == "groq/llama"

    async def test_fallback_model_after_retries(self) -> None:
        client = LLMClient(
            default_model="groq/llama",
            fallback_model="openrouter/backup",
            retry_attempts=1,
            retry_delay=0,
        )
        mocked = AsyncMock(side_effect=[_rate_limited(), _rate_limited(), _model_response("from backup")])

        with patch("agents.utils.acompletion", mocked):
            response = await client.call(MESSAGES)

        assert response.content == "from backup"
        assert response.metrics.model == "openrouter/backup"
        assert mocked.await_args.kwargs["model"] == "openrouter/backup"

    async def test_raises_provider_error_when_everything_fails(self) -> None:
        client = LLMClient(
            default_model="groq/llama",
            fallback_model="openrouter/backup",
            retry_attempts=1,
            retry_delay=0,
        )
        mocked = AsyncMock(side_effect=[_rate_limited(), _rate_limited(), RuntimeError("backup down")])

        with patch("agents.utils.acompletion", mocked), pytest.raises(ProviderError, match="after all retries"):
            await client.call(MESSAGES)

    async def test_dropped_connection_is_retried(self) -> None:
        client = LLMClient(default_model="groq/llama", retry_attempts=1, retry_delay=0)
        dropped = APIConnectionError(message="connection reset", llm_provider="groq", model="groq/llama")
        mocked = AsyncMock(side_effect=[dropped, _model_response("reconnected")])

        with patch("agents.utils.acompletion", mocked):
            response = await client.call(MESSAGES)

        assert response.content == "reconnected"
        assert mocked.await_count == 2

    @pytest.mark.parametrize(
        "error",
        [
            APIConnectionError(message="connection reset", llm_provider="groq", model="groq/llama"),
            InternalServerError(message="upstream 500", llm_provider="groq", model="groq/llama"),
        ],
        ids=["connection", "internal"],
    )
    async def test_exhausted_provider_errors_become_provider_error(self, error: Exception) -> None:
        client = LLMClient(default_model="groq/llama", retry_attempts=1, retry_delay=0)
        client.fallback_model = None
        mocked = AsyncMock(side_effect=error)

        with patch("agents.utils.acompletion", mocked), pytest.raises(ProviderError) as exc_info:
            await client.call(MESSAGES)

        assert mocked.await_count == 2
        assert exc_info.value.__cause__ is error

    async def test_unknown_error_skips_retries_but_tries_fallback(self) -> None:
        client = LLMClient(
            default_model="groq/llama",
            fallback_model="openrouter/backup",
            retry_attempts=3,
            retry_delay=0,
        )
        mocked = AsyncMock(side_effect=[KeyError("choices"), _model_response("from backup")])

        with patch("agents.utils.acompletion", mocked):
            response = await client.call(MESSAGES)

        assert response.content == "from backup"
        assert mocked.await_count == 2

    async def test_unknown_error_without_fallback(self) -> None:
        client = LLMClient(default_model="groq/llama", retry_attempts=3, retry_delay=0)
        client.fallback_model = None
        mocked = AsyncMock(side_effect=KeyError("choices"))

        with patch("agents.utils.acompletion", mocked), pytest.raises(ProviderError, match="choices"):
            await client.call(MESSAGES)

        assert mocked.await_count == 1


class TestMockLLMClient:
    async def test_replies_in_order_and_records_calls(self) -> None:
        client = MockLLMClient(responses=["first", "second"])
        assert (await client.call(MESSAGES)).content == "first"
        assert (await client.call(MESSAGES, model="groq/x")).content == "second"
        assert [c["model"] for c in client.call_history] == [client.default_model, "groq/x"]

        with pytest.raises(IndexError):
            await client.call(MESSAGES)

    async def test_reset(self) -> None:
        client = MockLLMClient(responses=["only"])
        await client.call(MESSAGES)
        client.reset()
        assert client.call_history == []
        assert (await client.call(MESSAGES)).content == "only"


# =========================================================================
# topological_sort
# =========================================================================


class TestTopologicalSort:
    def test_independent_tasks_share_a_layer(self) -> None:
        assert topological_sort(["a", "b", "c"], {}) == [["a", "b", "c"]]

    def test_layers_follow_dependencies(self) -> None:
        layers = topological_sort(
            ["design", "research", "frontend", "polish"],
            {"frontend": ["design"], "polish": ["frontend", "research"]},
        )
        assert layers == [["design", "research"], ["frontend"], ["polish"]]

    def test_declaration_order_within_layer(self) -> None:
        assert topological_sort(["z", "a"], {}) == [["z", "a"]]

    def test_cycle_raises(self) -> None:
        with pytest.raises(ValueError, match="Circular dependency among tasks: a, b"):
            topological_sort(["a", "b", "c"], {"a": ["b"], "b": ["a"]})

    def test_unknown_dependency_never_resolves(self) -> None:
        with pytest.raises(ValueError):
            topological_sort(["a"], {"a": ["ghost"]})


# =========================================================================
# extract_json_from_response -- balanced-brace parser
# =========================================================================


class TestExtractJsonFromResponse:
    """JSON extraction from free-form LLM responses."""

    def test_pure_json(self) -> None:
        result = extract_json_from_response('{"projectName": "todo"}')
        assert result == {"projectName": "todo"}

    def test_json_in_code_fence(self) -> None:
        response = """Here's the plan:
```json
{"projectName": "todo", "subTasks": [{"id": "task-1"}, {"id": "task-2"}]}
```
Done!"""
        result = extract_json_from_response(response)
        assert result is not None
        assert len(result["subTasks"]) == 2

    def test_json_in_bare_code_fence(self) -> None:
        result = extract_json_from_response('```\n{"files": {}}\n```')
        assert result == {"files": {}}

    def test_json_with_surrounding_text(self) -> None:
        response = 'The plan is: {"subTasks": [{"id": "a"}, {"id": "b"}]} and more text'
        result = extract_json_from_response(response)
        assert result is not None
        assert len(result["subTasks"]) == 2

    def test_deeply_nested_balanced_braces(self) -> None:
        response = 'Sure! {"a": {"b": {"c": {"d": "found"}}}}'
        result = extract_json_from_response(response)
        assert result is not None
        assert result["a"]["b"]["c"]["d"] == "found"

    def test_no_json(self) -> None:
        assert extract_json_from_response("No JSON here at all.") is None

    def test_empty_string(self) -> None:
        assert extract_json_from_response("") is None

    def test_malformed_json(self) -> None:
        assert extract_json_from_response("{bad json: without quotes}") is None

    def test_top_level_array_falls_back_to_inner_object(self) -> None:
        assert extract_json_from_response('[{"id": "a"}]') == {"id": "a"}
        assert extract_json_from_response("[1, 2, 3]") is None

    def test_first_valid_json_returned(self) -> None:
        response = 'Ignore {invalid and {"valid": true}'
        result = extract_json_from_response(response)
        assert result == {"valid": True}

    def test_string_containing_braces(self) -> None:
        response = '{"files": {"/App.tsx": "function App() { return {}; }"}}'
        result = extract_json_from_response(response)
        assert result is not None
        assert "return {}" in result["files"]["/App.tsx"]

    def test_fence_with_text_inside(self) -> None:
        response = """```json
Here is the merged result:
{"files": {"/App.tsx": "merged"}}
```"""
        result = extract_json_from_response(response)
        assert result == {"files": {"/App.tsx": "merged"}}
