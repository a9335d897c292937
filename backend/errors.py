"""Exception types raised by the orchestration core.

Only ``DecompositionError`` and an empty successful-task list fail a whole
request. Provider and timeout errors are caught per task and turned into a
failed ``TaskResult``. Merge and verification problems are logged and
reported on the result, never raised.
"""


class OrchestrationError(Exception):
    """Base class for all errors raised by the orchestration core."""


class DecompositionError(OrchestrationError):
    """The decomposer reply had no usable plan or the plan is invalid."""


class ProviderError(OrchestrationError):
    """A generation provider call failed after retries and fallback."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class RateLimitTimeoutError(OrchestrationError):
    """No rate-limit slot became available before the wait deadline.

    Attributes:
        provider: The provider whose budget was exhausted.
        waited_ms: How long the caller waited before giving up.
    """

    def __init__(self, provider: str, waited_ms: int) -> None:
        super().__init__(
            f"Rate limit wait for provider '{provider}' exceeded {waited_ms}ms"
        )
        self.provider = provider
        self.waited_ms = waited_ms


class QuotaExceededError(OrchestrationError):
    """The quota or cost-budget collaborator refused a unit of work."""

    def __init__(self, message: str, kind: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind

