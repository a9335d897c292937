"""Quota and cost-budget collaborator.

The orchestration core asks this collaborator before each task and before a
fast-path call. Accounting itself belongs to whoever implements
``QuotaChecker``; the default ``UnlimitedQuota`` admits everything.
"""

from dataclasses import dataclass
from typing import Protocol

from errors import QuotaExceededError


@dataclass(frozen=True)
class QuotaStatus:
    exceeded: bool
    message: str = ""


@dataclass(frozen=True)
class CostBudgetStatus:
    exceeded: bool
    message: str = ""


class QuotaChecker(Protocol):
    """Per-user request quota and cost budget."""

    async def check_quota(self, user_id: str | None, kind: str) -> QuotaStatus:
        ...

    async def check_cost_budget(self, user_id: str | None, kind: str) -> CostBudgetStatus:
        ...


class UnlimitedQuota:
    """Quota checker that never refuses work."""

    async def check_quota(self, user_id: str | None, kind: str) -> QuotaStatus:
        return QuotaStatus(exceeded=False)

    async def check_cost_budget(self, user_id: str | None, kind: str) -> CostBudgetStatus:
        return CostBudgetStatus(exceeded=False)


async def ensure_within_quota(checker: QuotaChecker, user_id: str | None, kind: str) -> None:
    """Raise ``QuotaExceededError`` if either the quota or the cost budget is spent.

    Args:
        checker: The quota collaborator.
        user_id: Owner of the work, if known.
        kind: Agent kind or ``"fast"`` for the single-call path.
    """
    quota = await checker.check_quota(user_id, kind)
    if quota.exceeded:
        raise QuotaExceededError(quota.message or f"Quota exceeded for {kind}", kind=kind)

    budget = await checker.check_cost_budget(user_id, kind)
    if budget.exceeded:
        raise QuotaExceededError(budget.message or f"Cost budget exceeded for {kind}", kind=kind)
