from decimal import Decimal
from typing import Any, Protocol

from splitchat.models.schemas import Balance, BudgetStatus, Expense, MutationResult


class ExpenseAPI(Protocol):
    async def create(self, fields: dict[str, Any]) -> MutationResult: ...

    async def update(self, expense_id: int, fields: dict[str, Any]) -> MutationResult: ...

    async def delete(self, expense_id: int) -> MutationResult: ...

    async def settle(self, user_id: str | None) -> MutationResult:
        """Mark every unsettled expense as settled."""
        ...

    async def list_recent(self, limit: int) -> list[Expense]:
        """Most recent expenses first."""
        ...

    async def balance(self, user_id: str | None) -> Balance: ...


class BudgetAPI(Protocol):
    async def get_budget(self, category_id: str | None) -> BudgetStatus:
        """Spent/limit for one category, or the aggregate when ``category_id`` is None."""
        ...

    async def set_limit(self, category_id: str, limit: Decimal) -> MutationResult: ...

    async def spending_breakdown(self) -> dict[str, Decimal]:
        """Spent per category id for the current period."""
        ...
