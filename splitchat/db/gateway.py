from decimal import Decimal
from typing import Any

from loguru import logger
from pydantic import ValidationError

from splitchat.db.repository import ExpenseRepository
from splitchat.models.schemas import (
    Balance,
    BudgetStatus,
    Expense,
    MutationResult,
)


class LocalExpenseAPI:
    def __init__(self, repo: ExpenseRepository):
        self.repo = repo

    async def create(self, fields: dict[str, Any]) -> MutationResult:
        try:
            expense = Expense(**fields)
        except ValidationError as e:
            return MutationResult(success=False, reason=str(e))
        created = self.repo.add_expense(expense)
        logger.info("Created expense #{} ({})", created.id, created.amount)
        return MutationResult(success=True, record=created.model_dump(mode="json"))

    async def update(self, expense_id: int, fields: dict[str, Any]) -> MutationResult:
        try:
            updated = self.repo.update_expense(expense_id, **fields)
        except ValidationError as e:
            return MutationResult(success=False, reason=str(e))
        if updated is None:
            return MutationResult(success=False, reason=f"Expense #{expense_id} not found")
        logger.info("Updated expense #{}", expense_id)
        return MutationResult(success=True, record=updated.model_dump(mode="json"))

    async def delete(self, expense_id: int) -> MutationResult:
        if not self.repo.delete_expense(expense_id):
            return MutationResult(success=False, reason=f"Expense #{expense_id} not found")
        logger.info("Deleted expense #{}", expense_id)
        return MutationResult(success=True, record={"id": expense_id})

    async def settle(self, user_id: str | None) -> MutationResult:
        count = self.repo.settle_all()
        logger.info("Settled {} expenses", count)
        return MutationResult(success=True, record={"settled_count": count})

    async def list_recent(self, limit: int) -> list[Expense]:
        return self.repo.list_expenses(limit)

    async def balance(self, user_id: str | None) -> Balance:
        return self.repo.balance(user_id)


class LocalBudgetAPI:
    def __init__(self, repo: ExpenseRepository):
        self.repo = repo

    async def get_budget(self, category_id: str | None) -> BudgetStatus:
        return self.repo.budget_status(category_id)

    async def set_limit(self, category_id: str, limit: Decimal) -> MutationResult:
        if self.repo.get_category(category_id) is None:
            return MutationResult(success=False, reason=f"Unknown category: {category_id}")
        self.repo.set_budget(category_id, limit)
        logger.info("Set budget for {} to {}", category_id, limit)
        return MutationResult(
            success=True, record={"category_id": category_id, "limit": str(limit)}
        )

    async def spending_breakdown(self) -> dict[str, Decimal]:
        return self.repo.spending_by_category()
