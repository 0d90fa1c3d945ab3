import asyncio
import os
import tempfile
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

# Keep the module-level repository in splitchat.deps out of the working tree
os.environ.setdefault(
    "DB_PATH", str(Path(tempfile.mkdtemp(prefix="splitchat-")) / "test.json")
)
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "")

import pytest

from splitchat.chat.dispatcher import CommandDispatcher
from splitchat.chat.state import ConversationStore
from splitchat.config import Settings
from splitchat.models.schemas import Balance, BudgetStatus, Expense, MutationResult

TODAY = date(2026, 10, 18)


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 10, 18, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeExpenseAPI:
    """In-memory expense API. Put a method name in ``fail`` to make it raise."""

    def __init__(self):
        self.items: list[Expense] = []
        self.calls: list[tuple] = []
        self.fail: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = 1

    def _check(self, name: str, *args):
        self.calls.append((name, *args))
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    def get(self, expense_id: int) -> Expense | None:
        return next((e for e in self.items if e.id == expense_id), None)

    async def create(self, fields):
        self._check("create", fields)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            expense = Expense(id=self._next_id, **fields)
            self._next_id += 1
            self.items.append(expense)
            return MutationResult(success=True, record=expense.model_dump(mode="json"))
        finally:
            self.in_flight -= 1

    async def update(self, expense_id, fields):
        self._check("update", expense_id, fields)
        existing = self.get(expense_id)
        if existing is None:
            return MutationResult(success=False, reason="not found")
        updated = existing.model_copy(update=fields)
        self.items[self.items.index(existing)] = updated
        return MutationResult(success=True, record=updated.model_dump(mode="json"))

    async def delete(self, expense_id):
        self._check("delete", expense_id)
        existing = self.get(expense_id)
        if existing is None:
            return MutationResult(success=False, reason="not found")
        self.items.remove(existing)
        return MutationResult(success=True, record={"id": expense_id})

    async def settle(self, user_id):
        self._check("settle", user_id)
        open_items = [e for e in self.items if e.settled_at is None]
        for e in open_items:
            self.items[self.items.index(e)] = e.model_copy(
                update={"settled_at": datetime(2026, 10, 18)}
            )
        return MutationResult(success=True, record={"settled_count": len(open_items)})

    async def list_recent(self, limit):
        self._check("list_recent", limit)
        return list(reversed(self.items))[:limit]

    async def balance(self, user_id):
        self._check("balance", user_id)
        open_items = [e for e in self.items if e.settled_at is None]
        net = sum((e.partner_share for e in open_items), Decimal("0"))
        return Balance(net=net, unsettled_count=len(open_items))


class FakeBudgetAPI:
    def __init__(self):
        self.limits: dict[str, Decimal] = {}
        self.spent: dict[str, Decimal] = {}
        self.fail: set[str] = set()
        self.calls: list[tuple] = []

    def _check(self, name: str, *args):
        self.calls.append((name, *args))
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    async def get_budget(self, category_id):
        self._check("get_budget", category_id)
        if category_id is None:
            limits = list(self.limits.values())
            return BudgetStatus(
                spent=sum(self.spent.values(), Decimal("0")),
                limit=sum(limits, Decimal("0")) if limits else None,
            )
        return BudgetStatus(
            category_id=category_id,
            spent=self.spent.get(category_id, Decimal("0")),
            limit=self.limits.get(category_id),
        )

    async def set_limit(self, category_id, limit):
        self._check("set_limit", category_id, limit)
        self.limits[category_id] = limit
        return MutationResult(success=True, record={"category_id": category_id})

    async def spending_breakdown(self):
        self._check("spending_breakdown")
        return dict(self.spent)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return ConversationStore(timeout_seconds=300, clock=clock)


@pytest.fixture
def expenses():
    return FakeExpenseAPI()


@pytest.fixture
def budgets():
    return FakeBudgetAPI()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def dispatcher(store, expenses, budgets, settings):
    return CommandDispatcher(store, expenses, budgets, settings=settings, today=lambda: TODAY)


@pytest.fixture
def categories():
    return [
        {"id": "food", "name": "Food"},
        {"id": "groceries", "name": "Groceries"},
        {"id": "transport", "name": "Transport"},
        {"id": "other", "name": "Other"},
    ]
