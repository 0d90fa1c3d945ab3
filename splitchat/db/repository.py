import re
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from tinydb import Query, TinyDB

from splitchat.models.schemas import Balance, BudgetStatus, Category, Expense

DEFAULT_CATEGORIES = (
    "Food & Dining",
    "Groceries",
    "Transport",
    "Home & Utilities",
    "Entertainment",
    "Other",
)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class ExpenseRepository:
    """Shared household ledger: categories, expenses and monthly budget limits."""

    def __init__(
        self,
        db_path: str = "splitchat.json",
        seed_categories: bool = True,
        today: Callable[[], date] = date.today,
    ):
        self.db = TinyDB(db_path)
        self.categories = self.db.table("categories")
        self.expenses = self.db.table("expenses")
        self.budgets = self.db.table("budgets")
        self.today = today
        if seed_categories and not len(self.categories):
            for name in DEFAULT_CATEGORIES:
                self.categories.insert({"id": slugify(name), "name": name})

    def list_categories(self) -> list[Category]:
        return [Category(**doc) for doc in self.categories.all()]

    def get_category(self, category_id: str) -> Category | None:
        Cat = Query()
        doc = self.categories.get(Cat.id == category_id)
        return Category(**doc) if doc else None

    def add_category(self, name: str) -> Category:
        category_id = slugify(name)
        if not category_id:
            raise ValueError("Category name must contain letters or digits")
        if self.get_category(category_id) is not None:
            raise ValueError(f"Category already exists: {name}")
        self.categories.insert({"id": category_id, "name": name.strip()})
        return Category(id=category_id, name=name.strip())

    def add_expense(self, expense: Expense) -> Expense:
        data = expense.model_dump(mode="json")
        data.pop("id", None)
        expense.id = self.expenses.insert(data)
        return expense

    def get_expense(self, id: int) -> Expense | None:
        doc = self.expenses.get(doc_id=id)
        if doc is None:
            return None
        return Expense(id=doc.doc_id, **doc)

    def list_expenses(self, limit: int | None = None) -> list[Expense]:
        """Newest first by date, then by insertion order."""
        docs = sorted(
            self.expenses.all(), key=lambda d: (d["date"], d.doc_id), reverse=True
        )
        if limit is not None:
            docs = docs[:limit]
        return [Expense(id=doc.doc_id, **doc) for doc in docs]

    def update_expense(self, id: int, **fields) -> Expense | None:
        if self.expenses.get(doc_id=id) is None:
            return None
        updates = {k: v for k, v in fields.items() if v is not None}
        if updates:
            data = self.get_expense(id).model_dump()
            data.update(updates)
            data = Expense.model_validate(data).model_dump(mode="json")
            data.pop("id", None)
            self.expenses.update(data, doc_ids=[id])
        return self.get_expense(id)

    def delete_expense(self, id: int) -> bool:
        if self.expenses.get(doc_id=id) is None:
            return False
        self.expenses.remove(doc_ids=[id])
        return True

    def settle_all(self) -> int:
        """Mark every unsettled expense settled; returns how many changed."""
        Exp = Query()
        ids = self.expenses.update(
            {"settled_at": datetime.now().isoformat()}, Exp.settled_at == None  # noqa: E711
        )
        return len(ids)

    def balance(self, user_id: str | None) -> Balance:
        Exp = Query()
        net = Decimal("0")
        count = 0
        for doc in self.expenses.search(Exp.settled_at == None):  # noqa: E711
            count += 1
            share = Decimal(doc["partner_share"])
            if doc.get("paid_by") == user_id:
                net += share
            else:
                net -= share
        return Balance(net=net, unsettled_count=count)

    def set_budget(self, category_id: str, limit: Decimal) -> None:
        Bud = Query()
        self.budgets.upsert(
            {"category_id": category_id, "limit": str(limit)},
            Bud.category_id == category_id,
        )

    def get_limit(self, category_id: str) -> Decimal | None:
        Bud = Query()
        doc = self.budgets.get(Bud.category_id == category_id)
        return Decimal(doc["limit"]) if doc else None

    def list_budgets(self) -> list[BudgetStatus]:
        spending = self.spending_by_category()
        return [
            BudgetStatus(
                category_id=doc["category_id"],
                spent=spending.get(doc["category_id"], Decimal("0")),
                limit=Decimal(doc["limit"]),
            )
            for doc in self.budgets.all()
        ]

    def spending_by_category(self) -> dict[str, Decimal]:
        """Spent per category id for the current calendar month."""
        month = self.today().strftime("%Y-%m")
        spending: dict[str, Decimal] = {}
        for doc in self.expenses.all():
            if not doc["date"].startswith(month) or doc.get("category_id") is None:
                continue
            cid = doc["category_id"]
            spending[cid] = spending.get(cid, Decimal("0")) + Decimal(doc["amount"])
        return spending

    def budget_status(self, category_id: str | None = None) -> BudgetStatus:
        spending = self.spending_by_category()
        if category_id is not None:
            return BudgetStatus(
                category_id=category_id,
                spent=spending.get(category_id, Decimal("0")),
                limit=self.get_limit(category_id),
            )
        limits = [Decimal(doc["limit"]) for doc in self.budgets.all()]
        return BudgetStatus(
            spent=sum(spending.values(), Decimal("0")),
            limit=sum(limits, Decimal("0")) if limits else None,
        )
