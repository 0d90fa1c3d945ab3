from datetime import date as Date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Intent(str, Enum):
    ADD_EXPENSE = "add_expense"
    EDIT_EXPENSE = "edit_expense"
    DELETE_EXPENSE = "delete_expense"
    QUERY_BUDGET = "query_budget"
    QUERY_BALANCE = "query_balance"
    QUERY_SPENDING = "query_spending"
    LIST_EXPENSES = "list_expenses"
    SET_BUDGET = "set_budget"
    SETTLE = "settle"
    HELP = "help"
    UNKNOWN = "unknown"


class PendingKind(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_SELECTION = "awaiting_selection"
    AWAITING_AMOUNT = "awaiting_amount"


class SplitRatio(BaseModel):
    """Percentage split between the payer (first) and their partner (second)."""

    model_config = ConfigDict(frozen=True)

    first: int = Field(ge=0, le=100)
    second: int = Field(ge=0, le=100)

    @model_validator(mode="after")
    def _sums_to_hundred(self) -> "SplitRatio":
        if self.first + self.second != 100:
            raise ValueError("split ratio must sum to 100")
        return self

    def __str__(self) -> str:
        return f"{self.first}/{self.second}"

    def shares(self, amount: Decimal) -> tuple[Decimal, Decimal]:
        """(payer, partner) portions of ``amount``, rounded to the cent."""
        payer = (amount * self.first / 100).quantize(Decimal("0.01"))
        return payer, amount - payer


EQUAL_SPLIT = SplitRatio(first=50, second=50)


class EntitySet(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal | None = Field(default=None, ge=0)
    category_token: str | None = None
    date: Date | None = None
    description: str | None = None
    split_ratio: SplitRatio | None = None
    target_expense_id: int | None = None  # set by the dispatcher only
    expense_number: int | None = None
    edit_field: Literal["amount", "category", "description"] | None = None
    timeframe: Literal["week", "month", "year"] | None = None


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: Intent
    entities: EntitySet = Field(default_factory=EntitySet)


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class MatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_id: str
    name: str
    score: float = Field(ge=0.0, le=1.0)


class PendingInteraction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: PendingKind
    intent: Intent
    entities: EntitySet
    candidates: list[MatchResult] = []
    summary: str
    created_at: datetime = Field(default_factory=datetime.now)


class BudgetWarning(BaseModel):
    level: Literal["warning", "over"]
    message: str
    category_name: str
    spent: Decimal
    limit: Decimal
    new_total: Decimal
    percentage: float


class ChatResponse(BaseModel):
    success: bool
    message: str
    intent: Intent = Intent.UNKNOWN
    entities: EntitySet | None = None
    warning: BudgetWarning | None = None
    reason: str | None = None
    data: dict[str, Any] = {}
    pending_kind: PendingKind | None = None


class DispatchResult(BaseModel):
    response: ChatResponse
    pending: PendingInteraction | None = None


# Collaborator records


class Expense(BaseModel):
    id: int | None = None
    amount: Decimal = Field(ge=0)
    description: str = ""
    category_id: str | None = None
    category_name: str = "Uncategorized"
    paid_by: str | None = None
    date: Date = Field(default_factory=Date.today)
    split: SplitRatio = EQUAL_SPLIT
    payer_share: Decimal = Decimal("0")
    partner_share: Decimal = Decimal("0")
    settled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class BudgetStatus(BaseModel):
    category_id: str | None = None
    spent: Decimal = Decimal("0")
    limit: Decimal | None = None

    @property
    def remaining(self) -> Decimal | None:
        if self.limit is None:
            return None
        return self.limit - self.spent

    @property
    def percentage(self) -> float | None:
        if not self.limit:
            return None
        return float(self.spent / self.limit * 100)


class Balance(BaseModel):
    # Positive: the partner owes the user. Negative: the user owes the partner.
    net: Decimal = Decimal("0")
    unsettled_count: int = 0


class MutationResult(BaseModel):
    success: bool
    record: dict[str, Any] | None = None
    reason: str | None = None


# HTTP payloads


class ChatRequest(BaseModel):
    conversation_id: str
    message: str
    user_id: str | None = None


class CreateCategoryRequest(BaseModel):
    name: str


class CreateExpenseRequest(BaseModel):
    amount: Decimal = Field(ge=0)
    description: str = ""
    category_id: str | None = None
    paid_by: str | None = None
    date: Date | None = None
    split: SplitRatio | None = None


class UpdateExpenseRequest(BaseModel):
    amount: Decimal | None = Field(default=None, ge=0)
    description: str | None = None
    category_id: str | None = None
    date: Date | None = None
    split: SplitRatio | None = None


class SetBudgetRequest(BaseModel):
    limit: Decimal = Field(ge=0)
