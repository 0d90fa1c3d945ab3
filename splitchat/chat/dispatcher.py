import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from loguru import logger

from splitchat.chat import messages
from splitchat.chat.ports import BudgetAPI, ExpenseAPI
from splitchat.chat.state import (
    ConversationStore,
    interpret_confirmation,
    is_cancel,
    parse_selection,
)
from splitchat.config import Settings, get_settings
from splitchat.models.schemas import (
    EQUAL_SPLIT,
    BudgetWarning,
    Category,
    ChatResponse,
    DispatchResult,
    EntitySet,
    Expense,
    Intent,
    MatchResult,
    PendingInteraction,
    PendingKind,
)
from splitchat.nlp import fuzzy
from splitchat.nlp.patterns import classify, parse_amount_reply

UNCATEGORIZED = "Uncategorized"
FALLBACK_NAMES = {"other", "uncategorized", "misc", "miscellaneous", "general"}
TARGET_LOOKBACK = 50
CENT = Decimal("0.01")


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class _Turn:
    conversation_id: str
    intent: Intent
    categories: list[Category]
    user_id: str | None = None


@dataclass
class _Resolution:
    category_id: str | None = None
    name: str | None = None
    score: float | None = None
    notice: str | None = None
    prompt: DispatchResult | None = None

    @property
    def resolved(self) -> bool:
        return self.name is not None


@dataclass
class _Outcome:
    value: Any = None
    error: str | None = None
    failed: bool = field(init=False)

    def __post_init__(self):
        self.failed = self.error is not None


def _categories(categories: Iterable[Category | Mapping] | None) -> list[Category]:
    return [fuzzy.as_category(c) for c in categories or []]


class CommandDispatcher:
    """Turns chat text into expense and budget actions.

    Inputs for one conversation id run strictly in order, API calls included.
    Conversation state is written only after those calls return, so an input
    interrupted mid-call leaves the previous state in place.
    """

    def __init__(
        self,
        store: ConversationStore,
        expenses: ExpenseAPI,
        budgets: BudgetAPI,
        settings: Settings | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.expenses = expenses
        self.budgets = budgets
        self.settings = settings or get_settings()
        self.today = today
        self._slots: dict[str, _Slot] = {}
        self._handlers = {
            Intent.ADD_EXPENSE: self._add_expense,
            Intent.EDIT_EXPENSE: self._edit_expense,
            Intent.DELETE_EXPENSE: self._delete_expense,
            Intent.SETTLE: self._settle,
            Intent.SET_BUDGET: self._set_budget,
            Intent.QUERY_BUDGET: self._query_budget,
            Intent.QUERY_BALANCE: self._query_balance,
            Intent.QUERY_SPENDING: self._query_spending,
            Intent.LIST_EXPENSES: self._list_expenses,
            Intent.HELP: self._help,
            Intent.UNKNOWN: self._unknown,
        }

    async def process(
        self,
        conversation_id: str,
        text: str,
        categories: Iterable[Category | Mapping] | None,
        user_id: str | None = None,
    ) -> DispatchResult:
        """Handle one chat message: a reply to a pending prompt or a new command."""
        async with self._serialized(conversation_id):
            try:
                return await self._process(
                    conversation_id, text, _categories(categories), user_id, supersede=True
                )
            except Exception as e:
                logger.exception("Chat dispatch failed for {}: {}", conversation_id, e)
                return self._failure(
                    Intent.UNKNOWN, "Something went wrong. Please try again.", str(e)
                )

    async def process_reply(
        self,
        conversation_id: str,
        text: str,
        categories: Iterable[Category | Mapping] | None,
        user_id: str | None = None,
    ) -> DispatchResult:
        """Handle a confirmation or selection reply; never starts a new command."""
        async with self._serialized(conversation_id):
            try:
                pending = self.store.get_pending(conversation_id)
                if pending is None:
                    return DispatchResult(
                        response=ChatResponse(success=False, message=messages.NOTHING_PENDING)
                    )
                turn = _Turn(conversation_id, pending.intent, _categories(categories), user_id)
                result = await self._handle_reply(turn, pending, text, supersede=False)
                self._commit(conversation_id, result)
                return result
            except Exception as e:
                logger.exception("Chat reply failed for {}: {}", conversation_id, e)
                return self._failure(
                    Intent.UNKNOWN, "Something went wrong. Please try again.", str(e)
                )

    def end_conversation(self, conversation_id: str) -> None:
        self.store.drop(conversation_id)

    def active_locks(self) -> int:
        return len(self._slots)

    @asynccontextmanager
    async def _serialized(self, conversation_id: str):
        """Hold the conversation's lock; the lock is dropped once nobody waits on it."""
        slot = self._slots.setdefault(conversation_id, _Slot())
        slot.users += 1
        try:
            async with slot.lock:
                self.store.prune()
                yield
        finally:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(conversation_id) is slot:
                del self._slots[conversation_id]

    async def _process(
        self,
        conversation_id: str,
        text: str,
        categories: list[Category],
        user_id: str | None,
        supersede: bool,
    ) -> DispatchResult:
        pending = self.store.get_pending(conversation_id)
        if pending is not None:
            turn = _Turn(conversation_id, pending.intent, categories, user_id)
            result = await self._handle_reply(turn, pending, text, supersede)
            if result is not None:
                self._commit(conversation_id, result)
                return result
            logger.info(
                "New command supersedes pending {} for {}",
                pending.kind.value,
                conversation_id,
            )

        classification = classify(text, today=self.today())
        logger.info(
            "Conversation {}: {} {}",
            conversation_id,
            classification.intent.value,
            classification.entities.model_dump(exclude_none=True, mode="json"),
        )
        turn = _Turn(conversation_id, classification.intent, categories, user_id)
        result = await self._run(turn, classification.entities)
        self._commit(conversation_id, result)
        return result

    async def _handle_reply(
        self, turn: _Turn, pending: PendingInteraction, text: str, supersede: bool
    ) -> DispatchResult | None:
        """Interpret ``text`` against ``pending``; None means a new command took over."""
        if pending.kind is PendingKind.AWAITING_CONFIRMATION:
            answer = interpret_confirmation(text)
            if answer is None:
                return self._reprompt(pending, messages.CONFIRM_REPROMPT)
            if not answer:
                return self._cancelled(pending)
            logger.debug("Confirmed {} for {}", pending.intent.value, turn.conversation_id)
            return await self._execute_confirmed(turn, pending)

        if is_cancel(text):
            return self._cancelled(pending)

        if pending.kind is PendingKind.AWAITING_SELECTION:
            choice = parse_selection(text)
            if choice is not None:
                if not 1 <= choice <= len(pending.candidates):
                    return self._reprompt(
                        pending, messages.selection_reprompt(len(pending.candidates))
                    )
                chosen = pending.candidates[choice - 1]
                logger.debug("Selected {} for {}", chosen.name, turn.conversation_id)
                resolution = _Resolution(chosen.category_id, chosen.name, chosen.score)
                return await self._run(turn, pending.entities, resolution)
            if supersede and self._is_new_command(text):
                return None
            return self._reprompt(
                pending, messages.selection_reprompt(len(pending.candidates))
            )

        amount = parse_amount_reply(text)
        if amount is not None and amount > 0:
            entities = pending.entities.model_copy(update={"amount": amount})
            return await self._run(turn, entities)
        if supersede and self._is_new_command(text):
            return None
        return self._reprompt(pending, messages.AMOUNT_PROMPT)

    def _is_new_command(self, text: str) -> bool:
        if not self.settings.supersede_pending:
            return False
        return classify(text, today=self.today()).intent is not Intent.UNKNOWN

    def _commit(self, conversation_id: str, result: DispatchResult) -> None:
        if result.pending is not None:
            self.store.set_pending(conversation_id, result.pending)
        else:
            self.store.clear_pending(conversation_id)

    async def _run(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None = None
    ) -> DispatchResult:
        handler = self._handlers[turn.intent]
        return await handler(turn, entities, resolution)

    async def _execute_confirmed(
        self, turn: _Turn, pending: PendingInteraction
    ) -> DispatchResult:
        entities = pending.entities
        if pending.intent is Intent.DELETE_EXPENSE:
            outcome = await self._call(
                "delete expense", self.expenses.delete, entities.target_expense_id
            )
            if outcome.failed:
                return self._failure(
                    turn.intent, f"Failed to delete expense: {outcome.error}", outcome.error, entities
                )
            self.store.forget_expense(turn.conversation_id, entities.target_expense_id)
            return self._success(
                turn.intent, "Expense deleted.", entities, data={"expense_id": entities.target_expense_id}
            )

        outcome = await self._call("settle up", self.expenses.settle, turn.user_id)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Failed to settle up: {outcome.error}", outcome.error, entities
            )
        record = outcome.value.record or {}
        count = record.get("settled_count", 0)
        return self._success(
            turn.intent,
            f"All settled up! Marked {count} expense{'s' if count != 1 else ''} as settled.",
            entities,
            data=record,
        )

    async def _add_expense(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        if entities.amount is None or entities.amount <= 0:
            return self._prompt(
                turn, PendingKind.AWAITING_AMOUNT, entities, messages.AMOUNT_PROMPT
            )

        resolution = resolution or self._resolve(turn, entities, fallback=True)
        if resolution.prompt is not None:
            return resolution.prompt

        amount = entities.amount
        split = entities.split_ratio or EQUAL_SPLIT
        payer_share, partner_share = split.shares(amount)
        description = entities.description or resolution.name
        warning = await self._budget_warning(resolution, amount)

        fields = {
            "amount": amount,
            "description": description,
            "category_id": resolution.category_id,
            "category_name": resolution.name,
            "paid_by": turn.user_id,
            "date": entities.date or self.today(),
            "split": split,
            "payer_share": payer_share,
            "partner_share": partner_share,
        }
        used = entities.model_copy(update={"split_ratio": split, "date": fields["date"]})
        outcome = await self._call("add expense", self.expenses.create, fields)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Failed to add expense: {outcome.error}", outcome.error, used
            )

        record = outcome.value.record or {}
        if record.get("id") is not None:
            self.store.remember_expense(turn.conversation_id, record["id"])

        lines = [f"Added {self._money(amount)} expense for {description}"]
        category_line = f"Category: {resolution.name}"
        if entities.category_token and resolution.score is not None and resolution.score < 1.0:
            category_line += f' (matched from "{entities.category_token}")'
        lines.append(category_line)
        if split != EQUAL_SPLIT:
            lines.append(f"Split: {split}")
        if resolution.notice:
            lines.append("")
            lines.append(resolution.notice)
        if warning:
            lines.append("")
            lines.append(warning.message)

        return self._success(
            turn.intent,
            "\n".join(lines),
            used,
            warning=warning,
            data={
                "expense": record,
                "category": {"id": resolution.category_id, "name": resolution.name},
            },
        )

    async def _edit_expense(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        target, error = await self._target_expense(turn, entities)
        if target is None:
            return self._failure(turn.intent, error, error, entities)
        entities = entities.model_copy(update={"target_expense_id": target.id})

        if entities.edit_field is None:
            message = (
                f"Edit expense: {messages.expense_label(target, self.settings.currency_symbol)}\n\n"
                "What would you like to change?\n"
                '• "Change amount to $60"\n'
                '• "Change category to food"\n'
                '• "Change description to dinner"'
            )
            return self._success(
                turn.intent, message, entities,
                data={"needs_field": True, "expense": target.model_dump(mode="json")},
            )

        if entities.edit_field == "amount":
            if entities.amount is None or entities.amount <= 0:
                reason = "Please specify a valid amount (e.g., 'Change amount to $60')."
                return self._failure(turn.intent, reason, reason, entities)
            payer_share, partner_share = target.split.shares(entities.amount)
            updates = {
                "amount": entities.amount,
                "payer_share": payer_share,
                "partner_share": partner_share,
            }
            change = f"Amount: {self._money(target.amount)} → {self._money(entities.amount)}"
        elif entities.edit_field == "category":
            resolution = resolution or self._resolve(turn, entities, fallback=False)
            if resolution.prompt is not None:
                return resolution.prompt
            if not resolution.resolved:
                return self._not_found(turn, entities)
            updates = {"category_id": resolution.category_id, "category_name": resolution.name}
            change = f"Category: {target.category_name} → {resolution.name}"
        else:
            if not entities.description:
                reason = "Please specify a description (e.g., 'Change description to dinner')."
                return self._failure(turn.intent, reason, reason, entities)
            updates = {"description": entities.description}
            change = f"Description: {target.description} → {entities.description}"

        outcome = await self._call("edit expense", self.expenses.update, target.id, updates)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Failed to edit expense: {outcome.error}", outcome.error, entities
            )
        self.store.remember_expense(turn.conversation_id, target.id)
        return self._success(
            turn.intent,
            f"Updated expense:\n\n{change}",
            entities,
            data={"expense": outcome.value.record, "changes": updates},
        )

    async def _delete_expense(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        target, error = await self._target_expense(turn, entities)
        if target is None:
            return self._failure(turn.intent, error, error, entities)
        entities = entities.model_copy(update={"target_expense_id": target.id})
        summary = (
            "Are you sure you want to delete this expense?\n\n"
            f"{messages.expense_label(target, self.settings.currency_symbol)}\n\n"
            'Reply "yes" to confirm or "no" to cancel.'
        )
        return self._prompt(
            turn,
            PendingKind.AWAITING_CONFIRMATION,
            entities,
            summary,
            data={"expense": target.model_dump(mode="json")},
        )

    async def _settle(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        outcome = await self._call("balance query", self.expenses.balance, turn.user_id)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Couldn't load your balance: {outcome.error}", outcome.error, entities
            )
        balance = outcome.value
        if balance.unsettled_count == 0:
            return self._success(turn.intent, "Nothing to settle. You're all square!", entities)

        count = balance.unsettled_count
        summary = (
            f"Settle up {count} unsettled expense{'s' if count != 1 else ''}?\n"
            f"{self._balance_line(balance.net)}\n\n"
            'Reply "yes" to confirm or "no" to cancel.'
        )
        return self._prompt(
            turn,
            PendingKind.AWAITING_CONFIRMATION,
            entities,
            summary,
            data={"net": balance.net, "unsettled_count": count},
        )

    async def _set_budget(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        if entities.amount is None or entities.amount <= 0:
            reason = "Please specify a valid budget amount (e.g., '$500')."
            return self._failure(turn.intent, reason, reason, entities)

        resolution = resolution or self._resolve(turn, entities, fallback=False)
        if resolution.prompt is not None:
            return resolution.prompt
        if not resolution.resolved:
            return self._not_found(turn, entities)

        outcome = await self._call(
            "set budget", self.budgets.set_limit, resolution.category_id, entities.amount
        )
        if outcome.failed:
            return self._failure(
                turn.intent, f"Failed to set budget: {outcome.error}", outcome.error, entities
            )
        return self._success(
            turn.intent,
            f"Set {resolution.name} budget to {self._money(entities.amount)} for this month",
            entities,
            data={"category": {"id": resolution.category_id, "name": resolution.name},
                  "limit": entities.amount},
        )

    async def _query_budget(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        if entities.category_token or resolution is not None:
            resolution = resolution or self._resolve(turn, entities, fallback=False)
            if resolution.prompt is not None:
                return resolution.prompt
            if not resolution.resolved:
                return self._not_found(turn, entities)
            return await self._category_budget(turn, entities, resolution)

        outcome = await self._call("budget query", self.budgets.get_budget, None)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Couldn't load your budget: {outcome.error}", outcome.error, entities
            )
        status = outcome.value
        if not status.limit:
            return self._success(
                turn.intent,
                "You don't have a budget set up yet. "
                f"You've spent {self._money(status.spent)} this month.",
                entities,
                data={"spent": status.spent, "limit": None},
            )

        lines = [
            "Budget overview",
            "",
            f"Total: {self._money(status.spent)} / {self._money(status.limit)} "
            f"({round(status.percentage)}%)",
            f"Remaining: {self._money(status.remaining)}",
        ]
        breakdown = await self._call("spending breakdown", self.budgets.spending_breakdown)
        if not breakdown.failed and breakdown.value:
            names = {c.id: c.name for c in turn.categories}
            top = sorted(breakdown.value.items(), key=lambda kv: kv[1], reverse=True)[:3]
            lines += ["", "Top spending:"]
            lines += [f"• {names.get(cid, cid)}: {self._money(spent)}" for cid, spent in top if spent > 0]
        return self._success(
            turn.intent,
            "\n".join(lines),
            entities,
            data={"spent": status.spent, "limit": status.limit, "remaining": status.remaining},
        )

    async def _category_budget(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution
    ) -> DispatchResult:
        outcome = await self._call("budget query", self.budgets.get_budget, resolution.category_id)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Couldn't load your budget: {outcome.error}", outcome.error, entities
            )
        status = outcome.value
        data = {
            "category": {"id": resolution.category_id, "name": resolution.name},
            "spent": status.spent,
            "limit": status.limit,
        }
        if not status.limit:
            return self._success(
                turn.intent,
                f"{resolution.name}: {self._money(status.spent)} spent (no budget set)",
                entities,
                data=data,
            )
        data["remaining"] = status.remaining
        message = (
            f"{resolution.name} budget\n\n"
            f"{self._money(status.spent)} / {self._money(status.limit)} "
            f"({round(status.percentage)}%)\n"
            f"Remaining: {self._money(status.remaining)}"
        )
        return self._success(turn.intent, message, entities, data=data)

    async def _query_balance(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        outcome = await self._call("balance query", self.expenses.balance, turn.user_id)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Couldn't load your balance: {outcome.error}", outcome.error, entities
            )
        balance = outcome.value
        lines = ["Current balance", "", self._balance_line(balance.net)]
        if balance.unsettled_count:
            count = balance.unsettled_count
            lines += ["", f"{count} unsettled expense{'s' if count != 1 else ''}"]
        return self._success(
            turn.intent,
            "\n".join(lines),
            entities,
            data={"net": balance.net, "unsettled_count": balance.unsettled_count},
        )

    async def _query_spending(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        if entities.category_token or resolution is not None:
            resolution = resolution or self._resolve(turn, entities, fallback=False)
            if resolution.prompt is not None:
                return resolution.prompt
            if not resolution.resolved:
                return self._not_found(turn, entities)
            outcome = await self._call(
                "spending query", self.budgets.get_budget, resolution.category_id
            )
            if outcome.failed:
                return self._failure(
                    turn.intent, f"Couldn't load your spending: {outcome.error}", outcome.error, entities
                )
            spent = outcome.value.spent
            return self._success(
                turn.intent,
                f"{resolution.name}: {self._money(spent)} spent this month",
                entities,
                data={"category": {"id": resolution.category_id, "name": resolution.name},
                      "spent": spent},
            )

        outcome = await self._call("spending breakdown", self.budgets.spending_breakdown)
        if outcome.failed:
            return self._failure(
                turn.intent, f"Couldn't load your spending: {outcome.error}", outcome.error, entities
            )
        spending = {cid: spent for cid, spent in outcome.value.items() if spent > 0}
        if not spending:
            return self._success(turn.intent, "No spending recorded this month.", entities)

        total = sum(spending.values(), Decimal("0"))
        names = {c.id: c.name for c in turn.categories}
        lines = ["Top spending this month", "", f"Total: {self._money(total)}", ""]
        for cid, spent in sorted(spending.items(), key=lambda kv: kv[1], reverse=True)[:5]:
            lines.append(
                f"• {names.get(cid, cid)}: {self._money(spent)} ({round(spent / total * 100)}%)"
            )
        return self._success(
            turn.intent, "\n".join(lines), entities, data={"spending": spending, "total": total}
        )

    async def _list_expenses(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        outcome = await self._call(
            "list expenses", self.expenses.list_recent, self.settings.recent_expenses_limit
        )
        if outcome.failed:
            return self._failure(
                turn.intent, f"Couldn't load your expenses: {outcome.error}", outcome.error, entities
            )
        recent = outcome.value
        if not recent:
            return self._success(turn.intent, "No expenses recorded yet.", entities)
        return self._success(
            turn.intent,
            messages.expense_list(recent, self.settings.currency_symbol),
            entities,
            data={"expenses": [e.model_dump(mode="json") for e in recent]},
        )

    async def _help(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        return self._success(turn.intent, messages.HELP_TEXT, entities)

    async def _unknown(
        self, turn: _Turn, entities: EntitySet, resolution: _Resolution | None
    ) -> DispatchResult:
        return self._success(turn.intent, messages.UNKNOWN_TEXT, entities)

    def _resolve(self, turn: _Turn, entities: EntitySet, fallback: bool) -> _Resolution:
        token = entities.category_token
        if not token:
            return self._fallback(turn.categories) if fallback else _Resolution()

        ranked = fuzzy.match(token, turn.categories, floor=self.settings.fuzzy_floor)
        if not ranked:
            if not fallback:
                return _Resolution()
            hint = " ".join(filter(None, (entities.description, token)))
            suggested = fuzzy.suggest_from_description(hint, turn.categories)
            if suggested is not None:
                logger.debug("Keyword match {!r} -> {}", token, suggested.name)
                return _Resolution(suggested.category_id, suggested.name, suggested.score)
            resolution = self._fallback(turn.categories)
            resolution.notice = (
                f'I couldn\'t find a category matching "{token}", '
                f"so I filed it under {resolution.name}."
            )
            return resolution

        best = ranked[0]
        if best.score >= 1.0:
            return _Resolution(best.category_id, best.name, best.score)
        tied = fuzzy.near_ties(ranked, self.settings.near_tie_delta)
        if len(tied) == 1:
            return _Resolution(best.category_id, best.name, best.score)

        candidates = tied[: self.settings.max_candidates]
        prompt = self._prompt(
            turn,
            PendingKind.AWAITING_SELECTION,
            entities,
            messages.format_candidates(candidates),
            candidates=candidates,
            data={"candidates": [c.model_dump() for c in candidates]},
        )
        return _Resolution(prompt=prompt)

    def _fallback(self, categories: list[Category]) -> _Resolution:
        for category in categories:
            if fuzzy.normalize(category.name) in FALLBACK_NAMES:
                return _Resolution(category.id, category.name)
        return _Resolution(None, UNCATEGORIZED)

    async def _target_expense(
        self, turn: _Turn, entities: EntitySet
    ) -> tuple[Expense | None, str | None]:
        outcome = await self._call("list expenses", self.expenses.list_recent, TARGET_LOOKBACK)
        if outcome.failed:
            return None, f"Couldn't load your expenses: {outcome.error}"
        recent = outcome.value
        if not recent:
            return None, "No expenses found. Add an expense first!"

        if entities.expense_number is not None:
            if entities.expense_number > len(recent):
                return None, f"I can only see {len(recent)} recent expenses."
            return recent[entities.expense_number - 1], None

        wanted = entities.target_expense_id or self.store.last_expense(turn.conversation_id)
        if wanted is not None:
            for expense in recent:
                if expense.id == wanted:
                    return expense, None
        return recent[0], None

    async def _budget_warning(
        self, resolution: _Resolution, amount: Decimal
    ) -> BudgetWarning | None:
        if resolution.category_id is None:
            return None
        outcome = await self._call("budget query", self.budgets.get_budget, resolution.category_id)
        if outcome.failed or not outcome.value.limit:
            return None

        status = outcome.value
        new_total = status.spent + amount
        percentage = float(new_total / status.limit * 100)
        if percentage >= 100:
            level = "over"
            message = (
                f"This will put you {round(percentage - 100)}% over your "
                f"{resolution.name} budget ({self._money(status.limit)})."
            )
        elif percentage >= self.settings.budget_warning_percent:
            level = "warning"
            message = (
                f"You'll be at {round(percentage)}% of your {resolution.name} "
                "budget after this expense."
            )
        else:
            return None
        return BudgetWarning(
            level=level,
            message=message,
            category_name=resolution.name,
            spent=status.spent,
            limit=status.limit,
            new_total=new_total,
            percentage=percentage,
        )

    async def _call(self, action: str, func: Callable[..., Awaitable], *args) -> _Outcome:
        """Await an external API call; exceptions and failed mutations become errors."""
        try:
            value = await func(*args)
        except Exception as e:
            logger.error("{} failed: {}", action, e)
            return _Outcome(error=str(e) or e.__class__.__name__)
        if getattr(value, "success", True) is False:
            reason = value.reason or "unknown error"
            logger.error("{} failed: {}", action, reason)
            return _Outcome(value=value, error=reason)
        return _Outcome(value=value)

    def _prompt(
        self,
        turn: _Turn,
        kind: PendingKind,
        entities: EntitySet,
        message: str,
        candidates: list[MatchResult] | None = None,
        data: dict | None = None,
    ) -> DispatchResult:
        pending = PendingInteraction(
            kind=kind,
            intent=turn.intent,
            entities=entities,
            candidates=candidates or [],
            summary=message,
            created_at=self.store.clock(),
        )
        logger.debug("Conversation {} now {}", turn.conversation_id, kind.value)
        response = ChatResponse(
            success=True,
            message=message,
            intent=turn.intent,
            entities=entities,
            data=data or {},
            pending_kind=kind,
        )
        return DispatchResult(response=response, pending=pending)

    def _reprompt(self, pending: PendingInteraction, message: str) -> DispatchResult:
        data = {}
        if pending.kind is PendingKind.AWAITING_SELECTION:
            message = f"{message}\n\n{pending.summary}"
            data["candidates"] = [c.model_dump() for c in pending.candidates]
        response = ChatResponse(
            success=True,
            message=message,
            intent=pending.intent,
            entities=pending.entities,
            data=data,
            pending_kind=pending.kind,
        )
        return DispatchResult(response=response, pending=pending)

    def _cancelled(self, pending: PendingInteraction) -> DispatchResult:
        return self._success(pending.intent, messages.CANCELLED, pending.entities)

    def _not_found(self, turn: _Turn, entities: EntitySet) -> DispatchResult:
        examples = ", ".join(c.name for c in turn.categories[:3])
        message = f'I couldn\'t find a category matching "{entities.category_token}".'
        if examples:
            message += f" Try: {examples}, etc."
        return self._failure(turn.intent, message, "category not found", entities)

    def _success(
        self,
        intent: Intent,
        message: str,
        entities: EntitySet | None = None,
        warning: BudgetWarning | None = None,
        data: dict | None = None,
    ) -> DispatchResult:
        response = ChatResponse(
            success=True,
            message=message,
            intent=intent,
            entities=entities,
            warning=warning,
            data=data or {},
        )
        return DispatchResult(response=response)

    def _failure(
        self,
        intent: Intent,
        message: str,
        reason: str | None,
        entities: EntitySet | None = None,
    ) -> DispatchResult:
        response = ChatResponse(
            success=False, message=message, intent=intent, entities=entities, reason=reason
        )
        return DispatchResult(response=response)

    def _money(self, amount: Decimal) -> str:
        return messages.format_money(amount, self.settings.currency_symbol)

    def _balance_line(self, net: Decimal) -> str:
        if abs(net) < CENT:
            return "All settled up! No one owes anything."
        if net > 0:
            return f"Your partner owes you {self._money(net)}"
        return f"You owe your partner {self._money(abs(net))}"
