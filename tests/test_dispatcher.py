import asyncio
from decimal import Decimal

import pytest

from splitchat.chat import messages
from splitchat.chat.dispatcher import CommandDispatcher
from splitchat.config import Settings
from splitchat.db.repository import DEFAULT_CATEGORIES, slugify
from splitchat.models.schemas import Intent, PendingKind

GROCERY_PAIR = [
    {"id": "groceries", "name": "Groceries"},
    {"id": "grocery-store", "name": "Grocery Store"},
]
SEEDED = [{"id": slugify(name), "name": name} for name in DEFAULT_CATEGORIES]


def send(dispatcher, text, categories, conversation_id="c1", user_id="alice"):
    return asyncio.run(
        dispatcher.process(conversation_id, text, categories, user_id=user_id)
    )


def reply(dispatcher, text, categories, conversation_id="c1"):
    return asyncio.run(dispatcher.process_reply(conversation_id, text, categories))


def called(api, name):
    return [c for c in api.calls if c[0] == name]


# ---------------------------------------------------------------------
# Adding expenses
# ---------------------------------------------------------------------


def test_add_expense_executes_immediately(dispatcher, store, expenses):
    result = send(dispatcher, "Add $50 for groceries", [{"id": "1", "name": "Groceries"}])

    assert result.pending is None
    assert store.get_pending("c1") is None
    response = result.response
    assert response.success
    assert response.intent is Intent.ADD_EXPENSE
    assert response.entities.amount == Decimal("50")
    assert response.data["category"] == {"id": "1", "name": "Groceries"}
    assert response.message.startswith("Added $50.00 expense for groceries")

    [expense] = expenses.items
    assert expense.category_id == "1"
    assert expense.payer_share == Decimal("25.00")
    assert expense.partner_share == Decimal("25.00")
    assert expense.paid_by == "alice"


def test_add_expense_uses_extracted_split(dispatcher, expenses, categories):
    result = send(dispatcher, "60/40 for groceries, $200", categories)

    assert result.response.success
    assert "Split: 60/40" in result.response.message
    [expense] = expenses.items
    assert expense.payer_share == Decimal("120.00")
    assert expense.partner_share == Decimal("80.00")


def test_malformed_split_falls_back_to_even(dispatcher, expenses, categories):
    result = send(dispatcher, "70/40 for groceries, $100", categories)

    assert result.response.success
    assert str(expenses.items[0].split) == "50/50"


def test_ambiguous_category_asks_for_selection(dispatcher, store, expenses):
    result = send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    assert result.response.pending_kind is PendingKind.AWAITING_SELECTION
    names = [c.name for c in result.pending.candidates]
    assert names == ["Groceries", "Grocery Store"]
    assert "1. Groceries" in result.response.message
    assert "2. Grocery Store" in result.response.message
    assert expenses.items == []

    result = send(dispatcher, "2", GROCERY_PAIR)

    assert result.response.success
    assert result.pending is None
    assert store.get_pending("c1") is None
    [expense] = expenses.items
    assert expense.category_id == "grocery-store"
    assert expense.amount == Decimal("30")


def test_unmatched_category_falls_back_with_notice(dispatcher, store, expenses):
    result = send(dispatcher, "Add $20 for xyzzy", [{"id": "1", "name": "Groceries"}])

    assert result.response.success
    assert result.pending is None
    assert store.get_pending("c1") is None
    assert 'couldn\'t find a category matching "xyzzy"' in result.response.message
    [expense] = expenses.items
    assert expense.category_id is None
    assert expense.category_name == "Uncategorized"


def test_unmatched_category_prefers_other_bucket(dispatcher, expenses, categories):
    send(dispatcher, "Add $20 for xyzzy", categories)

    assert expenses.items[0].category_id == "other"


@pytest.mark.parametrize(
    "text, category_id",
    [
        ("Add $12 for lunch", "food-dining"),
        ("Add $20 for uber", "transport"),
        ("Add $900 for rent", "home-utilities"),
    ],
)
def test_description_keywords_pick_category(dispatcher, expenses, text, category_id):
    result = send(dispatcher, text, SEEDED)

    assert result.response.success
    assert "couldn't find" not in result.response.message
    assert expenses.items[0].category_id == category_id


def test_no_keyword_still_files_under_other(dispatcher, expenses):
    result = send(dispatcher, "Add $5 for xyzzy", SEEDED)

    assert 'couldn\'t find a category matching "xyzzy"' in result.response.message
    assert expenses.items[0].category_id == "other"


def test_missing_amount_is_requested(dispatcher, store, expenses, categories):
    result = send(dispatcher, "Spent money on lunch", categories)

    assert result.response.pending_kind is PendingKind.AWAITING_AMOUNT
    assert result.response.message == messages.AMOUNT_PROMPT
    assert expenses.items == []

    result = send(dispatcher, "$25", categories)

    assert result.response.success
    assert store.get_pending("c1") is None
    [expense] = expenses.items
    assert expense.amount == Decimal("25")
    assert expense.description == "lunch"


def test_budget_warning_near_limit(dispatcher, budgets, categories):
    budgets.limits["groceries"] = Decimal("100")
    budgets.spent["groceries"] = Decimal("70")

    result = send(dispatcher, "Add $15 for groceries", categories)

    warning = result.response.warning
    assert result.response.success
    assert warning.level == "warning"
    assert warning.percentage == 85.0
    assert warning.message in result.response.message


def test_budget_warning_over_limit(dispatcher, budgets, categories):
    budgets.limits["groceries"] = Decimal("100")
    budgets.spent["groceries"] = Decimal("70")

    result = send(dispatcher, "Add $40 for groceries", categories)

    assert result.response.success
    assert result.response.warning.level == "over"
    assert "10% over" in result.response.warning.message


def test_budget_check_failure_does_not_block_add(dispatcher, budgets, expenses, categories):
    budgets.limits["groceries"] = Decimal("100")
    budgets.fail.add("get_budget")

    result = send(dispatcher, "Add $95 for groceries", categories)

    assert result.response.success
    assert result.response.warning is None
    assert len(expenses.items) == 1


def test_failed_create_reports_reason(dispatcher, store, expenses, categories):
    expenses.fail.add("create")

    result = send(dispatcher, "Add $10 for groceries", categories)

    assert not result.response.success
    assert result.response.reason == "create unavailable"
    assert store.get_pending("c1") is None


# ---------------------------------------------------------------------
# Confirmation flow
# ---------------------------------------------------------------------


def test_delete_requires_confirmation(dispatcher, store, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)

    result = send(dispatcher, "delete expense", categories)

    assert result.response.pending_kind is PendingKind.AWAITING_CONFIRMATION
    assert store.get_pending("c1").kind is PendingKind.AWAITING_CONFIRMATION
    assert "$50.00" in result.response.message
    assert called(expenses, "delete") == []

    result = send(dispatcher, "yes", categories)

    assert result.response.success
    assert result.response.message == "Expense deleted."
    assert store.get_pending("c1") is None
    assert expenses.items == []


def test_declined_confirmation_cancels(dispatcher, store, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)
    send(dispatcher, "delete expense", categories)

    result = send(dispatcher, "nope", categories)

    assert result.response.message == messages.CANCELLED
    assert store.get_pending("c1") is None
    assert len(expenses.items) == 1


def test_confirmation_is_never_superseded(dispatcher, store, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)
    send(dispatcher, "delete expense", categories)

    result = send(dispatcher, "Add $5 for coffee", categories)

    assert result.response.message == messages.CONFIRM_REPROMPT
    assert store.get_pending("c1").kind is PendingKind.AWAITING_CONFIRMATION
    assert len(expenses.items) == 1


def test_failed_delete_returns_to_idle(dispatcher, store, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)
    send(dispatcher, "delete expense", categories)
    expenses.fail.add("delete")

    result = send(dispatcher, "yes", categories)

    assert not result.response.success
    assert result.response.reason == "delete unavailable"
    assert store.get_pending("c1") is None


def test_delete_by_number(dispatcher, expenses, categories):
    send(dispatcher, "Add $10 for groceries", categories)
    send(dispatcher, "Add $20 for transport", categories)

    result = send(dispatcher, "delete expense 2", categories)
    assert result.pending.entities.target_expense_id == 1

    send(dispatcher, "y", categories)
    assert [e.amount for e in expenses.items] == [Decimal("20")]


def test_delete_with_no_expenses(dispatcher, store, categories):
    result = send(dispatcher, "delete expense", categories)

    assert not result.response.success
    assert store.get_pending("c1") is None


def test_expired_confirmation_is_ignored(dispatcher, store, clock, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)
    send(dispatcher, "delete expense", categories)
    clock.advance(301)

    result = send(dispatcher, "yes", categories)

    assert result.response.intent is Intent.UNKNOWN
    assert called(expenses, "delete") == []
    assert len(expenses.items) == 1


def test_settle_confirms_then_settles(dispatcher, store, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)

    result = send(dispatcher, "settle up", categories)

    assert result.response.pending_kind is PendingKind.AWAITING_CONFIRMATION
    assert "Your partner owes you $25.00" in result.response.message

    result = send(dispatcher, "yes", categories)

    assert result.response.success
    assert "Marked 1 expense as settled" in result.response.message
    assert all(e.settled_at is not None for e in expenses.items)


def test_settle_with_nothing_open(dispatcher, store, categories):
    result = send(dispatcher, "settle up", categories)

    assert result.response.success
    assert result.pending is None
    assert "Nothing to settle" in result.response.message


# ---------------------------------------------------------------------
# Selection flow and superseding
# ---------------------------------------------------------------------


def test_out_of_range_selection_reprompts(dispatcher, store):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    result = send(dispatcher, "9", GROCERY_PAIR)

    assert result.response.pending_kind is PendingKind.AWAITING_SELECTION
    assert result.response.message.startswith(messages.selection_reprompt(2))
    assert store.get_pending("c1").kind is PendingKind.AWAITING_SELECTION


def test_unclear_selection_reply_reprompts(dispatcher, store):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    result = send(dispatcher, "hmm not sure", GROCERY_PAIR)

    assert result.response.pending_kind is PendingKind.AWAITING_SELECTION
    assert store.get_pending("c1") is not None


def test_selection_cancel(dispatcher, store, expenses):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    result = send(dispatcher, "cancel", GROCERY_PAIR)

    assert result.response.message == messages.CANCELLED
    assert store.get_pending("c1") is None
    assert expenses.items == []


def test_new_command_supersedes_selection(dispatcher, store, expenses):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    result = send(dispatcher, "What's our balance?", GROCERY_PAIR)

    assert result.response.intent is Intent.QUERY_BALANCE
    assert store.get_pending("c1") is None
    assert expenses.items == []


def test_new_command_supersedes_amount_prompt(dispatcher, store, categories):
    send(dispatcher, "Spent money on lunch", categories)

    result = send(dispatcher, "show recent expenses", categories)

    assert result.response.intent is Intent.LIST_EXPENSES
    assert store.get_pending("c1") is None


def test_supersede_can_be_disabled(store, expenses, budgets):
    strict = CommandDispatcher(
        store, expenses, budgets, settings=Settings(_env_file=None, supersede_pending=False)
    )
    send(strict, "Add $30 for grocry", GROCERY_PAIR)

    result = send(strict, "What's our balance?", GROCERY_PAIR)

    assert result.response.pending_kind is PendingKind.AWAITING_SELECTION
    assert store.get_pending("c1") is not None


def test_process_reply_never_supersedes(dispatcher, store):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    result = reply(dispatcher, "What's our balance?", GROCERY_PAIR)

    assert result.response.pending_kind is PendingKind.AWAITING_SELECTION
    assert store.get_pending("c1") is not None

    result = reply(dispatcher, "1", GROCERY_PAIR)
    assert result.response.success
    assert result.response.data["category"]["id"] == "groceries"


def test_process_reply_with_nothing_pending(dispatcher, categories):
    result = reply(dispatcher, "yes", categories)

    assert not result.response.success
    assert result.response.message == messages.NOTHING_PENDING


def test_end_conversation_drops_pending(dispatcher, store):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    dispatcher.end_conversation("c1")

    assert store.get_pending("c1") is None


def test_conversations_are_independent(dispatcher, store):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR, conversation_id="a")

    result = send(dispatcher, "2", GROCERY_PAIR, conversation_id="b")

    assert result.response.intent is Intent.UNKNOWN
    assert store.get_pending("a") is not None


def test_interrupted_new_command_keeps_selection(dispatcher, store, expenses, monkeypatch):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    async def interrupted(user_id):
        raise asyncio.CancelledError

    monkeypatch.setattr(expenses, "balance", interrupted)
    with pytest.raises(asyncio.CancelledError):
        send(dispatcher, "What's our balance?", GROCERY_PAIR)

    assert store.get_pending("c1").kind is PendingKind.AWAITING_SELECTION
    assert dispatcher.active_locks() == 0

    result = send(dispatcher, "2", GROCERY_PAIR)
    assert result.response.success
    assert expenses.items[0].category_id == "grocery-store"


def test_selection_reprompt_keeps_candidates(dispatcher):
    send(dispatcher, "Add $30 for grocry", GROCERY_PAIR)

    result = send(dispatcher, "hmm not sure", GROCERY_PAIR)

    names = [c["name"] for c in result.response.data["candidates"]]
    assert names == ["Groceries", "Grocery Store"]


def test_finished_conversations_release_locks(dispatcher):
    for n in range(200):
        send(dispatcher, "help", [], conversation_id=f"chat-{n}")

    assert dispatcher.active_locks() == 0


# ---------------------------------------------------------------------
# Edits and queries
# ---------------------------------------------------------------------


def test_edit_last_expense_amount(dispatcher, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)

    result = send(dispatcher, "Change last expense amount to $60", categories)

    assert result.response.success
    assert "$50.00 → $60.00" in result.response.message
    [expense] = expenses.items
    assert expense.amount == Decimal("60")
    assert expense.payer_share == Decimal("30.00")


def test_edit_category(dispatcher, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)

    result = send(dispatcher, "Change last expense category to food", categories)

    assert result.response.success
    assert expenses.items[0].category_id == "food"


def test_edit_to_unknown_category_is_not_found(dispatcher, expenses, categories):
    send(dispatcher, "Add $50 for groceries", categories)

    result = send(dispatcher, "Change last expense category to xyzzy", categories)

    assert not result.response.success
    assert 'couldn\'t find a category matching "xyzzy"' in result.response.message
    assert expenses.items[0].category_id == "groceries"
    assert called(expenses, "update") == []


def test_food_budget_query(dispatcher, budgets, categories):
    budgets.limits["food"] = Decimal("300")
    budgets.spent["food"] = Decimal("120")

    result = send(dispatcher, "what's my food budget", categories)

    response = result.response
    assert response.intent is Intent.QUERY_BUDGET
    assert response.entities.category_token == "food"
    assert ("get_budget", "food") in budgets.calls
    assert "$120.00" in response.message
    assert "$300.00" in response.message
    assert response.data["remaining"] == Decimal("180")


def test_budget_query_matches_longer_category_name(dispatcher, budgets):
    cats = [{"id": "food-dining", "name": "Food & Dining"}, {"id": "groceries", "name": "Groceries"}]

    result = send(dispatcher, "what's my food budget", cats)

    assert result.response.success
    assert ("get_budget", "food-dining") in budgets.calls


def test_budget_query_unknown_category(dispatcher, budgets, categories):
    result = send(dispatcher, "what's my xyzzy budget", categories)

    assert not result.response.success
    assert "Try: Food, Groceries, Transport" in result.response.message
    assert result.pending is None


def test_overall_budget_without_limits(dispatcher, budgets, categories):
    budgets.spent["food"] = Decimal("42")

    result = send(dispatcher, "show my budget status", categories)

    assert result.response.success
    assert "don't have a budget" in result.response.message
    assert "$42.00" in result.response.message


def test_set_budget(dispatcher, budgets, categories):
    result = send(dispatcher, "Set groceries budget to $500", categories)

    assert result.response.intent is Intent.SET_BUDGET
    assert budgets.limits == {"groceries": Decimal("500")}


def test_spending_breakdown(dispatcher, budgets, categories):
    budgets.spent.update({"food": Decimal("75"), "transport": Decimal("25")})

    result = send(dispatcher, "top spending categories", categories)

    message = result.response.message
    assert "Total: $100.00" in message
    assert message.index("Food") < message.index("Transport")


def test_balance_and_list(dispatcher, categories):
    send(dispatcher, "Add $50 for groceries", categories)

    balance = send(dispatcher, "What's our balance?", categories)
    listing = send(dispatcher, "show recent expenses", categories)

    assert "Your partner owes you $25.00" in balance.response.message
    assert "1. $50.00 - groceries" in listing.response.message


def test_help_and_unknown(dispatcher, categories):
    assert send(dispatcher, "help", categories).response.message == messages.HELP_TEXT

    unknown = send(dispatcher, "hello there", categories).response
    assert unknown.success
    assert unknown.intent is Intent.UNKNOWN
    assert unknown.message == messages.UNKNOWN_TEXT


def test_bad_input_never_raises(dispatcher):
    result = send(dispatcher, "Add $5 for food", [{"id": "x"}])

    assert not result.response.success


def test_same_conversation_is_serialized(dispatcher, expenses, categories):
    async def burst():
        return await asyncio.gather(
            dispatcher.process("c1", "Add $10 for groceries", categories),
            dispatcher.process("c1", "Add $20 for groceries", categories),
        )

    results = asyncio.run(burst())

    assert all(r.response.success for r in results)
    assert expenses.max_in_flight == 1
    assert [e.amount for e in expenses.items] == [Decimal("10"), Decimal("20")]
