from decimal import Decimal

from splitchat.models.schemas import Expense, MatchResult

HELP_TEXT = """\
Budget assistant commands

Add expenses:
• "Add $50 for groceries"
• "I spent 30 dollars on lunch yesterday"
• "60/40 for rent, $1200"

Edit or delete:
• "Change last expense amount to $60"
• "Change last expense category to food"
• "Delete last expense"

Budgets:
• "What's my food budget?"
• "Show my budget status"
• "Set groceries budget to $500"

Balance and spending:
• "What's our balance?"
• "Top spending categories"
• "How much did we spend on food this month?"
• "Show recent expenses"
• "Settle up\""""

UNKNOWN_TEXT = """\
I'm not sure what you want to do. Try:
• "Add $50 for groceries"
• "Show my budget"
• "What's our balance?"

Or type "help" for more commands."""

CONFIRM_REPROMPT = 'Please reply with "yes" to confirm or "no" to cancel.'
AMOUNT_PROMPT = 'How much was it? Reply with an amount like $25, or "cancel".'
CANCELLED = "Cancelled."
NOTHING_PENDING = "Nothing to confirm. Send a new message."


def format_money(amount: Decimal | float | int, symbol: str = "$") -> str:
    value = Decimal(str(amount))
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def format_candidates(candidates: list[MatchResult]) -> str:
    lines = ["I found multiple matching categories:", ""]
    for i, candidate in enumerate(candidates, 1):
        lines.append(f"{i}. {candidate.name} ({round(candidate.score * 100)}% match)")
    lines.append("")
    lines.append('Which one did you mean? Reply with a number, or "cancel".')
    return "\n".join(lines)


def selection_reprompt(count: int) -> str:
    return f'Please choose a number between 1 and {count}, or "cancel".'


def expense_label(expense: Expense, symbol: str = "$") -> str:
    """One-line label: '$50.00 - groceries (Groceries)'."""
    label = format_money(expense.amount, symbol)
    if expense.description:
        label += f" - {expense.description}"
    if expense.category_name and expense.category_name != expense.description:
        label += f" ({expense.category_name})"
    return label


def expense_list(expenses: list[Expense], symbol: str = "$") -> str:
    lines = ["Recent expenses", ""]
    for i, expense in enumerate(expenses, 1):
        lines.append(f"{i}. {format_money(expense.amount, symbol)} - {expense.description}")
        lines.append(f"   {expense.date.strftime('%b %d')} • {expense.category_name}")
    return "\n".join(lines)
