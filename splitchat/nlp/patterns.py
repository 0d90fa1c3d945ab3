import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

from dateutil import parser as date_parser

from splitchat.models.schemas import (
    EQUAL_SPLIT,
    Classification,
    EntitySet,
    Intent,
    SplitRatio,
)

_I = re.IGNORECASE

# Up to two fraction digits; "1.234" is rejected rather than read as 1.23
NUMBER = r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?(?!\.?\d)"


@dataclass(frozen=True)
class IntentRule:
    priority: int
    intent: Intent
    patterns: tuple[re.Pattern, ...]

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _rule(priority: int, intent: Intent, *patterns: str) -> IntentRule:
    return IntentRule(priority, intent, tuple(re.compile(p, _I) for p in patterns))


RULES: tuple[IntentRule, ...] = tuple(
    sorted(
        [
            _rule(
                10,
                Intent.HELP,
                r"^\s*(?:help|\?|what\s+can\s+you\s+do|commands|how\s+to|how\s+does\s+this\s+work)\s*[?!.]*\s*$",
            ),
            _rule(
                20,
                Intent.DELETE_EXPENSE,
                r"\b(?:delete|remove|undo|erase)\b.*\bexpense",
                r"\bcancel\s+(?:that|the\s+last|last)\s+expense",
                r"^\s*(?:delete|remove|undo)\s+(?:that|it|last(?:\s+one)?|the\s+last(?:\s+one)?)\s*[.!]?\s*$",
            ),
            _rule(
                30,
                Intent.EDIT_EXPENSE,
                r"\b(?:edit|change|update|modify|fix|correct)\b.*\bexpense",
                r"\b(?:change|update|set|edit)\s+(?:the\s+)?(?:amount|category|description|note)\s+to\b",
            ),
            _rule(
                40,
                Intent.SETTLE,
                r"\bsettle(?:\s+up)?\b",
                r"\bmark\s+(?:\w+\s+)?(?:as\s+)?settled\b",
                r"\bcreate\s+(?:a\s+)?settlement\b",
                r"\bsquare\s+up\b",
            ),
            _rule(
                50,
                Intent.SET_BUDGET,
                r"\bset\s+.+?\s+budget\s+(?:to|at)\b",
                r"\bbudget\s+\$?\s*\d[\d,]*(?:\.\d+)?\s*(?:dollars?)?\s+(?:for|to|on)\b",
                r"\b(?:change|update|modify|raise|lower)\s+.+?\s+budget\s+to\b",
            ),
            _rule(
                60,
                Intent.QUERY_BALANCE,
                r"\bwho\s+owes\b",
                r"\bbalance\b",
                r"\bdo\s+i\s+owe\b",
                r"\bdoes\s+\w+\s+owe\b",
            ),
            _rule(
                70,
                Intent.QUERY_BUDGET,
                r"\bbudgets?\b",
                r"\bhow\s+much\s+(?:is\s+)?(?:left|remaining)\b",
            ),
            _rule(
                80,
                Intent.QUERY_SPENDING,
                r"\bhow\s+much\s+(?:did|have|has)\s+(?:we|i|you)\s+(?:spend|spent)\b",
                r"\b(?:top|highest|biggest)\s+spending\b",
                r"\b(?:show|display|check|what'?s|what\s+is)\s+(?:my\s+|our\s+|the\s+)?(?:total\s+)?spending\b",
                r"\btotal\s+spending\b",
                r"\bspending\s+(?:for|on|in)\b",
            ),
            _rule(
                90,
                Intent.LIST_EXPENSES,
                r"\b(?:show|list|display|view|see)\s+(?:me\s+)?(?:(?:the|my|our|all|recent|latest|last)\s+)*expenses\b",
                r"\brecent\s+(?:expenses|spending|transactions)\b",
                r"\bwhat\s+did\s+(?:we|i)\s+(?:spend|buy)\b",
            ),
            _rule(
                100,
                Intent.ADD_EXPENSE,
                r"\b(?:add|added|spent|spend|paid|pay|bought|record|log)\b",
                r"\$\s*\d",
                r"\d\s*(?:dollars?|bucks?|usd)\b",
                r"^\s*\d+(?:\.\d{1,2})?\s+(?:for|on)\b",
            ),
        ],
        key=lambda rule: rule.priority,
    )
)


def match_intent(text: str) -> Intent:
    for rule in RULES:
        if rule.matches(text):
            return rule.intent
    return Intent.UNKNOWN


# Amounts

_AMOUNT_PATTERNS = (
    re.compile(rf"(?:(?P<neg>-)\s*)?\$\s*(?:(?P<neg2>-)\s*)?(?P<num>{NUMBER})", _I),
    re.compile(
        rf"(?:(?P<neg>-)\s*)?(?<![\d.,])(?P<num>{NUMBER})\s*(?:dollars?|bucks?|usd)\b", _I
    ),
    re.compile(
        r"\b(?:add|added|spent|spend|paid|pay|cost|costs|record|log|bought|amount|total|to|was)"
        rf"\s+(?:(?P<neg>-)\s*)?(?P<num>{NUMBER})",
        _I,
    ),
    re.compile(rf"^\s*(?:(?P<neg>-)\s*)?(?P<num>{NUMBER})\s+(?:for|on)\b", _I),
)
_BARE_AMOUNT = re.compile(rf"(?:(?P<neg>-)\s*)?(?<![\w.,])(?P<num>{NUMBER})", _I)


def _to_decimal(raw: str) -> Decimal | None:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def extract_amount(text: str, allow_bare: bool = False) -> Decimal | None:
    """First currency amount in ``text``; negative amounts count as no amount.

    ``allow_bare`` also accepts a number with no currency context, used when the
    user is answering "how much was it?".
    """
    scrubbed = _scrub(text)
    patterns = _AMOUNT_PATTERNS + ((_BARE_AMOUNT,) if allow_bare else ())
    for pattern in patterns:
        m = pattern.search(scrubbed)
        if m is None:
            continue
        groups = m.groupdict()
        if groups.get("neg") or groups.get("neg2"):
            return None
        return _to_decimal(m.group("num"))
    return None


_AMOUNT_REPLY_RE = re.compile(
    rf"^\s*(?:it\s+was\s+|about\s+|around\s+)?\$?\s*(?P<num>{NUMBER})\s*(?:dollars?|bucks?|usd)?\s*[.!]?\s*$",
    _I,
)


def parse_amount_reply(text: str | None) -> Decimal | None:
    """Amount from a reply that consists of nothing but an amount ("$25", "25 dollars")."""
    if not text:
        return None
    m = _AMOUNT_REPLY_RE.match(text)
    return _to_decimal(m.group("num")) if m else None


# Split ratios

_SPLIT_RE = re.compile(
    r"(?<![\d.,/-])(\d{1,3})\s*%?\s*[/-]\s*(\d{1,3})\s*%?(?![\d/-])"
)
_EVEN_SPLIT_RE = re.compile(r"\bsplit\s+(?:it\s+)?(?:evenly|equally|in\s+half)\b|\bhalf\s+and\s+half\b", _I)


def extract_split_ratio(text: str) -> SplitRatio | None:
    """``NN/NN`` or ``NN-NN`` summing to exactly 100; anything else is discarded."""
    m = _SPLIT_RE.search(_strip_dates(text))
    if m:
        first, second = int(m.group(1)), int(m.group(2))
        if first + second == 100:
            return SplitRatio(first=first, second=second)
        return None
    if _EVEN_SPLIT_RE.search(text):
        return EQUAL_SPLIT
    return None


# Dates

_ISO_DATE_RE = re.compile(r"(?<!\d)\d{4}[-/]\d{1,2}[-/]\d{1,2}(?!\d)")
_RELATIVE_DATES = (
    (re.compile(r"\btoday\b", _I), 0),
    (re.compile(r"\byesterday\b", _I), 1),
    (re.compile(r"\blast\s+week\b", _I), 7),
)


def _strip_dates(text: str) -> str:
    return _ISO_DATE_RE.sub(" ", text)


def _scrub(text: str) -> str:
    return _SPLIT_RE.sub(" ", _strip_dates(text))


def extract_date(text: str, today: date | None = None) -> date | None:
    today = today or date.today()
    for m in _ISO_DATE_RE.finditer(text):
        try:
            return date_parser.parse(m.group(0), yearfirst=True, dayfirst=False).date()
        except (ValueError, OverflowError):
            continue
    for pattern, days_back in _RELATIVE_DATES:
        if pattern.search(text):
            return today - timedelta(days=days_back)
    return None


# Categories and descriptions

_PREPOSITION_RE = {
    ("for", "on"): re.compile(r"\b(?:for|on)\s+", _I),
    ("for", "on", "in"): re.compile(r"\b(?:for|on|in)\s+", _I),
}
_CATEGORY_STOP_RE = re.compile(
    r"[,;.!?()]|\$|\d|\b(?:today|yesterday|last|this|next|split|with|for|on|in|and|at"
    r"|paid|by|budget|please|each|per|from|using|via)\b",
    _I,
)
_DESCRIPTION_STOP_RE = re.compile(
    r"[,;!?]|\$|\d|\b(?:today|yesterday|last\s+week|split|on|at)\b", _I
)
_TRAILING_PREPOSITION_RE = re.compile(r"\s+(?:on|at|for|in|to|with|from|by)$", _I)
_LEADING_NOISE_RE = re.compile(r"^(?:the|a|an|my|our|some|this|that)\s+", _I)
_BUDGET_CATEGORY_RE = re.compile(
    r"\b(?:my|our|the|in|for)\s+(?P<cat>[^\W\d][\w&' -]*?)\s+budget\b", _I
)
_SET_BUDGET_CATEGORY_RE = re.compile(
    r"\b(?:set|change|update|modify|raise|lower)\s+(?P<cat>.+?)\s+budget\b", _I
)
_AFTER_AMOUNT_RE = re.compile(
    rf"(?:\$\s*{NUMBER}|{NUMBER}\s*(?:dollars?|bucks?|usd)\b)\s+(?P<cat>[^\W\d].*)", _I
)


def _clip(fragment: str, stop_re: re.Pattern = _CATEGORY_STOP_RE) -> str | None:
    m = stop_re.search(fragment)
    if m:
        fragment = fragment[: m.start()]
    fragment = fragment.strip(" '\".-:")
    while True:
        stripped = _LEADING_NOISE_RE.sub("", fragment, count=1)
        stripped = _TRAILING_PREPOSITION_RE.sub("", stripped)
        if stripped == fragment:
            break
        fragment = stripped
    return fragment.strip() or None


def _after_preposition(
    text: str, prepositions: tuple[str, ...], stop_re: re.Pattern
) -> str | None:
    for m in _PREPOSITION_RE[prepositions].finditer(text):
        token = _clip(text[m.end():], stop_re)
        if token:
            return token
    return None


def extract_category_token(
    text: str, prepositions: tuple[str, ...] = ("for", "on")
) -> str | None:
    """Raw category text after "for"/"on", stopping at the next keyword."""
    return _after_preposition(_scrub(text), prepositions, _CATEGORY_STOP_RE)


def _budget_category_token(text: str) -> str | None:
    m = _BUDGET_CATEGORY_RE.search(text)
    if m:
        return _clip(m.group("cat"))
    return None


# Expense references

_EXPENSE_NUMBER_RE = re.compile(
    r"\bexpense\s+(?:number\s+|no\.?\s*|#\s*)?(?P<n>\d+)\b(?!\s*(?:dollars?|bucks?|\.\d))",
    _I,
)
_EDIT_FIELD_RE = re.compile(
    r"\b(?P<field>amount|category|description|note)\s+(?:to|=|as)\s+(?P<value>.+)$", _I
)
_EDIT_TO_RE = re.compile(r"\bexpense\s+(?:\d+\s+)?to\s+(?P<value>.+)$", _I)
_TIMEFRAME_RE = re.compile(r"\b(?:this|last|past)\s+(?P<unit>week|month|year)\b", _I)


def extract_expense_number(text: str) -> int | None:
    m = _EXPENSE_NUMBER_RE.search(text)
    if m:
        number = int(m.group("n"))
        return number if number > 0 else None
    return None


# Per-intent extraction


def _add_entities(text: str, today: date) -> EntitySet:
    scrubbed = _scrub(text)
    category = extract_category_token(text)
    description = _after_preposition(scrubbed, ("for", "on"), _DESCRIPTION_STOP_RE)
    if category is None:
        m = _AFTER_AMOUNT_RE.search(scrubbed)
        if m:
            category = _clip(m.group("cat"))
            description = _clip(m.group("cat"), _DESCRIPTION_STOP_RE)
    return EntitySet(
        amount=extract_amount(text),
        category_token=category,
        description=description or category,
        date=extract_date(text, today),
        split_ratio=extract_split_ratio(text),
    )


def _edit_entities(text: str, today: date) -> EntitySet:
    number = extract_expense_number(text)
    m = _EDIT_FIELD_RE.search(text)
    if m:
        field = m.group("field").lower()
        value = m.group("value").strip()
        if field == "amount":
            return EntitySet(
                expense_number=number,
                edit_field="amount",
                amount=extract_amount(value, allow_bare=True),
            )
        if field == "category":
            return EntitySet(
                expense_number=number, edit_field="category", category_token=_clip(value)
            )
        return EntitySet(
            expense_number=number,
            edit_field="description",
            description=value.strip(" '\".") or None,
        )
    m = _EDIT_TO_RE.search(text)
    if m:
        amount = extract_amount(m.group("value"), allow_bare=True)
        if amount is not None:
            return EntitySet(expense_number=number, edit_field="amount", amount=amount)
    return EntitySet(expense_number=number)


def _delete_entities(text: str, today: date) -> EntitySet:
    return EntitySet(expense_number=extract_expense_number(text))


def _set_budget_entities(text: str, today: date) -> EntitySet:
    category = None
    m = _SET_BUDGET_CATEGORY_RE.search(text)
    if m:
        category = _clip(m.group("cat"))
    if category is None:
        category = extract_category_token(text)
    return EntitySet(amount=extract_amount(text), category_token=category)


def _budget_query_entities(text: str, today: date) -> EntitySet:
    category = _budget_category_token(text) or extract_category_token(
        text, ("for", "on", "in")
    )
    return EntitySet(category_token=category)


def _spending_entities(text: str, today: date) -> EntitySet:
    m = _TIMEFRAME_RE.search(text)
    return EntitySet(
        category_token=extract_category_token(text, ("for", "on", "in")),
        timeframe=m.group("unit").lower() if m else None,
        date=extract_date(text, today),
    )


_EXTRACTORS = {
    Intent.ADD_EXPENSE: _add_entities,
    Intent.EDIT_EXPENSE: _edit_entities,
    Intent.DELETE_EXPENSE: _delete_entities,
    Intent.SET_BUDGET: _set_budget_entities,
    Intent.QUERY_BUDGET: _budget_query_entities,
    Intent.QUERY_SPENDING: _spending_entities,
}


def classify(text: str | None, today: date | None = None) -> Classification:
    """Classify ``text`` into an intent plus raw entities. Never raises."""
    if not isinstance(text, str) or not text.strip():
        return Classification(intent=Intent.UNKNOWN)

    normalized = " ".join(text.split())
    intent = match_intent(normalized)
    extractor = _EXTRACTORS.get(intent)
    if extractor is None:
        return Classification(intent=intent)
    return Classification(intent=intent, entities=extractor(normalized, today or date.today()))
