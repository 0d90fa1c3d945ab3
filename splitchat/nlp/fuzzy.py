import re
from collections.abc import Iterable, Mapping

from rapidfuzz.distance import Levenshtein

from splitchat.models.schemas import Category, MatchResult

DEFAULT_FLOOR = 0.5
DEFAULT_THRESHOLD = 0.6
SUBSTRING_SCORE = 0.9
MIN_SUBSTRING_LEN = 3
KEYWORD_SCORE = 0.8

# (words that name the category, words that hint at it in a description)
KEYWORDS = (
    (
        ("groceries", "grocery"),
        ("grocery", "groceries", "supermarket", "market", "food shopping",
         "trader joe", "whole foods", "safeway", "walmart"),
    ),
    (
        ("food", "dining", "restaurants"),
        ("restaurant", "lunch", "dinner", "breakfast", "brunch", "cafe", "coffee",
         "pizza", "burger", "meal", "takeout", "delivery"),
    ),
    (
        ("transport", "transportation", "travel"),
        ("uber", "lyft", "taxi", "gas", "fuel", "parking", "metro", "bus", "train",
         "subway", "transit"),
    ),
    (
        ("home", "housing", "utilities"),
        ("rent", "mortgage", "utilities", "electricity", "water", "internet",
         "cable", "cleaning", "maintenance"),
    ),
    (
        ("entertainment", "fun"),
        ("movie", "movies", "cinema", "concert", "game", "netflix", "spotify",
         "subscription", "hobby"),
    ),
    (
        ("healthcare", "health", "medical"),
        ("doctor", "hospital", "pharmacy", "medicine", "medical", "health",
         "dentist", "prescription"),
    ),
    (
        ("shopping",),
        ("clothes", "clothing", "shoes", "amazon", "mall", "store", "shop"),
    ),
)
_WORD_RE = re.compile(r"[^\W_]+")


def normalize(value: str | None) -> str:
    if not value:
        return ""
    return "".join(ch for ch in value.lower().strip() if ch.isalnum())


def similarity(a: str, b: str) -> float:
    """Similarity of two already-normalized strings in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def score(needle: str, name: str) -> float:
    """Similarity with the substring bonus applied; both arguments already normalized."""
    value = similarity(needle, name)
    if value < SUBSTRING_SCORE and min(len(needle), len(name)) >= MIN_SUBSTRING_LEN:
        if needle in name or name in needle:
            return SUBSTRING_SCORE
    return value


def as_category(candidate: Category | Mapping) -> Category:
    if isinstance(candidate, Category):
        return candidate
    return Category(id=str(candidate["id"]), name=str(candidate["name"]))


def match(
    token: str | None,
    candidates: Iterable[Category | Mapping] | None,
    floor: float = DEFAULT_FLOOR,
) -> list[MatchResult]:
    """Rank every candidate against ``token``, best first.

    Ties keep candidate order. Candidates scoring below ``floor`` are dropped, so an
    empty list means "no match".
    """
    needle = normalize(token)
    if not needle or not candidates:
        return []

    results = []
    for candidate in candidates:
        category = as_category(candidate)
        value = score(needle, normalize(category.name))
        if value >= floor:
            results.append(
                MatchResult(category_id=category.id, name=category.name, score=value)
            )

    # sorted() is stable, so equal scores stay in declaration order
    return sorted(results, key=lambda m: m.score, reverse=True)


def best_match(
    token: str | None,
    candidates: Iterable[Category | Mapping] | None,
    threshold: float = DEFAULT_THRESHOLD,
) -> MatchResult | None:
    ranked = match(token, candidates, floor=threshold)
    return ranked[0] if ranked else None


def near_ties(matches: list[MatchResult], delta: float) -> list[MatchResult]:
    """Leading run of ``matches`` whose score is within ``delta`` of the best one."""
    if not matches:
        return []
    top = matches[0].score
    return [m for m in matches if top - m.score <= delta]


def _words(value: str | None) -> list[str]:
    return _WORD_RE.findall((value or "").lower())


def _keyword_hits(text: str, keywords: tuple[str, ...]) -> int:
    padded = f" {text} "
    return sum(1 for keyword in keywords if f" {keyword} " in padded)


def suggest_from_description(
    description: str | None, categories: Iterable[Category | Mapping] | None
) -> MatchResult | None:
    """Guess a category from keywords in ``description`` ("uber" -> Transport).

    The keyword group with the most hits wins, earlier groups on ties, and only
    groups naming one of ``categories`` are considered.
    """
    text = " ".join(_words(description))
    if not text or not categories:
        return None

    candidates = [as_category(c) for c in categories]
    best, best_hits = None, 0
    for names, keywords in KEYWORDS:
        hits = _keyword_hits(text, keywords)
        if hits <= best_hits:
            continue
        category = next(
            (c for c in candidates if set(names) & set(_words(c.name))), None
        )
        if category is not None:
            best, best_hits = category, hits

    if best is None:
        return None
    return MatchResult(category_id=best.id, name=best.name, score=KEYWORD_SCORE)
