import re
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from loguru import logger

from splitchat.models.schemas import PendingInteraction

DEFAULT_TIMEOUT_SECONDS = 300

_YES = {"yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "confirm", "do it"}
_NO = {"no", "n", "nope", "nah", "cancel", "never mind", "nevermind", "stop"}
_CANCEL = {"cancel", "never mind", "nevermind", "stop", "no", "nope"}
_SELECTION_RE = re.compile(r"^#?\s*(\d+)$")


def _normalize_reply(text: str | None) -> str:
    if not text:
        return ""
    return " ".join(text.lower().split()).strip(" .!")


def interpret_confirmation(text: str | None) -> bool | None:
    """True for yes, False for no, None when the reply is neither."""
    reply = _normalize_reply(text)
    if reply in _YES:
        return True
    if reply in _NO:
        return False
    return None


def is_cancel(text: str | None) -> bool:
    return _normalize_reply(text) in _CANCEL


def parse_selection(text: str | None) -> int | None:
    """1-based choice number, or None if the reply is not a bare integer."""
    m = _SELECTION_RE.match(_normalize_reply(text))
    return int(m.group(1)) if m else None


class ConversationStore:
    """Holds at most one pending interaction per conversation id.

    Entries older than ``timeout_seconds`` are treated as abandoned and dropped
    the next time they are read or swept by ``prune``. The last expense a
    conversation touched is forgotten on the same schedule. Writes always replace
    the whole entry.
    """

    def __init__(
        self,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.timeout = timedelta(seconds=timeout_seconds)
        self.clock = clock
        self._pending: dict[str, PendingInteraction] = {}
        self._last_expense: dict[str, tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def _stale(self, created_at: datetime) -> bool:
        return self.clock() - created_at > self.timeout

    def is_expired(self, interaction: PendingInteraction) -> bool:
        return self._stale(interaction.created_at)

    def get_pending(self, conversation_id: str) -> PendingInteraction | None:
        with self._lock:
            interaction = self._pending.get(conversation_id)
            if interaction is None:
                return None
            if self.is_expired(interaction):
                del self._pending[conversation_id]
                logger.info(
                    "Pending {} for {} expired", interaction.kind.value, conversation_id
                )
                return None
            return interaction

    def set_pending(self, conversation_id: str, interaction: PendingInteraction) -> None:
        with self._lock:
            self._pending[conversation_id] = interaction

    def clear_pending(self, conversation_id: str) -> None:
        with self._lock:
            self._pending.pop(conversation_id, None)

    def remember_expense(self, conversation_id: str, expense_id: int) -> None:
        with self._lock:
            self._last_expense[conversation_id] = (expense_id, self.clock())

    def forget_expense(self, conversation_id: str, expense_id: int) -> None:
        with self._lock:
            entry = self._last_expense.get(conversation_id)
            if entry is not None and entry[0] == expense_id:
                del self._last_expense[conversation_id]

    def last_expense(self, conversation_id: str) -> int | None:
        with self._lock:
            entry = self._last_expense.get(conversation_id)
            if entry is None:
                return None
            if self._stale(entry[1]):
                del self._last_expense[conversation_id]
                return None
            return entry[0]

    def prune(self) -> int:
        """Drop every expired pending interaction and expense reference."""
        with self._lock:
            stale_pending = [
                cid for cid, interaction in self._pending.items() if self.is_expired(interaction)
            ]
            stale_expenses = [
                cid for cid, (_, touched) in self._last_expense.items() if self._stale(touched)
            ]
            for cid in stale_pending:
                del self._pending[cid]
            for cid in stale_expenses:
                del self._last_expense[cid]
        dropped = len(stale_pending) + len(stale_expenses)
        if dropped:
            logger.debug("Pruned {} stale conversation entries", dropped)
        return dropped

    def active_conversations(self) -> int:
        with self._lock:
            return len(self._pending.keys() | self._last_expense.keys())

    def drop(self, conversation_id: str) -> None:
        """Forget everything about a conversation (session teardown)."""
        with self._lock:
            self._pending.pop(conversation_id, None)
            self._last_expense.pop(conversation_id, None)
