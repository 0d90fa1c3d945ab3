from splitchat.chat.dispatcher import CommandDispatcher
from splitchat.chat.state import ConversationStore
from splitchat.config import get_settings
from splitchat.db.gateway import LocalBudgetAPI, LocalExpenseAPI
from splitchat.db.repository import ExpenseRepository

settings = get_settings()

repo = ExpenseRepository(settings.db_path)
store = ConversationStore(timeout_seconds=settings.pending_timeout_seconds)
dispatcher = CommandDispatcher(
    store, LocalExpenseAPI(repo), LocalBudgetAPI(repo), settings=settings
)
