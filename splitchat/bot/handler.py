from loguru import logger
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from splitchat.chat import messages
from splitchat.config import get_settings
from splitchat.deps import dispatcher, repo
from splitchat.models.schemas import ChatResponse, PendingKind

settings = get_settings()

REPLY_PREFIX = "reply:"


def _keyboard(response: ChatResponse) -> InlineKeyboardMarkup | None:
    """Inline buttons mirroring the pending prompt, if any."""
    if response.pending_kind is PendingKind.AWAITING_CONFIRMATION:
        return InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton("Yes ✓", callback_data=f"{REPLY_PREFIX}yes"),
                    InlineKeyboardButton("No ✗", callback_data=f"{REPLY_PREFIX}no"),
                ]
            ]
        )
    if response.pending_kind is PendingKind.AWAITING_SELECTION:
        candidates = response.data.get("candidates", [])
        buttons = [
            [InlineKeyboardButton(c["name"], callback_data=f"{REPLY_PREFIX}{i}")]
            for i, c in enumerate(candidates, 1)
        ]
        buttons.append(
            [InlineKeyboardButton("Cancel", callback_data=f"{REPLY_PREFIX}cancel")]
        )
        return InlineKeyboardMarkup(buttons)
    return None


def _render(response: ChatResponse) -> str:
    if response.warning and response.warning.message not in response.message:
        return f"{response.message}\n\n{response.warning.message}"
    return response.message


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start command."""
    await update.message.reply_text(
        "Hey! I track shared expenses and budgets for the two of you.\n\n"
        + messages.HELP_TEXT
        + "\n\nCommands:\n"
        "/expenses — Show recent expenses\n"
        "/help — Show this message"
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await start_command(update, context)


async def expenses_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    recent = repo.list_expenses(settings.recent_expenses_limit)
    if not recent:
        await update.message.reply_text("No expenses recorded yet.")
        return
    await update.message.reply_text(
        messages.expense_list(recent, settings.currency_symbol)
    )


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle incoming text messages: every one goes through the dispatcher."""
    user_text = update.message.text.strip()
    chat_id = str(update.message.chat_id)
    logger.info("Telegram message [{}]: {}", chat_id, user_text)

    # Buttons on an earlier prompt stop being meaningful once the user types
    stale_msg_id = context.chat_data.pop("prompt_message_id", None)
    if stale_msg_id:
        try:
            await context.bot.edit_message_reply_markup(
                chat_id=update.message.chat_id, message_id=stale_msg_id, reply_markup=None
            )
        except Exception as e:
            logger.debug("Could not clear old keyboard: {}", e)

    await update.message.chat.send_action("typing")

    user = update.effective_user
    result = await dispatcher.process(
        chat_id,
        user_text,
        repo.list_categories(),
        user_id=str(user.id) if user else None,
    )
    keyboard = _keyboard(result.response)
    sent = await update.message.reply_text(
        _render(result.response), reply_markup=keyboard
    )
    if keyboard is not None:
        context.chat_data["prompt_message_id"] = sent.message_id


async def handle_button(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle Yes/No and numbered-choice button presses."""
    query = update.callback_query
    await query.answer()
    if not query.data or not query.data.startswith(REPLY_PREFIX):
        return

    context.chat_data.pop("prompt_message_id", None)
    reply = query.data[len(REPLY_PREFIX):]
    chat_id = str(query.message.chat_id)
    logger.info("Telegram button [{}]: {}", chat_id, reply)

    result = await dispatcher.process_reply(
        chat_id,
        reply,
        repo.list_categories(),
        user_id=str(query.from_user.id) if query.from_user else None,
    )
    keyboard = _keyboard(result.response)
    await query.edit_message_text(_render(result.response), reply_markup=keyboard)
    if keyboard is not None:
        context.chat_data["prompt_message_id"] = query.message.message_id


def build_bot_app() -> Application:
    """Build and return the Telegram bot application."""
    app = Application.builder().token(settings.telegram_bot_token).build()

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("expenses", expenses_command))

    app.add_handler(CallbackQueryHandler(handle_button))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    return app
