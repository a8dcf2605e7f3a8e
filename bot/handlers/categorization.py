import logging

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from events.prompts import MESSAGES

logger = logging.getLogger(__name__)


def _services(context: ContextTypes.DEFAULT_TYPE):
    return context.bot_data.get('services')


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start command"""
    if update.message:
        await update.message.reply_text(MESSAGES.WELCOME)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /cancel command - skip the merchant being categorized or stop bill entry"""
    try:
        services = _services(context)
        if not update.message or not services:
            return

        reply = services.coordinator.cancel(str(update.effective_chat.id))
        await update.message.reply_text(reply)
    except Exception as e:
        logger.exception("❌ Error in /cancel command")
        if update.message:
            await update.message.reply_text(f"❌ Error: {str(e)}")


async def add_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /add command - the next message is a cash bill"""
    services = _services(context)
    if not update.message or not services:
        return

    logger.info(f"📥 Received /add command from chat {update.effective_chat.id}")
    await update.message.reply_text(services.coordinator.start_bill_input(str(update.effective_chat.id)))


async def queue_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /queue command - show what is waiting for a category"""
    services = _services(context)
    if not update.message or not services:
        return

    status = services.coordinator.status()
    message = f"📋 Categorization queue: {status['queue_length']} item(s)\n"
    if status['in_flight']:
        message += f"\n⏳ Now: {status['in_flight']}\n"
    if status['pending']:
        message += "\nWaiting:\n"
        for merchant in status['pending']:
            message += f"• {merchant}\n"
    await update.message.reply_text(message)


async def category_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /category <merchant> - look up the mapped category"""
    services = _services(context)
    if not update.message or not services:
        return

    merchant = " ".join(context.args or []).strip()
    if not merchant:
        await update.message.reply_text("Usage: /category <merchant>")
        return

    category = services.store.find_category(merchant)
    if category:
        await update.message.reply_text(f"📁 {merchant}: {category}")
    else:
        await update.message.reply_text(f"❓ No category for {merchant} yet")


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Route free text to the conversation waiting for it"""
    services = _services(context)
    if not update.message or not services:
        return

    chat_id = str(update.effective_chat.id)
    try:
        handled = await services.coordinator.on_text_message(chat_id, update.message.text)
        if not handled:
            logger.debug(f"Ignoring text from chat {chat_id}, nothing pending")
    except Exception as e:
        logger.exception("❌ Error handling text message")
        await update.message.reply_text(f"❌ Error: {str(e)}")


async def handle_button(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle inline keyboard presses on categorization prompts"""
    query = update.callback_query
    services = _services(context)
    if not query or not services:
        return

    try:
        reply = await services.coordinator.on_button_press(str(update.effective_chat.id), query.data)
    except Exception:
        logger.exception("❌ Error handling button press")
        await query.answer(MESSAGES.ERROR_UNKNOWN_ACTION)
        return

    await query.answer(reply.answer)
    if reply.edit_text:
        await query.edit_message_text(reply.edit_text, parse_mode=ParseMode.HTML)
    elif reply.clear_keyboard:
        await query.edit_message_reply_markup(reply_markup=None)


def setup_categorization_handlers(application, services):
    """
    Register the categorization commands, text and button handlers

    Args:
        application: The telegram Application instance
        services: The wired Services container
    """
    # Store services in bot_data for access in handlers
    application.bot_data['services'] = services

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("cancel", cancel_command))
    application.add_handler(CommandHandler("add", add_command))
    application.add_handler(CommandHandler("queue", queue_command))
    application.add_handler(CommandHandler("category", category_command))
    application.add_handler(CallbackQueryHandler(handle_button))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
