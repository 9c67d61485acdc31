"""
Operator bot: payout cards, accept button, proof upload and admin menus.

Operators are notified with a card whose button carries `ap:<short_id>:<last4>`;
Telegram caps callback data at 64 bytes, hence the short id. Accept, proof and
cancel all go through PayoutService so the bot never writes transaction state
itself.

Conversation state (which input the user is expected to send next) is kept
per user in memory and is lost on restart.
"""

import asyncio
import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from app.constants.banks import get_bank_name
from app.core.config import BotConfig, PayoutConfig
from app.core.exceptions import (
    BaseAppError,
    NotFoundError,
    PayoutValidationError,
    StaleStateError,
    UnauthorizedOperatorError,
)
from app.core.monitoring import error_monitor
from app.models import TransactionStatus
from app.services.dispatch import OperatorNotification
from app.services.proof_storage import EXTENSIONS, ProofStorage

logger = logging.getLogger(__name__)

ACCEPT_PATTERN = re.compile(r"^ap:([^:]+):(\d*)$")
DOWNLOAD_TIMEOUT_SECONDS = 30


@dataclass
class OperatorSession:
    """What the bot expects from a user next"""

    awaiting_balance: bool = False
    awaiting_operator_id: bool = False
    awaiting_proof: bool = False
    current_tx_id: Optional[str] = None


# --- rendering ---

def main_keyboard(is_admin: bool, is_operator: bool) -> InlineKeyboardMarkup:
    buttons = []
    if is_operator:
        buttons.append([
            InlineKeyboardButton("💰 My balance", callback_data="check_balance"),
            InlineKeyboardButton("💵 Set balance", callback_data="set_balance"),
        ])
    if is_admin:
        buttons.append([
            InlineKeyboardButton("👥 Operators", callback_data="list_operators"),
            InlineKeyboardButton("➕ Add operator", callback_data="add_operator"),
        ])
        buttons.append([
            InlineKeyboardButton("📊 Statistics", callback_data="statistics"),
            InlineKeyboardButton("⚙️ Settings", callback_data="settings"),
        ])
    buttons.append([InlineKeyboardButton("ℹ️ Help", callback_data="help")])
    return InlineKeyboardMarkup(buttons)


def cancel_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton("❌ Cancel", callback_data="cancel_action")]])


def accept_callback_data(short_id: str, destination_suffix: str) -> str:
    return f"ap:{short_id}:{destination_suffix}"


def parse_accept_callback(data: str) -> Optional[Tuple[str, str]]:
    match = ACCEPT_PATTERN.match(data or "")
    if not match:
        return None
    return match.group(1), match.group(2)


def format_payout_card(payload: OperatorNotification) -> str:
    expires = payload.expires_at.strftime("%d.%m.%Y %H:%M:%S UTC")
    return (
        "💰 <b>New payout request</b>\n\n"
        f"💵 Amount: <b>{payload.amount:,.2f}</b> {html.escape(payload.currency)}\n"
        f"🏦 Bank: <b>{html.escape(get_bank_name(payload.payment_method))}</b>\n"
        f"⏱ Deadline: <b>{expires}</b>\n"
        f"🆔 ID: <code>{html.escape(payload.tx_id)}</code>"
    )


class OperatorBot:
    """Telegram front end for operators and the admin"""

    def __init__(
        self,
        config: BotConfig,
        payout_config: PayoutConfig,
        service,
        store,
        storage: ProofStorage,
        application: Optional[Application] = None,
    ):
        self.config = config
        self.payout_config = payout_config
        self.service = service
        self.store = store
        self.storage = storage
        self.application = application or Application.builder().token(config.token).build()
        self.sessions: Dict[int, OperatorSession] = {}
        self._polling = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def register_handlers(self) -> None:
        app = self.application
        app.add_handler(CommandHandler("start", self.handle_start))
        app.add_handler(CallbackQueryHandler(self.handle_accept, pattern=r"^ap:"))
        app.add_handler(CallbackQueryHandler(self.handle_check_balance, pattern=r"^check_balance$"))
        app.add_handler(CallbackQueryHandler(self.handle_set_balance, pattern=r"^set_balance$"))
        app.add_handler(CallbackQueryHandler(self.handle_list_operators, pattern=r"^list_operators$"))
        app.add_handler(CallbackQueryHandler(self.handle_add_operator, pattern=r"^add_operator$"))
        app.add_handler(CallbackQueryHandler(self.handle_statistics, pattern=r"^statistics$"))
        app.add_handler(CallbackQueryHandler(self.handle_settings, pattern=r"^settings$"))
        app.add_handler(CallbackQueryHandler(self.handle_cancel, pattern=r"^cancel_action$"))
        app.add_handler(CallbackQueryHandler(self.handle_help, pattern=r"^help$"))
        app.add_handler(MessageHandler(filters.PHOTO | filters.Document.ALL, self.handle_proof_upload))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_text))
        app.add_error_handler(self.handle_error)

    async def start(self) -> None:
        self.register_handlers()
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()
        self._polling = True
        logger.info("Operator bot started in polling mode")

    async def stop(self) -> None:
        if self._polling:
            await self.application.updater.stop()
            self._polling = False
        await self.application.stop()
        await self.application.shutdown()
        logger.info("Operator bot stopped")

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------

    async def notify_operator(self, operator_id: int, payload: OperatorNotification) -> bool:
        """Send one payout card. Never raises; the dispatcher records failures."""
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton(
                "✅ Accept",
                callback_data=accept_callback_data(payload.short_id, payload.destination_suffix),
            )
        ]])
        try:
            await self.application.bot.send_message(
                chat_id=operator_id,
                text=format_payout_card(payload),
                parse_mode=ParseMode.HTML,
                reply_markup=keyboard,
            )
            return True
        except TelegramError as e:
            logger.warning(f"Payout card for {payload.tx_id} not delivered to {operator_id}: {e}")
            return False

    async def _notify_admin(self, text: str) -> None:
        if not self.config.admin_telegram_id:
            return
        try:
            await self.application.bot.send_message(chat_id=self.config.admin_telegram_id, text=text)
        except TelegramError as e:
            logger.warning(f"Admin notification failed: {e}")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def session(self, user_id: int) -> OperatorSession:
        return self.sessions.setdefault(user_id, OperatorSession())

    def reset_session(self, user_id: int) -> None:
        self.sessions[user_id] = OperatorSession()

    async def roles(self, update: Update) -> Tuple[bool, bool]:
        """(is_admin, is_operator); unknown users are registered without rights."""
        user = update.effective_user
        is_admin = self.config.admin_telegram_id is not None and user.id == self.config.admin_telegram_id
        record = await self.store.ensure_user(user.id, user.username)
        return is_admin, bool(record.is_operator)

    async def _reply(self, update: Update, text: str, **kwargs) -> None:
        await update.effective_message.reply_text(text, **kwargs)

    async def _deny(self, update: Update, text: str) -> None:
        if update.callback_query:
            await update.callback_query.answer(text)

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.show_main_menu(update)

    async def show_main_menu(self, update: Update) -> None:
        is_admin, is_operator = await self.roles(update)
        name = html.escape(update.effective_user.first_name or "user")

        if is_admin:
            text = f"🎉 Welcome, {name}!\n\n👑 Admin panel\n\nChoose an action:"
        elif is_operator:
            text = f"🎉 Welcome, {name}!\n\n🔧 Operator panel\n\nChoose an action:"
        else:
            text = "⛔️ Access denied\n\nYou do not have permission to use this bot."

        await self._reply(update, text, parse_mode=ParseMode.HTML, reply_markup=main_keyboard(is_admin, is_operator))

    async def handle_accept(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        user = update.effective_user

        _, is_operator = await self.roles(update)
        if not is_operator:
            await query.answer("⛔️ Not allowed")
            return

        parsed = parse_accept_callback(query.data)
        if parsed is None:
            await query.answer("❌ Malformed request")
            return
        short_id, _ = parsed

        try:
            transaction = await self.service.accept_short(short_id, user.id)
        except NotFoundError:
            await query.answer()
            await self._reply(update, "❌ Transaction not found or outdated")
            return
        except StaleStateError:
            await query.answer()
            await self._reply(update, "❌ This payout is no longer available")
            return
        except BaseAppError as e:
            error_monitor.log_error(e, {"context": "bot_accept", "operator_id": user.id})
            await query.answer()
            await self._reply(update, "❌ Failed to accept the payout")
            return

        session = self.session(user.id)
        session.awaiting_proof = True
        session.current_tx_id = transaction.tx_id

        await query.answer()
        await self._reply(
            update,
            "✅ Payout accepted!\n\n"
            "💳 Recipient details:\n"
            f"<code>{html.escape(transaction.destination)}</code>\n\n"
            "After the transfer, send a screenshot of the receipt.",
            parse_mode=ParseMode.HTML,
            reply_markup=cancel_keyboard(),
        )

        try:
            await query.edit_message_reply_markup(reply_markup=None)
        except TelegramError as e:
            logger.debug(f"Could not remove accept button: {e}")

    async def handle_proof_upload(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        message = update.effective_message
        session = self.sessions.get(user.id)
        if not session or not session.awaiting_proof or not session.current_tx_id:
            return

        tx_id = session.current_tx_id
        filename = None
        try:
            if message.photo:
                attachment = message.photo[-1]
                content_type = "image/jpeg"
            else:
                attachment = message.document
                content_type = attachment.mime_type
            self.storage.validate_upload(content_type, attachment.file_size)

            tg_file = await attachment.get_file()
            data = await asyncio.wait_for(tg_file.download_as_bytearray(), timeout=DOWNLOAD_TIMEOUT_SECONDS)

            ext = EXTENSIONS.get(content_type)
            if ext is None and tg_file.file_path and "." in tg_file.file_path:
                ext = tg_file.file_path.rsplit(".", 1)[-1]
            filename = await self.storage.save(tx_id, bytes(data), ext or "jpg")

            await self.service.confirm_proof(tx_id, user.id, filename)
        except PayoutValidationError as e:
            await self._reply(update, f"❌ {e.message}", reply_markup=cancel_keyboard())
            return
        except (StaleStateError, UnauthorizedOperatorError, NotFoundError):
            if filename:
                await self.storage.discard(filename)
            self.reset_session(user.id)
            await self._reply(update, "❌ This payout can no longer be completed")
            return
        except (BaseAppError, TelegramError, asyncio.TimeoutError, OSError) as e:
            error_monitor.log_error(e, {"context": "bot_proof_upload", "tx_id": tx_id})
            await self._reply(update, "❌ Failed to upload the screenshot, please try again")
            return

        self.reset_session(user.id)
        await self._reply(update, "✅ Screenshot uploaded!\nThe payout is marked as completed.")
        await self._notify_admin(
            f"🔔 New screenshot uploaded\nTransaction: {tx_id}\nOperator: {user.username or user.id}"
        )

    async def handle_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        user = update.effective_user
        session = self.sessions.get(user.id)

        if session and session.current_tx_id:
            try:
                await self.service.cancel(session.current_tx_id, reason="Cancelled by operator")
            except (StaleStateError, NotFoundError) as e:
                logger.info(f"Cancel ignored for {session.current_tx_id}: {e.message}")
            except BaseAppError as e:
                error_monitor.log_error(e, {"context": "bot_cancel", "tx_id": session.current_tx_id})

        self.reset_session(user.id)
        await query.answer()
        await self._reply(update, "🚫 Action cancelled")
        await self.show_main_menu(update)

    async def handle_check_balance(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        _, is_operator = await self.roles(update)
        if not is_operator:
            await self._deny(update, "⛔️ Not allowed")
            return

        operator = await self.store.get_operator(update.effective_user.id)
        await query.answer()
        await self._reply(
            update,
            "💰 <b>Balance</b>\n\n"
            f"Current: <b>{operator.balance}</b> {self.payout_config.currency}\n"
            f"Maximum: <b>{operator.max_balance}</b> {self.payout_config.currency}\n"
            f"🕒 Updated: {datetime.now(timezone.utc):%d.%m.%Y %H:%M:%S} UTC",
            parse_mode=ParseMode.HTML,
        )

    async def handle_set_balance(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        _, is_operator = await self.roles(update)
        if not is_operator:
            await self._deny(update, "⛔️ Not allowed")
            return

        self.sessions[update.effective_user.id] = OperatorSession(awaiting_balance=True)
        await query.answer()
        await self._reply(
            update,
            "💵 <b>Set balance</b>\n\nEnter the new balance:\nExample: 1000.50",
            parse_mode=ParseMode.HTML,
            reply_markup=cancel_keyboard(),
        )

    async def handle_list_operators(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        is_admin, _ = await self.roles(update)
        if not is_admin:
            await self._deny(update, "⛔️ Admin only")
            return

        operators = await self.store.list_operators()
        await query.answer()
        if not operators:
            await self._reply(update, "📝 No operators found")
            return

        lines = []
        for index, op in enumerate(operators, start=1):
            name = f" (@{html.escape(op.username)})" if op.username else ""
            lines.append(
                f"{index}. ID: <code>{op.telegram_id}</code>{name}\n"
                f"💰 Balance: <b>{op.balance}</b> {self.payout_config.currency}"
            )
        await self._reply(
            update,
            "👥 <b>Operators:</b>\n\n" + "\n\n".join(lines) + f"\n\nTotal: {len(operators)}",
            parse_mode=ParseMode.HTML,
        )

    async def handle_add_operator(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        is_admin, _ = await self.roles(update)
        if not is_admin:
            await self._deny(update, "⛔️ Admin only")
            return

        self.sessions[update.effective_user.id] = OperatorSession(awaiting_operator_id=True)
        await query.answer()
        await self._reply(
            update,
            "👤 <b>Add operator</b>\n\nEnter the operator's Telegram ID:\nExample: 123456789",
            parse_mode=ParseMode.HTML,
            reply_markup=cancel_keyboard(),
        )

    async def handle_statistics(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        is_admin, _ = await self.roles(update)
        if not is_admin:
            await self._deny(update, "⛔️ Admin only")
            return

        since = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        stats = await self.store.count_by_status(since)

        def count(status: TransactionStatus) -> int:
            return stats.get(status.value, (0, 0))[0]

        total = sum(c for c, _ in stats.values())
        in_progress = count(TransactionStatus.PENDING) + count(TransactionStatus.ACCEPTED)
        unsuccessful = sum(
            count(s) for s in (TransactionStatus.FAILED, TransactionStatus.EXPIRED, TransactionStatus.CANCELLED)
        )
        completed_sum = stats.get(TransactionStatus.COMPLETED.value, (0, 0))[1]

        await query.answer()
        await self._reply(
            update,
            "📊 <b>Today</b>\n\n"
            f"Total payouts: {total}\n"
            f"✅ Completed: {count(TransactionStatus.COMPLETED)}\n"
            f"⏳ In progress: {in_progress}\n"
            f"❌ Failed/expired/cancelled: {unsuccessful}\n\n"
            f"💰 Completed amount: {completed_sum:,.2f} {self.payout_config.currency}",
            parse_mode=ParseMode.HTML,
        )

    async def handle_settings(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        is_admin, _ = await self.roles(update)
        if not is_admin:
            await self._deny(update, "⛔️ Admin only")
            return

        cfg = self.payout_config
        await query.answer()
        await self._reply(
            update,
            "⚙️ <b>Settings</b>\n\n"
            f"Min payout: {cfg.min_amount} {cfg.currency}\n"
            f"Max payout: {cfg.max_amount} {cfg.currency}\n"
            f"Max screenshot size: {cfg.screenshot_max_size / 1024 / 1024:.1f} MB\n\n"
            "Settings are changed through the environment.",
            parse_mode=ParseMode.HTML,
        )

    async def handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        is_admin, is_operator = await self.roles(update)
        text = "🤖 <b>Help</b>\n\n"
        if is_admin:
            text += "<b>Admin:</b>\n👥 List operators\n➕ Add operators\n📊 Statistics\n⚙️ Settings\n\n"
        if is_operator:
            text += "<b>Operator:</b>\n💰 Incoming payout requests\n📸 Screenshot upload\n💵 Balance\n\n"
        text += "Use the menu buttons below."

        if update.callback_query:
            await update.callback_query.answer()
        await self._reply(update, text, parse_mode=ParseMode.HTML, reply_markup=main_keyboard(is_admin, is_operator))

    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        session = self.sessions.get(update.effective_user.id)
        if not session:
            return
        if session.awaiting_balance:
            await self._handle_balance_input(update)
        elif session.awaiting_operator_id:
            await self._handle_operator_input(update)

    async def _handle_balance_input(self, update: Update) -> None:
        user_id = update.effective_user.id
        try:
            amount = float(update.effective_message.text.strip().replace(",", "."))
        except ValueError:
            await self._reply(
                update, "❌ Invalid amount. Enter a number.\n\nExample: 1000.50", reply_markup=cancel_keyboard()
            )
            return

        if amount < 0:
            await self._reply(update, "❌ Amount cannot be negative", reply_markup=cancel_keyboard())
            return

        await self.store.set_operator_balance(user_id, amount)
        self.reset_session(user_id)
        await self._reply(
            update,
            f"✅ Balance set!\n\n💰 Current balance: <b>{amount}</b> {self.payout_config.currency}",
            parse_mode=ParseMode.HTML,
        )
        await self.show_main_menu(update)

    async def _handle_operator_input(self, update: Update) -> None:
        try:
            operator_id = int(update.effective_message.text.strip())
        except ValueError:
            await self._reply(
                update,
                "❌ Invalid ID\n\nThe ID must be a number. Try again or press Cancel.",
                reply_markup=cancel_keyboard(),
            )
            return

        existed = await self.store.promote_operator(operator_id)
        self.reset_session(update.effective_user.id)
        await self._reply(
            update,
            f"✅ Operator {'updated' if existed else 'added'}!\n\n👤 ID: {operator_id}",
        )
        await self.show_main_menu(update)

    async def handle_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        error = context.error
        if isinstance(error, Exception):
            error_monitor.log_error(error, {"context": "telegram_handler"})
