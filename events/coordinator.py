import hashlib
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .event_bus import EventBus
from .event_types import (
    Amount,
    EmailRef,
    EventTypes,
    MerchantCategorizationEvent,
    MerchantCategorySelectedEvent,
    queue_event_name,
)
from .prompts import (
    CANCEL_CATEGORIZATION,
    CATEGORIZE_WITH_AI,
    MESSAGES,
    SELECT_CATEGORY,
    SKIP_MERCHANT,
    ButtonReply,
    Notifier,
    notice_options,
    render_categorization_notice,
    suggestion_options,
)
from .task_queue import SequentialTaskQueue

logger = logging.getLogger(__name__)

# Text that already looks like a ledger account is taken as the answer
ACCOUNT_PATTERN = re.compile(r"^(Expenses|Income|Assets|Liabilities|Equity)(:[\w\-+&.]+)+$")

CURRENCIES = ("SGD", "USD", "EUR", "GBP", "JPY", "CNY", "MYR", "AUD")
_CURRENCY = "|".join(CURRENCIES)
BILL_AMOUNT_FIRST = re.compile(
    rf"^\s*(?:(?P<cur1>{_CURRENCY})\s*)?(?P<amount>\d+(?:\.\d{{1,2}})?)(?:\s*(?P<cur2>{_CURRENCY})\b)?\s+(?P<merchant>\S.*?)\s*$",
    re.IGNORECASE,
)
BILL_MERCHANT_FIRST = re.compile(
    rf"^\s*(?P<merchant>\S.*?)\s+(?:(?P<cur1>{_CURRENCY})\s*)?(?P<amount>\d+(?:\.\d{{1,2}})?)\s*(?P<cur2>{_CURRENCY})?\s*$",
    re.IGNORECASE,
)

# (chat_id, merchant, amount) -> category if recorded right away, None if it now waits for one
BillRecorder = Callable[[str, str, Amount], Awaitable[Optional[str]]]


class ConversationState(Enum):
    IDLE = "idle"
    AWAITING_CATEGORIZATION_INPUT = "awaiting_categorization_input"
    AWAITING_BILL_INPUT = "awaiting_bill_input"


@dataclass
class Conversation:
    state: ConversationState = ConversationState.IDLE
    merchant_id: Optional[str] = None


@dataclass
class PendingCategorization:
    merchant_id: str
    merchant: str
    timestamp: str
    amount: Optional[Amount] = None
    email: Optional[EmailRef] = None
    chat_id: Optional[str] = None


@dataclass
class CategoryChoices:
    merchant_id: str
    categories: Dict[str, str] = field(default_factory=dict)


def parse_bill_text(text: str, default_currency: str = "SGD") -> Optional[Tuple[str, Amount]]:
    """
    Read "12.50 SGD Koufu", "SGD 12.50 Koufu" or "Koufu 12.50"

    Returns:
        (merchant, amount) or None
    """
    for pattern in (BILL_AMOUNT_FIRST, BILL_MERCHANT_FIRST):
        match = pattern.match(text or "")
        if not match:
            continue
        merchant = match.group("merchant").strip()
        if not merchant or re.fullmatch(r"[\d.\s]+", merchant):
            continue
        currency = (match.group("cur1") or match.group("cur2") or default_currency).upper()
        return merchant, Amount(value=round(float(match.group("amount")), 2), currency=currency)
    return None


class ShortIdRegistry:
    """
    Reversible short ids for merchant ids, so they fit in button payloads

    Ids are the first 12 hex chars of a blake2b digest. A collision is logged
    and the newer merchant id replaces the older one.
    """

    def __init__(self, length: int = 12):
        self.length = length
        self._ids: Dict[str, str] = {}

    def short_id(self, merchant_id: str) -> str:
        return hashlib.blake2b(merchant_id.encode("utf-8"), digest_size=self.length // 2).hexdigest()

    def register(self, merchant_id: str) -> str:
        short = self.short_id(merchant_id)
        existing = self._ids.get(short)
        if existing is not None and existing != merchant_id:
            logger.warning(f"⚠️ Short id collision on {short}: {existing} replaced by {merchant_id}")
        self._ids[short] = merchant_id
        return short

    def resolve(self, short_id: str) -> Optional[str]:
        return self._ids.get(short_id)

    def discard(self, merchant_id: str) -> None:
        short = self.short_id(merchant_id)
        if self._ids.get(short) == merchant_id:
            del self._ids[short]


class CategorizationCoordinator:
    """
    Bridges the categorization queue, the category store and the chat.

    Subscribes to:
        merchantNeedsCategorization        -> enqueue (one task per merchant id)
        queue:merchantNeedsCategorization  -> prompt the user
        merchantCategorySelected           -> save mapping / complete task
    """

    def __init__(
        self,
        event_bus: EventBus,
        queue: SequentialTaskQueue,
        store,
        notifier: Notifier,
        suggester=None,
        chat_id: Optional[str] = None,
        bill_recorder: Optional[BillRecorder] = None,
        default_currency: str = "SGD",
    ):
        self.event_bus = event_bus
        self.queue = queue
        self.store = store
        self.notifier = notifier
        self.suggester = suggester
        self.chat_id = str(chat_id) if chat_id else None
        self.bill_recorder = bill_recorder
        self.default_currency = default_currency

        self.short_ids = ShortIdRegistry()
        self._pending: Dict[str, PendingCategorization] = {}
        self._choices: Dict[str, CategoryChoices] = {}
        self._conversations: Dict[str, Conversation] = {}

        self._setup_listeners()

    def _setup_listeners(self) -> None:
        self.event_bus.on(EventTypes.MERCHANT_NEEDS_CATEGORIZATION, self.handle_needs_categorization)
        self.event_bus.on(
            queue_event_name(EventTypes.MERCHANT_NEEDS_CATEGORIZATION), self.handle_queued_categorization
        )
        self.event_bus.on(EventTypes.MERCHANT_CATEGORY_SELECTED, self.persist_selection)
        self.event_bus.on(EventTypes.MERCHANT_CATEGORY_SELECTED, self.complete_selection)

    # --- conversation state -------------------------------------------------

    def conversation(self, chat_id: str) -> Conversation:
        return self._conversations.setdefault(str(chat_id), Conversation())

    def state_for(self, chat_id: str) -> ConversationState:
        return self.conversation(chat_id).state

    def _await_categorization(self, chat_id: str, merchant_id: str) -> None:
        conversation = self.conversation(chat_id)
        conversation.state = ConversationState.AWAITING_CATEGORIZATION_INPUT
        conversation.merchant_id = merchant_id

    def _reset(self, chat_id: str) -> None:
        conversation = self.conversation(chat_id)
        conversation.state = ConversationState.IDLE
        conversation.merchant_id = None

    def pending_categorization(self, merchant_id: str) -> Optional[PendingCategorization]:
        return self._pending.get(merchant_id)

    # --- event handlers -----------------------------------------------------

    def handle_needs_categorization(self, event: MerchantCategorizationEvent) -> None:
        merchant = getattr(event, "merchant", None)
        merchant_id = getattr(event, "merchant_id", None)
        if not merchant or not merchant_id:
            logger.error(f"❌ Ignoring malformed categorization event: {event!r}")
            return

        # A fresher detection replaces queued ones for the same merchant
        self.queue.clear_tasks_by_merchant(merchant)
        self.queue.enqueue(EventTypes.MERCHANT_NEEDS_CATEGORIZATION, event, merchant_id)

    async def handle_queued_categorization(self, event: MerchantCategorizationEvent) -> None:
        merchant = getattr(event, "merchant", None)
        if not merchant:
            logger.error(f"❌ Queued categorization without merchant, leaving it in flight: {event!r}")
            return

        existing = self.store.find_category(merchant)
        if existing:
            logger.info(f"Merchant {merchant} already has category: {existing}")
            self.queue.complete_task(event.merchant_id)
            return

        if not self.chat_id:
            logger.warning(f"⚠️ No chat configured, cannot ask about merchant: {merchant}")
            return

        self._pending[event.merchant_id] = PendingCategorization(
            merchant_id=event.merchant_id,
            merchant=merchant,
            timestamp=event.timestamp,
            amount=event.amount,
            email=event.email,
            chat_id=self.chat_id,
        )
        if self.state_for(self.chat_id) != ConversationState.AWAITING_BILL_INPUT:
            self._await_categorization(self.chat_id, event.merchant_id)

        short_id = self.short_ids.register(event.merchant_id)
        await self.notifier.send_prompt(
            self.chat_id, render_categorization_notice(event), notice_options(short_id)
        )
        logger.info(f"📤 Sent notification for merchant categorization: {merchant}")

    def persist_selection(self, event: MerchantCategorySelectedEvent) -> None:
        if not event.selected_category:
            logger.info(f"⏭️ Skipping categorization for merchant: {event.merchant} ({event.merchant_id})")
            return

        self.store.add_unresolved_merchant(event.merchant, event.selected_category)

    def complete_selection(self, event: MerchantCategorySelectedEvent) -> None:
        self.queue.complete_task(event.merchant_id)

        self._pending.pop(event.merchant_id, None)
        self.short_ids.discard(event.merchant_id)
        for choice_id in [k for k, c in self._choices.items() if c.merchant_id == event.merchant_id]:
            del self._choices[choice_id]
        for conversation in self._conversations.values():
            if conversation.merchant_id == event.merchant_id:
                conversation.state = ConversationState.IDLE
                conversation.merchant_id = None

    def select_category(self, merchant_id: str, category: Optional[str]) -> bool:
        """Emit the decision for a pending merchant; None or "" skips it"""
        pending = self._pending.get(merchant_id)
        if pending is None:
            return False

        self.event_bus.emit(
            EventTypes.MERCHANT_CATEGORY_SELECTED,
            MerchantCategorySelectedEvent(
                merchant_id=pending.merchant_id,
                merchant=pending.merchant,
                selected_category=category or None,
                timestamp=datetime.now().isoformat(),
            ),
        )
        return True

    # --- inbound chat -------------------------------------------------------

    async def on_text_message(self, chat_id: str, text: str) -> bool:
        """
        Handle free text from a chat

        Returns:
            bool: False if the chat was not waiting for anything
        """
        chat_id = str(chat_id)
        conversation = self.conversation(chat_id)
        text = (text or "").strip()

        if conversation.state == ConversationState.AWAITING_BILL_INPUT:
            await self._process_bill_input(chat_id, text)
            return True

        if conversation.state != ConversationState.AWAITING_CATEGORIZATION_INPUT:
            return False

        pending = self._pending.get(conversation.merchant_id)
        if pending is None:
            logger.debug(f"Chat {chat_id} was waiting for a categorization that is gone")
            self._reset(chat_id)
            return False

        if not text:
            return True

        if ACCOUNT_PATTERN.match(text):
            self.select_category(pending.merchant_id, text)
            await self.notifier.send_message(chat_id, MESSAGES.category_selected(pending.merchant, text))
            return True

        await self._suggest_categories(chat_id, pending, text)
        return True

    async def _suggest_categories(self, chat_id: str, pending: PendingCategorization, user_input: str) -> None:
        if self.suggester is None:
            logger.warning("⚠️ No category suggester configured")
            await self.notifier.send_message(chat_id, MESSAGES.CATEGORIZATION_ERROR)
            return

        try:
            await self.notifier.send_message(chat_id, MESSAGES.ANALYZING)
            suggestions = await self.suggester.suggest(
                pending.merchant, user_input, self.store.known_categories()
            )
        except Exception as e:
            logger.error(f"❌ Error processing categorization for {pending.merchant}: {e}")
            await self.notifier.send_message(chat_id, MESSAGES.CATEGORIZATION_ERROR)
            return

        choice_id = secrets.token_hex(4)
        self._choices[choice_id] = CategoryChoices(
            merchant_id=pending.merchant_id,
            categories={
                "primary": suggestions.primary,
                "alternative": suggestions.alternative,
                "suggested": suggestions.suggested,
            },
        )
        await self.notifier.send_prompt(
            chat_id,
            MESSAGES.suggestions(pending.merchant, suggestions.primary, suggestions.alternative, suggestions.suggested),
            suggestion_options(choice_id, suggestions.primary, suggestions.alternative, suggestions.suggested),
        )

    async def on_button_press(self, chat_id: str, data: str) -> ButtonReply:
        chat_id = str(chat_id)
        action, _, rest = (data or "").partition(":")

        if action == CATEGORIZE_WITH_AI:
            return await self._start_ai_categorization(chat_id, rest)
        if action == SKIP_MERCHANT:
            return self._skip_merchant(rest)
        if action == SELECT_CATEGORY:
            choice_id, _, category_type = rest.partition(":")
            return self._select_choice(choice_id, category_type)
        if action == CANCEL_CATEGORIZATION:
            return self._cancel_choice(rest)

        logger.warning(f"⚠️ Unknown button data: {data}")
        return ButtonReply(answer=MESSAGES.ERROR_UNKNOWN_ACTION)

    async def _start_ai_categorization(self, chat_id: str, short_id: str) -> ButtonReply:
        merchant_id = self.short_ids.resolve(short_id)
        pending = self._pending.get(merchant_id) if merchant_id else None
        if pending is None:
            logger.error(f"No pending categorization for short id: {short_id}")
            return ButtonReply(answer=MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND, clear_keyboard=True)

        pending.chat_id = chat_id
        self._await_categorization(chat_id, merchant_id)
        await self.notifier.send_message(chat_id, MESSAGES.categorization_prompt(pending.merchant))
        return ButtonReply(clear_keyboard=True)

    def _skip_merchant(self, short_id: str) -> ButtonReply:
        merchant_id = self.short_ids.resolve(short_id)
        pending = self._pending.get(merchant_id) if merchant_id else None
        if pending is None:
            return ButtonReply(answer=MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND, clear_keyboard=True)

        self.select_category(merchant_id, None)
        return ButtonReply(edit_text=MESSAGES.skipped(pending.merchant))

    def _select_choice(self, choice_id: str, category_type: str) -> ButtonReply:
        choices = self._choices.get(choice_id)
        if choices is None:
            return ButtonReply(answer=MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND, edit_text=MESSAGES.CATEGORIZATION_EXPIRED)

        category = choices.categories.get(category_type)
        if not category:
            return ButtonReply(answer=MESSAGES.ERROR_INVALID_CATEGORY_TYPE)

        pending = self._pending.get(choices.merchant_id)
        if pending is None or not self.select_category(choices.merchant_id, category):
            return ButtonReply(answer=MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND, edit_text=MESSAGES.CATEGORIZATION_EXPIRED)

        return ButtonReply(edit_text=MESSAGES.category_selected(pending.merchant, category))

    def _cancel_choice(self, choice_id: str) -> ButtonReply:
        choices = self._choices.get(choice_id)
        if choices is None or not self.select_category(choices.merchant_id, None):
            return ButtonReply(answer=MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND, edit_text=MESSAGES.CATEGORIZATION_EXPIRED)
        return ButtonReply(edit_text=MESSAGES.CATEGORIZATION_CANCELLED)

    # --- commands -----------------------------------------------------------

    def cancel(self, chat_id: str) -> str:
        """/cancel: skip the merchant being discussed or stop bill entry"""
        chat_id = str(chat_id)
        conversation = self.conversation(chat_id)

        if conversation.state == ConversationState.AWAITING_BILL_INPUT:
            self._reset(chat_id)
            return MESSAGES.BILL_CANCELLED

        if conversation.state == ConversationState.AWAITING_CATEGORIZATION_INPUT:
            merchant_id = conversation.merchant_id
            self._reset(chat_id)
            if merchant_id and self.select_category(merchant_id, None):
                return MESSAGES.CATEGORIZATION_CANCELLED

        return MESSAGES.NOTHING_TO_CANCEL

    def start_bill_input(self, chat_id: str) -> str:
        """/add: the next message is a bill"""
        conversation = self.conversation(chat_id)
        conversation.state = ConversationState.AWAITING_BILL_INPUT
        conversation.merchant_id = None
        return MESSAGES.BILL_PROMPT

    async def _process_bill_input(self, chat_id: str, text: str) -> None:
        parsed = parse_bill_text(text, self.default_currency)
        if parsed is None:
            await self.notifier.send_message(chat_id, MESSAGES.BILL_FORMAT_ERROR)
            return

        merchant, amount = parsed
        self._reset(chat_id)

        if self.bill_recorder is None:
            logger.warning("⚠️ No bill recorder configured")
            await self.notifier.send_message(chat_id, MESSAGES.BILL_RECORD_ERROR)
            return

        try:
            category = await self.bill_recorder(chat_id, merchant, amount)
        except Exception as e:
            logger.error(f"❌ Error recording bill {merchant}: {e}")
            await self.notifier.send_message(chat_id, MESSAGES.BILL_RECORD_ERROR)
            return

        if category:
            await self.notifier.send_message(chat_id, MESSAGES.bill_recorded(merchant, str(amount), category))
        else:
            await self.notifier.send_message(chat_id, MESSAGES.bill_pending(merchant, str(amount)))

    def status(self) -> Dict[str, Any]:
        in_flight = self.queue.in_flight
        return {
            "queue_length": len(self.queue),
            "processing": self.queue.is_processing,
            "in_flight": getattr(in_flight.payload, "merchant", None) if in_flight else None,
            "pending": [getattr(item.payload, "merchant", None) for item in self.queue.pending()],
        }
