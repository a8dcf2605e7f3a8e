import asyncio
import html
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

from events.event_bus import EventBus
from events.event_types import Amount, EmailRef, EventTypes, MerchantCategorizationEvent
from events.prompts import Notifier, format_display_time
from .category_store import CategoryStore
from .email_parser import EmailParserFactory
from .inbox import EmailInbox
from .ledger import BeancountLedger
from .models import Email, Entry, ParsedTransaction, Transaction

logger = logging.getLogger(__name__)

DEFAULT_ASSET_ACCOUNT = "Assets:DBS:SGD:Saving"
DEFAULT_CASH_ACCOUNT = "Assets:Cash"
DEFAULT_SENDER_FILTER = "dbs.com"


def make_merchant_id(merchant: str, when: datetime) -> str:
    """Identity of one categorization request: merchant text plus discovery time"""
    return f"{merchant}@{when.isoformat()}"


def build_transaction(parsed: ParsedTransaction, category: str, asset_account: str, **metadata) -> Transaction:
    """Expense posting to the category, balanced against the paying account"""
    amount = parsed.amount
    return Transaction(
        date=parsed.date,
        description=parsed.merchant,
        entries=[
            Entry(account=category, amount=amount),
            Entry(
                account=asset_account,
                amount=Amount(value=-amount.value, currency=amount.currency),
                metadata={"merchant": parsed.merchant, "card": parsed.card_info} if parsed.card_info else {},
            ),
        ],
        metadata={k: v for k, v in metadata.items() if v},
    )


def render_transaction_notice(transaction: Transaction, when: Optional[str] = None) -> str:
    expense = transaction.entries[0]
    payer = transaction.entries[1].account if len(transaction.entries) > 1 else ""
    time_text = format_display_time(when) if when else transaction.date.strftime("%m/%d %I:%M %p %A")
    return (
        "New transaction:\n"
        f"Time: <b>{html.escape(time_text)}</b>\n"
        f"Amount: <b>{html.escape(str(expense.amount))}</b>\n"
        f"To: {html.escape(transaction.description)}\n"
        f"{html.escape(expense.account)}\n"
        f"{html.escape(payer)}"
    )


@dataclass
class PendingBill:
    """A manual bill waiting for its merchant to get a category"""
    chat_id: str
    merchant_id: str
    parsed: ParsedTransaction


class IngestionService:
    """
    Turns bank alert emails (and manual bills) into ledger entries.

    Transactions whose merchant has a category are written straight away.
    Unknown merchants are added to the mapping file and announced on the
    event bus; their emails stay unread so the next scan picks them up once a
    category exists.
    """

    def __init__(
        self,
        inbox: EmailInbox,
        parser_factory: EmailParserFactory,
        store: CategoryStore,
        ledger: BeancountLedger,
        event_bus: EventBus,
        notifier: Optional[Notifier] = None,
        chat_id: Optional[str] = None,
        asset_account: Optional[str] = None,
        cash_account: Optional[str] = None,
        sender_filter: Optional[str] = DEFAULT_SENDER_FILTER,
    ):
        self.inbox = inbox
        self.parser_factory = parser_factory
        self.store = store
        self.ledger = ledger
        self.event_bus = event_bus
        self.notifier = notifier
        self.chat_id = str(chat_id) if chat_id else None
        self.asset_account = asset_account or os.getenv("LEDGER_ASSET_ACCOUNT") or DEFAULT_ASSET_ACCOUNT
        self.cash_account = cash_account or os.getenv("LEDGER_CASH_ACCOUNT") or DEFAULT_CASH_ACCOUNT
        self.sender_filter = sender_filter

        # Merchant ids already announced, so a skipped merchant is not re-asked
        # on every scan triggered by the queue draining. Ids leave once their
        # email or bill is written.
        self._announced: Set[str] = set()
        self._email_merchant_ids: Dict[str, str] = {}
        self._pending_bills: List[PendingBill] = []

        self._scanning = False
        self._rescan_requested = False
        self._background: Set[asyncio.Task] = set()

    @property
    def pending_bills(self) -> List[PendingBill]:
        return list(self._pending_bills)

    def request_scan(self) -> Optional[asyncio.Task]:
        """Schedule a scan on the running loop (queue drain hook)"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("⚠️ Scan requested outside the event loop, ignoring")
            return None

        task = loop.create_task(self.scheduled_check())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def scheduled_check(self) -> Dict[str, int]:
        """
        Process every unread alert email and waiting manual bill

        A call made while a scan is running is folded into one extra pass
        after the current one.
        """
        if self._scanning:
            self._rescan_requested = True
            logger.debug("Scan already running, another pass will follow")
            return {"processed": 0, "pending": 0, "failed": 0, "coalesced": 1}

        self._scanning = True
        try:
            while True:
                self._rescan_requested = False
                result = await self._scan_once()
                if not self._rescan_requested:
                    return result
        finally:
            self._scanning = False

    async def _scan_once(self) -> Dict[str, int]:
        logger.info("🔍 Starting scheduled bill check...")
        emails = self.inbox.fetch_unread(self.sender_filter)
        logger.info(f"📥 Found {len(emails)} potential bill emails")

        result = {"processed": 0, "pending": 0, "failed": 0}
        for email in emails:
            try:
                outcome = await self._process_email(email)
            except Exception:
                logger.exception(f"❌ Error processing email {email.id}")
                result["failed"] += 1
                continue
            result[outcome] += 1

        for bill in list(self._pending_bills):
            try:
                if await self._retry_bill(bill):
                    result["processed"] += 1
                else:
                    result["pending"] += 1
            except Exception:
                logger.exception(f"❌ Error recording manual bill {bill.parsed.merchant}")
                result["failed"] += 1

        logger.info(
            f"✅ Bill check finished. Processed: {result['processed']}, "
            f"waiting for category: {result['pending']}, failed: {result['failed']}"
        )
        return result

    async def _process_email(self, email: Email) -> str:
        parsed = self.parser_factory.parse_email(email)
        if parsed is None:
            logger.warning(f"⚠️ Could not extract bill information from email: {email.subject}")
            self.inbox.mark_as_read(email.id)
            return "failed"

        category = self.store.find_category(parsed.merchant)
        if not category:
            merchant_id = self._email_merchant_ids.setdefault(email.id, make_merchant_id(parsed.merchant, datetime.now()))
            self._announce(parsed, merchant_id, email)
            return "pending"

        transaction = build_transaction(parsed, category, self.asset_account, email_id=email.id)
        self.ledger.append_transaction(transaction)
        self.inbox.mark_as_read(email.id)
        merchant_id = self._email_merchant_ids.pop(email.id, None)
        if merchant_id:
            self._announced.discard(merchant_id)
        await self._notify(self.chat_id, render_transaction_notice(transaction, email.date))
        logger.info(f"✅ Successfully processed bill from email: {email.subject}")
        return "processed"

    def _announce(self, parsed: ParsedTransaction, merchant_id: str, email: Optional[Email] = None) -> None:
        if merchant_id in self._announced:
            logger.debug(f"Merchant {parsed.merchant} ({merchant_id}) already announced")
            return

        self.store.add_unresolved_merchant(parsed.merchant)
        logger.info(f"Merchant \"{parsed.merchant}\" not found in category mapping, asking for a category")

        email_ref = None
        if email is not None:
            email_ref = EmailRef(id=email.id, subject=email.subject, sender=email.sender, to=email.to, date=email.date)

        self._announced.add(merchant_id)
        self.event_bus.emit(
            EventTypes.MERCHANT_NEEDS_CATEGORIZATION,
            MerchantCategorizationEvent(
                merchant=parsed.merchant,
                merchant_id=merchant_id,
                timestamp=datetime.now().isoformat(),
                amount=parsed.amount,
                email=email_ref,
            ),
        )

    async def record_manual_bill(self, chat_id: str, merchant: str, amount: Amount) -> Optional[str]:
        """
        Record a cash bill typed into the chat

        Returns:
            The category used, or None when the merchant needs one first
        """
        now = datetime.now()
        parsed = ParsedTransaction(merchant=merchant, amount=amount, date=now)

        category = self.store.find_category(merchant)
        if category:
            self.ledger.append_transaction(build_transaction(parsed, category, self.cash_account, source="telegram"))
            return category

        bill = PendingBill(chat_id=str(chat_id), merchant_id=make_merchant_id(merchant, now), parsed=parsed)
        self._announce(parsed, bill.merchant_id)
        self._pending_bills.append(bill)
        return None

    async def _retry_bill(self, bill: PendingBill) -> bool:
        category = self.store.find_category(bill.parsed.merchant)
        if not category:
            return False

        transaction = build_transaction(bill.parsed, category, self.cash_account, source="telegram")
        self.ledger.append_transaction(transaction)
        self._pending_bills.remove(bill)
        self._announced.discard(bill.merchant_id)
        await self._notify(bill.chat_id, render_transaction_notice(transaction))
        return True

    async def _notify(self, chat_id: Optional[str], text: str) -> None:
        if self.notifier is None or not chat_id:
            return
        try:
            await self.notifier.send_message(chat_id, text)
        except Exception as e:
            # The ledger entry is already written
            logger.error(f"❌ Error sending transaction notification: {e}")
