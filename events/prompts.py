import html
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from email.utils import parseaddr, parsedate_to_datetime
from typing import Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .event_types import MerchantCategorizationEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Singapore"

# Callback data prefixes, kept short for Telegram's 64 byte limit
CATEGORIZE_WITH_AI = "ai"
SKIP_MERCHANT = "skip"
SELECT_CATEGORY = "sc"
CANCEL_CATEGORIZATION = "cc"


@dataclass(frozen=True)
class PromptOption:
    label: str
    data: str


@dataclass(frozen=True)
class ButtonReply:
    """What the chat transport should do after a button press"""
    answer: Optional[str] = None
    edit_text: Optional[str] = None
    clear_keyboard: bool = False


class Notifier:
    """Outbound side of the chat transport"""

    async def send_message(self, chat_id: str, text: str) -> None:
        raise NotImplementedError

    async def send_prompt(self, chat_id: str, text: str, options: Sequence[PromptOption] = ()) -> None:
        raise NotImplementedError


class MESSAGES:
    WELCOME = "Welcome to BeanTalk! Your personal finance assistant."
    ANALYZING = "🤖 Analyzing the information..."
    CATEGORIZATION_ERROR = "❌ Sorry, there was an error processing the categorization. Send more details to try again, or /cancel."
    CATEGORIZATION_CANCELLED = "❌ Categorization cancelled."
    CATEGORIZATION_EXPIRED = "❌ Sorry, this categorization request has expired or is invalid."
    NOTHING_TO_CANCEL = "Nothing to cancel."
    BILL_PROMPT = (
        "🧾 Send the bill as: AMOUNT [CURRENCY] MERCHANT\n"
        "For example: 12.50 SGD Koufu\n\n"
        "/cancel to stop."
    )
    BILL_FORMAT_ERROR = "❌ Could not read that bill. Use AMOUNT [CURRENCY] MERCHANT, e.g. 12.50 Koufu"
    BILL_CANCELLED = "❌ Bill entry cancelled."
    BILL_RECORD_ERROR = "❌ Sorry, the bill could not be recorded. Please try again."
    ERROR_CATEGORIZATION_NOT_FOUND = "Error: Categorization request not found"
    ERROR_INVALID_CATEGORY_TYPE = "Error: Invalid category type"
    ERROR_UNKNOWN_ACTION = "Error: Unknown action"

    @staticmethod
    def categorization_prompt(merchant: str) -> str:
        merchant = html.escape(merchant)
        return (
            f"🤖 I'll help you categorize \"{merchant}\".\n\n"
            "Please provide any additional information about this merchant that might help with categorization.\n"
            "For example:\n"
            "- What type of business is it?\n"
            "- What did you purchase?\n"
            "- Any specific details about the transaction?\n\n"
            "Just type your response and I'll analyze it."
        )

    @staticmethod
    def suggestions(merchant: str, primary: str, alternative: str, suggested: str) -> str:
        merchant, primary, alternative, suggested = (
            html.escape(v) for v in (merchant, primary, alternative, suggested)
        )
        return (
            f"I've analyzed \"{merchant}\" and found these possible categories:\n\n"
            f"1. {primary}\n"
            f"2. {alternative}\n"
            f"3. {suggested}\n\n"
            "Please select the most appropriate category:"
        )

    @staticmethod
    def category_selected(merchant: str, category: str) -> str:
        merchant, category = html.escape(merchant), html.escape(category)
        return (
            f"✅ Selected category for \"{merchant}\":\n"
            f"📁 {category}\n\n"
            "The category has been saved and will be used for future transactions from this merchant."
        )

    @staticmethod
    def skipped(merchant: str) -> str:
        merchant = html.escape(merchant)
        return f"⏭️ Skipped \"{merchant}\". Fill in its category in the mapping file when you're ready."

    @staticmethod
    def bill_recorded(merchant: str, amount: str, category: str) -> str:
        merchant, category = html.escape(merchant), html.escape(category)
        return f"✅ Recorded {amount} at {merchant}\n📁 {category}"

    @staticmethod
    def bill_pending(merchant: str, amount: str) -> str:
        merchant = html.escape(merchant)
        return f"📝 {amount} at {merchant} is waiting for a category. I'll ask you about it next."


def _display_zone() -> ZoneInfo:
    name = os.getenv("DISPLAY_TIMEZONE") or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.warning(f"⚠️ Unknown DISPLAY_TIMEZONE {name}, using {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Accept ISO 8601 or RFC 2822 (email Date header) timestamps"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def format_display_time(value: Optional[str]) -> str:
    """
    Format a timestamp like "04/18 01:29 PM Friday" in the display timezone

    Naive timestamps are taken as already being local time.
    """
    dt = parse_timestamp(value)
    if dt is None:
        return value or ""
    if dt.tzinfo is not None:
        dt = dt.astimezone(_display_zone())
    return dt.strftime("%m/%d %I:%M %p %A")


def load_mentions() -> Dict[str, str]:
    """
    Recipient address -> Telegram @username, from TELEGRAM_MENTIONS

    Format: "me@example.com=@me,partner@example.com=@partner". Addresses
    are matched ignoring case.
    """
    mentions = {}
    for pair in (os.getenv("TELEGRAM_MENTIONS") or "").split(","):
        address, sep, username = pair.partition("=")
        address, username = address.strip().lower(), username.strip().lstrip("@")
        if not sep or not address or not username:
            if pair.strip():
                logger.warning(f"⚠️ Ignoring malformed TELEGRAM_MENTIONS entry: {pair.strip()}")
            continue
        mentions[address] = f"@{username}"
    return mentions


def mention_for(recipient: Optional[str]) -> Optional[str]:
    """The @username for whoever the alert email was sent to, if configured"""
    if not recipient:
        return None
    address = parseaddr(recipient)[1].lower()
    return load_mentions().get(address)


def render_categorization_notice(event: MerchantCategorizationEvent) -> str:
    """HTML body of the "new merchant" prompt"""
    time_source = event.email.date if event.email and event.email.date else event.timestamp
    lines = ["🆕 New Merchant Needs Categorization"]
    mention = mention_for(event.email.to if event.email else None)
    if mention:
        lines.append(html.escape(mention))
    lines.append("")
    lines.append(f"Merchant: <b>{html.escape(event.merchant)}</b>")
    if event.amount is not None:
        lines.append(f"Amount: <b>{html.escape(str(event.amount))}</b>")
    lines.append(f"Time: <b>{html.escape(format_display_time(time_source))}</b>")
    lines.append("")
    lines.append(
        "Tap 🤖 to categorize with AI, or reply with a category "
        "(e.g. Expenses:Food) or a short description."
    )
    return "\n".join(lines)


def notice_options(short_id: str) -> List[PromptOption]:
    return [
        PromptOption("🤖 Categorize with AI", f"{CATEGORIZE_WITH_AI}:{short_id}"),
        PromptOption("⏭️ Skip", f"{SKIP_MERCHANT}:{short_id}"),
    ]


def suggestion_options(choice_id: str, primary: str, alternative: str, suggested: str) -> List[PromptOption]:
    return [
        PromptOption(f"📁 {primary}", f"{SELECT_CATEGORY}:{choice_id}:primary"),
        PromptOption(f"📁 {alternative}", f"{SELECT_CATEGORY}:{choice_id}:alternative"),
        PromptOption(f"📁 {suggested}", f"{SELECT_CATEGORY}:{choice_id}:suggested"),
        PromptOption("❌ Cancel", f"{CANCEL_CATEGORIZATION}:{choice_id}"),
    ]
