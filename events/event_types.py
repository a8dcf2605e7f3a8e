from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class EventTypes:
    # Merchant categorization events
    MERCHANT_NEEDS_CATEGORIZATION = "merchantNeedsCategorization"
    MERCHANT_CATEGORY_SELECTED = "merchantCategorySelected"


QUEUE_PREFIX = "queue:"


def queue_event_name(event_name: str) -> str:
    """Name of the "now being processed" variant of a plain event"""
    return f"{QUEUE_PREFIX}{event_name}"


@dataclass(frozen=True)
class Amount:
    value: float
    currency: str

    def __str__(self) -> str:
        return f"{self.value:,.2f} {self.currency}"


@dataclass(frozen=True)
class EmailRef:
    id: str
    subject: str = ""
    sender: str = ""
    to: str = ""
    date: Optional[str] = None


@dataclass(frozen=True)
class MerchantCategorizationEvent:
    merchant: str
    merchant_id: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    amount: Optional[Amount] = None
    email: Optional[EmailRef] = None


@dataclass(frozen=True)
class MerchantCategorySelectedEvent:
    merchant_id: str
    merchant: str
    selected_category: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
