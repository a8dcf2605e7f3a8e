import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from .models import Email

# Ids of handled emails remembered so a redelivered webhook is not processed twice
READ_IDS_TO_REMEMBER = 1000


class EmailInbox:
    """
    Unread bank alert emails waiting to be turned into ledger entries

    Emails are pushed in by the webhook (from the Flask thread) and read by
    the ingestion scan (on the bot's event loop), hence the lock. Marking an
    email read drops it; only its id is kept, and only for the most recent
    READ_IDS_TO_REMEMBER emails.
    """

    def __init__(self, remember_read: int = READ_IDS_TO_REMEMBER):
        self._lock = threading.Lock()
        self._emails: Dict[str, Email] = {}
        self._read_ids: "OrderedDict[str, None]" = OrderedDict()
        self._remember_read = remember_read

    def add(self, email: Email) -> bool:
        """Store an email, ignoring ids seen before"""
        with self._lock:
            if email.id in self._emails or email.id in self._read_ids:
                return False
            self._emails[email.id] = email
            return True

    def fetch_unread(self, sender_filter: Optional[str] = None) -> List[Email]:
        with self._lock:
            emails = list(self._emails.values())

        if sender_filter:
            needle = sender_filter.lower()
            emails = [e for e in emails if needle in e.sender.lower()]
        return emails

    def mark_as_read(self, email_id: str) -> None:
        with self._lock:
            if self._emails.pop(email_id, None) is None:
                return
            self._read_ids[email_id] = None
            while len(self._read_ids) > self._remember_read:
                self._read_ids.popitem(last=False)

    def unread_count(self) -> int:
        with self._lock:
            return len(self._emails)
