import logging
import os
from pathlib import Path
from typing import Optional

from .models import Transaction

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = os.path.join("ledger", "main.beancount")


def transaction_to_beancount(transaction: Transaction) -> str:
    """Render a transaction as a beancount entry"""
    description = transaction.description.replace('"', "'")
    lines = [f'{transaction.date.strftime("%Y-%m-%d")} * "{description}"']

    for entry in transaction.entries:
        lines.append(f"  {entry.account}  {entry.amount.value:.2f} {entry.amount.currency}")
        for key, value in entry.metadata.items():
            lines.append(f"    ; {key}: {value}")

    for key, value in transaction.metadata.items():
        lines.append(f"  ; {key}: {value}")

    return "\n".join(lines)


class BeancountLedger:
    """Append-only beancount file"""

    def __init__(self, file_path: Optional[str] = None):
        self.file_path = Path(file_path or os.getenv("BEANCOUNT_FILE_PATH") or DEFAULT_LEDGER_PATH)

    def append_transaction(self, transaction: Transaction) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        text = transaction_to_beancount(transaction)

        has_content = self.file_path.exists() and self.file_path.stat().st_size > 0
        with self.file_path.open("a", encoding="utf-8") as f:
            if has_content:
                f.write("\n")
            f.write(text + "\n")

        logger.info(f"✅ Transaction written to ledger: {transaction.description}")
