import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional

import ftfy

from events.event_types import Amount
from .models import Email, ParsedTransaction

logger = logging.getLogger(__name__)

MONTHS = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}


def fix_mojibake(text: str) -> str:
    """
    Fix mojibake and stray encoding artifacts in forwarded email text
    """
    if not text:
        return text

    try:
        return ftfy.fix_text(text)
    except Exception as e:
        logger.warning(f"⚠️ Error fixing encoding: {e}")
        return text


def extract_value(text: str, pattern: str) -> Optional[str]:
    match = re.search(pattern, text, re.IGNORECASE | re.DOTALL)
    return match.group(1).strip() if match else None


def parse_amount(amount_str: str) -> Optional[float]:
    """Parse "1,234.50" style amounts, rounded to cents"""
    clean = re.sub(r"[^\d.\-]", "", amount_str or "")
    if not clean:
        return None
    try:
        return round(float(clean), 2)
    except ValueError:
        return None


class BankEmailParser:
    """Base class for bank alert parsers"""

    bank = "Unknown"

    def can_parse(self, email: Email) -> bool:
        raise NotImplementedError

    def parse(self, email: Email) -> Optional[ParsedTransaction]:
        raise NotImplementedError


class DBSEmailParser(BankEmailParser):
    """
    Parser for DBS/POSB card transaction alerts

    Example body:
        Date & Time: 18 Apr 13:29 (SGT)
        Amount: USD20.00
        From: DBS/POSB card ending 8558
        To: GAMMA.APP
    """

    bank = "DBS"

    def can_parse(self, email: Email) -> bool:
        return bool(
            re.search(r"Transaction Alert", email.subject or "", re.IGNORECASE)
            and re.search(r"@dbs\.com", email.sender or "", re.IGNORECASE)
        )

    def parse(self, email: Email) -> Optional[ParsedTransaction]:
        if not self.can_parse(email):
            return None

        body = fix_mojibake(email.body)

        amount = self._extract_amount(body)
        if amount is None:
            logger.warning("⚠️ Failed to extract amount from DBS transaction email")
            return None

        date = self._extract_date(body)
        if date is None:
            logger.warning("⚠️ Failed to extract date from DBS transaction email")
            return None

        merchant = self._extract_merchant(body)
        if not merchant:
            logger.warning("⚠️ Failed to extract merchant from DBS transaction email")
            return None

        return ParsedTransaction(
            merchant=merchant,
            amount=amount,
            date=date,
            card_info=self._extract_card_info(body) or "",
        )

    def _extract_amount(self, body: str) -> Optional[Amount]:
        match = re.search(r"Amount:\s*(S\$|[A-Z]{3})\s*([\d,]+(?:\.\d{1,2})?)", body, re.IGNORECASE)
        if not match:
            return None

        currency = match.group(1).upper()
        if currency == "S$":
            currency = "SGD"

        value = parse_amount(match.group(2))
        if value is None:
            logger.warning(f"⚠️ Failed to parse amount: {match.group(2)}")
            return None
        return Amount(value=value, currency=currency)

    def _extract_date(self, body: str, now: Optional[datetime] = None) -> Optional[datetime]:
        date_str = extract_value(body, r"Date & Time:\s*(\d{2}\s+[A-Za-z]{3}\s*\d{2}:\d{2})\s*(?:\(SGT\)|SGT)")
        if not date_str:
            return None
        return parse_alert_date(date_str, now=now)

    def _extract_merchant(self, body: str) -> Optional[str]:
        merchant = extract_value(body, r"To:[ \t]*([^\n]+)")
        if not merchant:
            merchant = extract_value(body, r"Date & Time:.*?To:\s*([^(\n]+)")
        return merchant

    def _extract_card_info(self, body: str) -> Optional[str]:
        card_info = extract_value(body, r"From:[ \t]*([^\n]+)")
        if not card_info:
            return None
        return re.sub(r"\s+To:.*$", "", card_info).strip()


def parse_alert_date(date_str: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse "18 Apr 13:29" (or "26 Mar21:37") into a datetime

    Alerts carry no year. The current year is assumed, falling back to the
    previous one when that would put the date more than a day in the future.
    """
    match = re.search(r"(\d{2})\s+([A-Za-z]{3})\s*(\d{2}):(\d{2})", date_str)
    if not match:
        logger.warning(f"⚠️ Failed to match date pattern for: {date_str}")
        return None

    day, month_abbr, hours, minutes = match.groups()
    month = MONTHS.get(month_abbr.upper())
    if month is None:
        logger.warning(f"⚠️ Invalid month: {month_abbr}")
        return None

    now = now or datetime.now()
    try:
        date = datetime(now.year, month, int(day), int(hours), int(minutes))
        if date - now > timedelta(days=1):
            date = date.replace(year=now.year - 1)
    except ValueError:
        logger.warning(f"⚠️ Invalid date: {date_str}")
        return None
    return date


class EmailParserFactory:
    """Picks the first registered parser that accepts an email"""

    def __init__(self, parsers: Optional[List[BankEmailParser]] = None):
        self.parsers: List[BankEmailParser] = []
        for parser in parsers if parsers is not None else [DBSEmailParser()]:
            self.register_parser(parser)

    def register_parser(self, parser: BankEmailParser) -> None:
        self.parsers.append(parser)

    def find_parser(self, email: Email) -> Optional[BankEmailParser]:
        return next((p for p in self.parsers if p.can_parse(email)), None)

    def parse_email(self, email: Email) -> Optional[ParsedTransaction]:
        parser = self.find_parser(email)
        if parser is None:
            logger.info(f"No parser found for email: {email.subject} from {email.sender}")
            return None
        return parser.parse(email)


# Test the parser
if __name__ == "__main__":
    sample_email = Email(
        id="sample",
        subject="Card Transaction Alert",
        sender="ibanking.alert@dbs.com",
        body=(
            "Card Transaction Alert\n"
            "Date & Time: 18 Apr 13:29 (SGT)\n"
            "Amount: SGD20.00\n"
            "From: DBS/POSB card ending 8558\n"
            "To: KOUFU PTE LTD\n"
        ),
    )

    result = EmailParserFactory().parse_email(sample_email)

    if result:
        print("\n=== Parsed Transaction ===")
        print(result)
    else:
        print("\n❌ Failed to parse email")
