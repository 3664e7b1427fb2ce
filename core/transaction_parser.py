"""
transaction_parser.py
----------------------
Extracts {amount, merchant, channel} from one payment notification.

Indian payment notifications follow a handful of common shapes:

    "₹183 paid to Uber India using UPI"
    "Payment of Rs.120.00 to RAMESH FAST FOOD via UPI"
    "Sent ₹500 to Amit Kumar on Google Pay"
    "INR 1,460.00 debited from A/c XX2341 to RELIANCE RETAIL"
    "Rs 247 paid to Zomato Ltd UPI Ref: 423456789"
    "Dear Customer, Rs.2500 has been debited from your account for UPI txn to SWIGGY"
    "Money sent! ₹200 to rahul@okaxis"

Each field is extracted by an ordered list of rules. A rule is a pure
function `text -> str | None`; the first rule returning a non-empty value
wins. Missing fields are None; a miss is not an error.
"""

import re
from typing import Callable, List, Optional, Tuple

from core.models import ParsedTransaction


ExtractionRule = Callable[[str], Optional[str]]


# -----------------------------------------------------------------------------
# VOCABULARIES
# -----------------------------------------------------------------------------

# (canonical label, pattern). More specific spellings come first so that
# "Debit Card" wins over "Card" when both start at the same position.
CHANNEL_VOCABULARY: List[Tuple[str, str]] = [
    ("Net Banking", r"net\s*banking"),
    ("Debit Card", r"debit\s+card"),
    ("Credit Card", r"credit\s+card"),
    ("Google Pay", r"google\s+pay"),
    ("Amazon Pay", r"amazon\s+pay"),
    ("GPay", r"g\s?pay"),
    ("PhonePe", r"phone\s?pe"),
    ("Paytm", r"paytm"),
    ("BHIM", r"bhim"),
    ("UPI", r"upi"),
    ("NEFT", r"neft"),
    ("IMPS", r"imps"),
    ("RTGS", r"rtgs"),
    ("Card", r"card"),
]

REFERENCE_LABELS = r"ref(?:erence)?|utr|rrn|txn\s+id"

# Digit group with optional thousands separators and decimal part.
# Never ends on a separator: "Rs 500, paid" yields "500".
_NUMBER = r"\d(?:[\d,]*\d)?(?:\.\d+)?"

# Currency marker before the number (₹183, Rs.120.00, INR 1,460.00) or a
# trailing currency word after it (183 rupees, 200 Rs). A trailing marker
# directly followed by another number belongs to that number instead.
_AMOUNT_PATTERN = re.compile(
    rf"(?:₹|(?<![A-Za-z])(?:Rs\.?|INR))\s*({_NUMBER})"
    rf"|(?<![\d.,])({_NUMBER})\s*(?:₹|(?:Rs|INR|rupees?)\b)(?!\.?\s*\d)",
    re.IGNORECASE,
)

_CHANNEL_PATTERN = re.compile(
    r"\b(?:"
    + "|".join(f"(?P<c{i}>{pattern})" for i, (_, pattern) in enumerate(CHANNEL_VOCABULARY))
    + r")\b",
    re.IGNORECASE,
)

_CHANNEL_STOPS = "|".join(pattern for _, pattern in CHANNEL_VOCABULARY)

# "paid to Uber India using UPI" → "Uber India"
_PRIMARY_MERCHANT = re.compile(
    r"\b(?:to|for)\s+(.+?)"
    rf"(?=\s+(?:using|via|on|through|{_CHANNEL_STOPS}|{REFERENCE_LABELS})\b|\s*$)",
    re.IGNORECASE,
)

# "for UPI txn to SWIGGY", "transfer to JOHN on 12-03-24", "txn to X Avl Bal"
_BANK_MERCHANT = re.compile(
    r"\b(?:txn|transaction|transfer)\s+(?:to|for)\s+([A-Za-z][\w\s@.\-]*?)"
    rf"(?=\s+(?:on|{REFERENCE_LABELS}|avl|bal|balance)\b|\s+\d{{1,2}}[-/]|\s*[.,;]?\s*$)",
    re.IGNORECASE,
)

# Last resort: "₹200 to Rahul Kumar" with the name running to the end.
_TRAILING_MERCHANT = re.compile(
    r"\b(?:to|for)\s+([A-Za-z@][\w\s@.]*)$",
    re.IGNORECASE,
)

_BANK_PHRASE = re.compile(r"\b(?:txn|transaction|transfer)\s+to\s", re.IGNORECASE)
_BANK_LEAD = re.compile(r"\b(?:txn|transaction|transfer)\s+$", re.IGNORECASE)
_TRAILING_PUNCTUATION = re.compile(r"[.\-,;:!]+$")
_WHITESPACE = re.compile(r"\s+")


# -----------------------------------------------------------------------------
# RULES
# -----------------------------------------------------------------------------

def _first_group(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def primary_merchant_rule(text: str) -> Optional[str]:
    match = _PRIMARY_MERCHANT.search(text)
    if match is None:
        return None
    merchant = match.group(1)
    # "transfer to JOHN 12-03-24" and "for UPI txn to SWIGGY" are bank
    # phrasing; leave them to the bank rule, which stops at dates and balances.
    if _BANK_LEAD.search(text, 0, match.start()) or _BANK_PHRASE.search(merchant + " "):
        return None
    return merchant


def bank_merchant_rule(text: str) -> Optional[str]:
    return _first_group(_BANK_MERCHANT, text)


def trailing_merchant_rule(text: str) -> Optional[str]:
    return _first_group(_TRAILING_MERCHANT, text)


def clean_merchant(raw: Optional[str]) -> Optional[str]:
    """Strips trailing punctuation, collapses whitespace, drops empties."""
    if raw is None:
        return None
    cleaned = _TRAILING_PUNCTUATION.sub("", raw.strip())
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned or None


DEFAULT_MERCHANT_RULES: List[ExtractionRule] = [
    primary_merchant_rule,
    bank_merchant_rule,
    trailing_merchant_rule,
]


class TransactionParser:
    """
    Pure notification-text parser.

    Usage:
        parser = TransactionParser()
        parsed = parser.parse("₹183 paid to Uber India using UPI")
    """

    def __init__(self, merchant_rules: List[ExtractionRule] | None = None):
        self.merchant_rules = list(merchant_rules or DEFAULT_MERCHANT_RULES)

    def parse(self, text: str) -> ParsedTransaction:
        """Never raises for any string input; absent fields are None."""
        if not text:
            return ParsedTransaction(amount=None, merchant=None, channel=None)

        return ParsedTransaction(
            amount=self.extract_amount(text),
            merchant=self.extract_merchant(text),
            channel=self.extract_channel(text),
        )

    @staticmethod
    def extract_amount(text: str) -> Optional[str]:
        match = _AMOUNT_PATTERN.search(text)
        if match is None:
            return None
        return match.group(1) or match.group(2)

    def extract_merchant(self, text: str) -> Optional[str]:
        for rule in self.merchant_rules:
            merchant = clean_merchant(rule(text))
            if merchant:
                return merchant
        return None

    @staticmethod
    def extract_channel(text: str) -> Optional[str]:
        match = _CHANNEL_PATTERN.search(text)
        if match is None:
            return None
        index = int(match.lastgroup[1:])
        return CHANNEL_VOCABULARY[index][0]

    @staticmethod
    def has_amount(text: str) -> bool:
        return bool(text) and _AMOUNT_PATTERN.search(text) is not None
