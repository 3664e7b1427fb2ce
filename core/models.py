"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- NotificationEvent: Raw input from the OS notification stream.
- ParsedTransaction: Output of the TransactionParser. Pure, no identity.
- AppUsageSession: One foreground-app session from the usage poller.
- CorrelationResult: Output of the CorrelationEngine, one per payment.
- TransactionRecord: A persisted notification with its attribution.
- MerchantAlias / Subscription: Store entities the core consults or upserts.
- DetectedSubscription: Output of the SubscriptionDetector.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional


# Confidence labels carried by CorrelationResult and TransactionRecord.
CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"
CONFIDENCE_LEARNED = "learned"      # Taken from a MerchantAlias, scoring skipped.
CONFIDENCE_USER = "user"            # Set explicitly by the user.

FREQUENCY_WEEKLY = "weekly"
FREQUENCY_MONTHLY = "monthly"
FREQUENCY_YEARLY = "yearly"


@dataclass(frozen=True)
class NotificationEvent:
    """
    One notification as delivered by the platform listener.

    `key` is the OS-level notification key when the platform provides one.
    Re-posted notifications share key and post time, which is what the
    deduper relies on.
    """

    source_app_id: str
    title: str
    text: str
    posted_at: datetime
    key: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        base = self.key or f"{self.source_app_id}|{self.title}|{self.text}"
        return f"{base}_{self.posted_at.isoformat()}"


@dataclass(frozen=True)
class ParsedTransaction:
    amount: Optional[str]            # e.g. "183", "1,460.00" (separators kept)
    merchant: Optional[str]          # e.g. "Uber India"
    channel: Optional[str]           # e.g. "UPI", "Google Pay"

    @property
    def is_transaction(self) -> bool:
        """A notification is a monetary event iff an amount was found."""
        return self.amount is not None


@dataclass(frozen=True)
class AppUsageSession:
    """A single foreground session of one app. `end` must not precede `start`."""

    app_id: str
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(
                f"Session for {self.app_id} ends ({self.end}) before it starts ({self.start})"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class CorrelationResult:
    """
    Attribution of one payment. Re-running correlation produces a new
    result; results are never mutated.
    """

    attributed_app_name: Optional[str]   # "Zomato", None when offline
    attributed_app_id: Optional[str]     # "com.application.zomato", None when offline
    category: str                        # "Food Delivery", "Offline Purchase", ...
    confidence: str                      # high | medium | low | learned | user
    reason: str                          # Human-readable explanation


@dataclass(frozen=True)
class Enrichment:
    """Optional free-text commentary returned by the enrichment collaborator."""

    description: str
    subcategory: Optional[str] = None
    necessity: Optional[str] = None      # "need" | "want"


@dataclass
class TransactionRecord:
    """A stored notification plus everything derived from it."""

    id: int
    source_app_id: str
    title: str
    text: str
    posted_at: datetime
    amount: Optional[str] = None
    merchant: Optional[str] = None
    channel: Optional[str] = None

    # Attribution
    category: Optional[str] = None
    attributed_app: Optional[str] = None
    confidence: Optional[str] = None

    # Enrichment
    ai_description: Optional[str] = None
    subcategory: Optional[str] = None
    necessity: Optional[str] = None


@dataclass
class MerchantAlias:
    """A learned merchant → category override, keyed by normalized name."""

    merchant_name: str
    normalized_name: str
    category: str
    subcategory: Optional[str] = None
    user_note: Optional[str] = None
    times_used: int = 1
    last_used_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class DetectedSubscription:
    merchant: str                    # Display name, as first seen
    normalized_name: str
    average_amount: float
    frequency: str                   # weekly | monthly | yearly
    confidence: str                  # high | medium | low
    occurrences: int
    last_charged_at: datetime
    next_expected_at: datetime


@dataclass
class Subscription:
    """Stored subscription. Upserted by normalized_name."""

    merchant_name: str
    normalized_name: str
    average_amount: float
    frequency: str
    confidence: str
    last_charged_at: datetime
    next_expected_at: datetime
    times_detected: int = 1


@dataclass
class IngestionResult:
    """What the ingestion pipeline did with one notification."""

    record: Optional[TransactionRecord] = None
    correlation: Optional[CorrelationResult] = None
    enrichment: Optional[Enrichment] = None
    needs_review: bool = False
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None
