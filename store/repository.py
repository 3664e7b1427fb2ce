"""
repository.py
--------------
Storage boundary for the ingestion pipeline and the subscription upsert.

The engine itself never touches storage; everything it needs is queried by
the caller through this interface and handed in as plain data. A real
deployment backs it with a database. InMemoryStore is the reference
implementation used by the pipeline tests and by embedding callers that
do not need persistence.

Concrete stores implement every abstract method below.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from core.models import (
    AppUsageSession,
    CorrelationResult,
    Enrichment,
    MerchantAlias,
    Subscription,
    TransactionRecord,
)


class TransactionRepository(ABC):
    """Abstract store for notifications, usage sessions, aliases and subscriptions."""

    # -------------------------------------------------------------------------
    # TRANSACTIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    def add_transaction(self, record: TransactionRecord) -> TransactionRecord:
        """Persists a record and returns it with its assigned id."""
        ...

    @abstractmethod
    def get_transaction(self, record_id: int) -> Optional[TransactionRecord]:
        ...

    @abstractmethod
    def update_correlation(
        self,
        record_id: int,
        category: str,
        attributed_app: Optional[str],
        confidence: str,
        subcategory: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    def update_enrichment(self, record_id: int, enrichment: Enrichment) -> None:
        ...

    @abstractmethod
    def find_recent_by_amount(self, amount: str, since: datetime) -> Optional[TransactionRecord]:
        """Most recent record with exactly this amount string posted at or after `since`."""
        ...

    @abstractmethod
    def transactions_with_amount(self) -> List[TransactionRecord]:
        ...

    @abstractmethod
    def transactions_since(self, since: datetime) -> List[TransactionRecord]:
        """Amount-bearing records posted at or after `since`."""
        ...

    # -------------------------------------------------------------------------
    # USAGE SESSIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    def add_session(self, session: AppUsageSession) -> None:
        ...

    @abstractmethod
    def sessions_in_window(self, start: datetime, end: datetime) -> List[AppUsageSession]:
        """Sessions overlapping [start, end]."""
        ...

    # -------------------------------------------------------------------------
    # MERCHANT ALIASES
    # -------------------------------------------------------------------------

    @abstractmethod
    def find_alias(self, normalized_name: str) -> Optional[MerchantAlias]:
        ...

    @abstractmethod
    def save_alias(self, alias: MerchantAlias) -> None:
        """Inserts or replaces by normalized_name."""
        ...

    @abstractmethod
    def increment_alias_usage(self, normalized_name: str, now: datetime) -> None:
        ...

    # -------------------------------------------------------------------------
    # SUBSCRIPTIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    def find_subscription(self, normalized_name: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    def insert_subscription(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    def update_subscription_charge(
        self, normalized_name: str, last_charged_at: datetime, next_expected_at: datetime
    ) -> None:
        """Advances the charge dates and increments times_detected."""
        ...

    @abstractmethod
    def list_subscriptions(self) -> List[Subscription]:
        ...


class InMemoryStore(TransactionRepository):
    """Dict-backed store. All operations hold a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._transactions: Dict[int, TransactionRecord] = {}
        self._sessions: List[AppUsageSession] = []
        self._aliases: Dict[str, MerchantAlias] = {}
        self._subscriptions: Dict[str, Subscription] = {}

    # --- transactions ---

    def add_transaction(self, record: TransactionRecord) -> TransactionRecord:
        with self._lock:
            stored = replace(record, id=next(self._ids))
            self._transactions[stored.id] = stored
            return stored

    def get_transaction(self, record_id: int) -> Optional[TransactionRecord]:
        with self._lock:
            return self._transactions.get(record_id)

    def update_correlation(
        self,
        record_id: int,
        category: str,
        attributed_app: Optional[str],
        confidence: str,
        subcategory: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self._transactions[record_id]
            record.category = category
            record.attributed_app = attributed_app
            record.confidence = confidence
            if subcategory is not None:
                record.subcategory = subcategory

    def update_enrichment(self, record_id: int, enrichment: Enrichment) -> None:
        with self._lock:
            record = self._transactions[record_id]
            record.ai_description = enrichment.description
            if enrichment.subcategory is not None:
                record.subcategory = enrichment.subcategory
            if enrichment.necessity is not None:
                record.necessity = enrichment.necessity

    def find_recent_by_amount(self, amount: str, since: datetime) -> Optional[TransactionRecord]:
        with self._lock:
            matches = [
                r for r in self._transactions.values()
                if r.amount == amount and r.posted_at >= since
            ]
        return max(matches, key=lambda r: r.posted_at) if matches else None

    def transactions_with_amount(self) -> List[TransactionRecord]:
        with self._lock:
            return [r for r in self._transactions.values() if r.amount is not None]

    def transactions_since(self, since: datetime) -> List[TransactionRecord]:
        return [r for r in self.transactions_with_amount() if r.posted_at >= since]

    # --- sessions ---

    def add_session(self, session: AppUsageSession) -> None:
        with self._lock:
            self._sessions.append(session)

    def sessions_in_window(self, start: datetime, end: datetime) -> List[AppUsageSession]:
        with self._lock:
            return [s for s in self._sessions if s.end >= start and s.start <= end]

    # --- aliases ---

    def find_alias(self, normalized_name: str) -> Optional[MerchantAlias]:
        with self._lock:
            return self._aliases.get(normalized_name)

    def save_alias(self, alias: MerchantAlias) -> None:
        with self._lock:
            self._aliases[alias.normalized_name] = alias

    def increment_alias_usage(self, normalized_name: str, now: datetime) -> None:
        with self._lock:
            alias = self._aliases[normalized_name]
            alias.times_used += 1
            alias.last_used_at = now

    # --- subscriptions ---

    def find_subscription(self, normalized_name: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(normalized_name)

    def insert_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription.normalized_name in self._subscriptions:
                raise KeyError(f"Subscription already exists: {subscription.normalized_name}")
            self._subscriptions[subscription.normalized_name] = subscription

    def update_subscription_charge(
        self, normalized_name: str, last_charged_at: datetime, next_expected_at: datetime
    ) -> None:
        with self._lock:
            sub = self._subscriptions[normalized_name]
            sub.last_charged_at = last_charged_at
            sub.next_expected_at = next_expected_at
            sub.times_detected += 1

    def list_subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())
