"""
deduper.py
-----------
Suppresses notifications that would otherwise be processed twice.

Two independent rules:

    1. Exact re-delivery. Android re-posts a notification when it is
       updated; the (key, post_time) pair is identical. A bounded,
       insertion-ordered set remembers the most recent pairs and evicts the
       oldest once capacity is exceeded.

    2. Bank restatement. Paying through a UPI app usually produces two
       messages: the app's own ("₹10 paid to Aayush Raj") and the bank's
       ("a/c XX1234 debited Rs.10"). The bank message is suppressed only when
       a transaction with the same amount was already recorded in the
       preceding window; otherwise it is the only signal and is kept.
       Two genuine payments of the same amount inside the window are
       collapsed into one. That false negative is accepted.

The deduper is the only mutable state in the ingestion path. It is an
explicit object handed to the pipeline, and every operation holds its lock.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from config.config_loader import get_deduplication_config, require_non_negative, require_positive

logger = logging.getLogger(__name__)


# (amount, since) -> True if a transaction with that amount was recorded at or after `since`.
RecentAmountLookup = Callable[[str, datetime], bool]


class NotificationDeduper:
    """
    Usage:
        deduper = NotificationDeduper()
        if deduper.check_and_add(event.dedup_key):
            return  # already processed
    """

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config if config is not None else get_deduplication_config()
        self.capacity = int(require_positive("deduplication", "capacity", self.config["capacity"]))
        self.restatement_window = timedelta(
            minutes=require_non_negative(
                "deduplication", "restatement_window_minutes",
                self.config["restatement_window_minutes"],
            )
        )
        self.restatement_verbs = [v.lower() for v in self.config["restatement_verbs"]]
        self.account_indicators = [a.lower() for a in self.config["account_indicators"]]

        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # RULE 1: EXACT RE-DELIVERY
    # -------------------------------------------------------------------------

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._seen

    def add(self, key: str) -> None:
        with self._lock:
            self._add_locked(key)

    def evict_oldest(self) -> Optional[str]:
        """Removes and returns the oldest key, or None when empty."""
        with self._lock:
            if not self._seen:
                return None
            key, _ = self._seen.popitem(last=False)
            return key

    def check_and_add(self, key: str) -> bool:
        """
        Atomically tests and records a key.

        Returns:
            True if the key had already been seen (caller should skip),
            False if it is new (and is now remembered).
        """
        with self._lock:
            if key in self._seen:
                logger.debug(f"Skipping duplicate notification: {key}")
                return True
            self._add_locked(key)
            return False

    def _add_locked(self, key: str) -> None:
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    # -------------------------------------------------------------------------
    # RULE 2: BANK RESTATEMENT
    # -------------------------------------------------------------------------

    def is_bank_restatement(self, text: str) -> bool:
        """Debit/credit verb plus account-indicator vocabulary."""
        lowered = (text or "").lower()
        has_verb = any(v in lowered for v in self.restatement_verbs)
        has_account = any(a in lowered for a in self.account_indicators)
        return has_verb and has_account

    def is_duplicate_restatement(
        self,
        text: str,
        amount: Optional[str],
        posted_at: datetime,
        has_recent_amount: RecentAmountLookup,
    ) -> bool:
        """
        True when a bank restatement repeats an amount already captured
        within the restatement window before `posted_at`.
        """
        if amount is None or not self.is_bank_restatement(text):
            return False

        since = posted_at - self.restatement_window
        if has_recent_amount(amount, since):
            logger.info(f"Bank message for {amount} already captured since {since:%H:%M:%S}; suppressing")
            return True

        logger.debug(f"Bank message for {amount} is the only signal; keeping")
        return False
