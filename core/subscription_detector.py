"""
subscription_detector.py
-------------------------
Recurring subscription detection over transaction history.

Answers one question per merchant:

    "Is this merchant charging the same amount on a regular schedule?"

Examples it picks up:
    - Netflix ₹649 on the 1st of every month
    - Spotify ₹119 on the 15th of every month
    - Airtel recharge ₹299 every 28 days

Design decisions:
    - Grouping key is the normalized merchant name (lowercase alphanumerics).
      Keys of two characters or fewer carry no identity and are dropped.
    - Amount stability is a simple spread test: (max - min) / mean.
    - Periodicity uses the mean inter-charge gap, binned into
      weekly / monthly / yearly bands. Anything else is not a subscription.
    - All thresholds, bands and vocabularies are read from config.yaml.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Tuple

import numpy as np
import pandas as pd

from config.config_loader import get_subscription_detection_config, require_positive
from core.models import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    DetectedSubscription,
    Subscription,
    TransactionRecord,
)
from store.repository import TransactionRepository

logger = logging.getLogger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")

REQUIRED_COLUMNS = ["posted_at", "amount", "merchant"]


def normalize_merchant_name(name: str | None) -> str:
    """Lowercase alphanumerics only: "Netflix.com " becomes "netflixcom"."""
    return _NON_ALPHANUMERIC.sub("", (name or "").lower().strip())


class SubscriptionDetector:
    """
    Detects recurring subscription charges.

    Usage:
        detector = SubscriptionDetector()
        subscriptions = detector.detect(store.transactions_with_amount())
    """

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config if config is not None else get_subscription_detection_config()
        c = self.config
        self.lookback_days = require_positive("subscription_detection", "lookback_days", c["lookback_days"])
        self.min_transactions = int(c["min_transactions"])
        self.min_occurrences = int(c["min_occurrences"])
        self.min_key_length = int(c["min_key_length"])
        self.max_amount_spread = c["max_amount_spread"]
        self.high_occurrence_count = int(c["high_occurrence_count"])
        self.frequency_bands: Dict[str, Dict[str, float]] = c["frequency_bands"]
        self.monthly_multipliers: Dict[str, float] = c["monthly_multipliers"]
        self.monthly_divisors: Dict[str, float] = {
            name: require_positive("subscription_detection", f"monthly_divisors.{name}", divisor)
            for name, divisor in c.get("monthly_divisors", {}).items()
        }
        self.known_subscriptions = [k.lower() for k in c["known_subscriptions"]]

        for name, band in self.frequency_bands.items():
            if band["min_gap_days"] > band["max_gap_days"]:
                raise ValueError(f"subscription_detection.frequency_bands.{name} is inverted: {band}")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(
        self,
        transactions: pd.DataFrame | Iterable[TransactionRecord],
        now: datetime | None = None,
    ) -> List[DetectedSubscription]:
        """
        Run subscription detection.

        Args:
            transactions: DataFrame with columns posted_at, amount, merchant,
                or an iterable of TransactionRecord.
            now: End of the lookback window. Defaults to the current time.

        Returns:
            DetectedSubscription list sorted by occurrence count, descending.
            Empty when there is too little history.
        """
        df = self._prepare(transactions, now)

        if len(df) < self.min_transactions:
            logger.debug(
                f"Not enough transactions for subscription detection "
                f"({len(df)} < {self.min_transactions})"
            )
            return []

        results: List[DetectedSubscription] = []
        for normalized, group in df.groupby("normalized", sort=True):
            if len(group) < self.min_occurrences:
                continue

            subscription = self._build_subscription(normalized, group)
            if subscription is not None:
                results.append(subscription)

        # sorted() is stable, so equal counts keep alphabetical key order.
        return sorted(results, key=lambda s: s.occurrences, reverse=True)

    def monthly_burn(self, subscriptions: Iterable[DetectedSubscription]) -> float:
        """Total monthly cost: weekly ×4.33, monthly ×1, yearly ÷12."""
        return float(sum(self._monthly_amount(s) for s in subscriptions))

    def _monthly_amount(self, subscription: DetectedSubscription) -> float:
        if subscription.frequency in self.monthly_divisors:
            return subscription.average_amount / self.monthly_divisors[subscription.frequency]
        return subscription.average_amount * self.monthly_multipliers.get(subscription.frequency, 0.0)

    def save_detected_subscriptions(
        self, store: TransactionRepository, detected: Iterable[DetectedSubscription]
    ) -> Tuple[int, int]:
        """
        Upsert detections by normalized name.

        Returns:
            (inserted, updated) counts.
        """
        inserted = updated = 0
        for sub in detected:
            existing = store.find_subscription(sub.normalized_name)
            if existing is not None:
                store.update_subscription_charge(
                    sub.normalized_name,
                    last_charged_at=sub.last_charged_at,
                    next_expected_at=sub.next_expected_at,
                )
                updated += 1
            else:
                store.insert_subscription(Subscription(
                    merchant_name=sub.merchant,
                    normalized_name=sub.normalized_name,
                    average_amount=sub.average_amount,
                    frequency=sub.frequency,
                    confidence=sub.confidence,
                    last_charged_at=sub.last_charged_at,
                    next_expected_at=sub.next_expected_at,
                    times_detected=sub.occurrences,
                ))
                inserted += 1

        logger.info(f"Subscriptions saved. Inserted: {inserted}, updated: {updated}.")
        return inserted, updated

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(
        self, transactions: pd.DataFrame | Iterable[TransactionRecord], now: datetime | None
    ) -> pd.DataFrame:
        """
        Validates input, drops non-transactions, applies the lookback window
        and adds the numeric amount and normalized merchant columns.
        """
        if isinstance(transactions, pd.DataFrame):
            missing = [c for c in REQUIRED_COLUMNS if c not in transactions.columns]
            if missing:
                raise ValueError(f"Missing required columns: {missing}")
            df = transactions[REQUIRED_COLUMNS].copy()
        else:
            df = pd.DataFrame(
                [{"posted_at": r.posted_at, "amount": r.amount, "merchant": r.merchant} for r in transactions],
                columns=REQUIRED_COLUMNS,
            )

        # No amount → not a transaction.
        df = df[df["amount"].notna()].copy()

        if not pd.api.types.is_datetime64_any_dtype(df["posted_at"]):
            df["posted_at"] = pd.to_datetime(df["posted_at"])

        cutoff = self._window_end(now, df["posted_at"].dt.tz) - pd.Timedelta(days=self.lookback_days)
        df = df[df["posted_at"] >= cutoff].copy()

        # Unparseable amounts become NaN and are ignored by the statistics.
        df["amount_value"] = pd.to_numeric(
            df["amount"].astype(str).str.replace(",", "", regex=False),
            errors="coerce",
        )
        df["normalized"] = df["merchant"].map(
            lambda m: normalize_merchant_name(m if isinstance(m, str) and m else "unknown")
        )

        # Short keys still count toward min_transactions; they are dropped per group.
        df = df.sort_values(["posted_at"]).reset_index(drop=True)
        return df

    @staticmethod
    def _window_end(now: datetime | None, tz) -> pd.Timestamp:
        """
        `now` as a Timestamp comparable with the history's timestamps.

        Naive `now` against zoned history is taken to be in the history's
        zone; zoned `now` against naive history keeps its wall-clock time.
        """
        if now is None:
            return pd.Timestamp.now(tz=tz)
        end = pd.Timestamp(now)
        if tz is not None and end.tzinfo is None:
            return end.tz_localize(tz)
        if tz is None and end.tzinfo is not None:
            return end.tz_localize(None)
        return end

    # -------------------------------------------------------------------------
    # INTERNAL: SUBSCRIPTION CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_subscription(self, normalized: str, group: pd.DataFrame) -> DetectedSubscription | None:
        """
        Builds a DetectedSubscription from one merchant group.

        Returns None if the group is unstable in amount or not periodic.
        """
        if len(normalized) < self.min_key_length:
            return None

        # --- Amount stability ---
        amounts = group["amount_value"].dropna().values
        if len(amounts) == 0:
            return None

        mean_amt = float(np.mean(amounts))
        spread = (float(np.max(amounts)) - float(np.min(amounts))) / mean_amt if mean_amt > 0 else 1.0
        if spread > self.max_amount_spread:
            logger.debug(f"Skipping {normalized}: amount spread too high ({spread:.3f})")
            return None

        # --- Periodicity ---
        dates = group["posted_at"].sort_values()
        gaps = np.diff(dates.values) / np.timedelta64(1, "D")
        if len(gaps) == 0:
            return None

        mean_gap = float(np.mean(gaps))
        frequency = self._classify_frequency(mean_gap)
        if frequency is None:
            logger.debug(f"Skipping {normalized}: irregular frequency ({mean_gap:.1f} days)")
            return None

        # --- Confidence ---
        occurrences = len(group)
        is_known = self._is_known_subscription(normalized)
        if is_known and occurrences >= self.high_occurrence_count:
            confidence = CONFIDENCE_HIGH
        elif is_known or occurrences >= self.high_occurrence_count:
            confidence = CONFIDENCE_MEDIUM
        else:
            confidence = CONFIDENCE_LOW

        last_charged = dates.iloc[-1].to_pydatetime()
        next_expected = last_charged + timedelta(days=mean_gap)

        display_name = group["merchant"].iloc[0]
        if not isinstance(display_name, str) or not display_name:
            display_name = normalized

        logger.debug(
            f"Detected subscription: {display_name} → {mean_amt:.2f} {frequency} ({confidence} confidence)"
        )

        return DetectedSubscription(
            merchant=display_name,
            normalized_name=normalized,
            average_amount=round(mean_amt, 2),
            frequency=frequency,
            confidence=confidence,
            occurrences=occurrences,
            last_charged_at=last_charged,
            next_expected_at=next_expected,
        )

    def _classify_frequency(self, mean_gap_days: float) -> str | None:
        """First band whose inclusive [min, max] contains the mean gap."""
        for name, band in self.frequency_bands.items():
            if band["min_gap_days"] <= mean_gap_days <= band["max_gap_days"]:
                return name
        return None

    def _is_known_subscription(self, normalized: str) -> bool:
        """
        Substring match against the vocabulary. Entries shorter than the
        minimum key length ("vi") must equal the whole key, so "vivek" or
        "davidsalon" are not treated as a known telecom subscription the way
        a plain substring test over every entry would treat them.
        """
        for known in self.known_subscriptions:
            if len(known) < self.min_key_length:
                if normalized == known:
                    return True
            elif known in normalized:
                return True
        return False
