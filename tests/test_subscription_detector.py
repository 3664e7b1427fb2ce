"""
test_subscription_detector.py
------------------------------
Tests for recurring subscription detection and the subscription upsert.

Run from the project root:
    python -m pytest tests/test_subscription_detector.py -v
"""

import sys
import os
import pytest
import pandas as pd
from datetime import datetime, timedelta, timezone

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import get_subscription_detection_config, reset_config
from core.models import DetectedSubscription, TransactionRecord
from core.subscription_detector import SubscriptionDetector, normalize_merchant_name
from store.repository import InMemoryStore


NOW = datetime(2026, 9, 15, 12, 0, 0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_record(merchant: str, amount: str, posted_at: datetime, record_id: int = 0) -> TransactionRecord:
    return TransactionRecord(
        id=record_id,
        source_app_id="com.google.android.apps.nbu.paisa.user",
        title="Payment",
        text=f"₹{amount} paid to {merchant}",
        posted_at=posted_at,
        amount=amount,
        merchant=merchant,
    )


def _make_netflix_history() -> list:
    """Helper: three monthly Netflix charges plus one unrelated payment."""
    return [
        _make_record("Netflix", "649", datetime(2026, 7, 1, 9, 0)),
        _make_record("Netflix", "649", datetime(2026, 8, 1, 9, 0)),
        _make_record("Netflix", "649", datetime(2026, 9, 1, 9, 0)),
        _make_record("Swiggy", "312", datetime(2026, 9, 5, 20, 30)),
    ]


def _make_detected(name: str, amount: float, frequency: str, occurrences: int = 3) -> DetectedSubscription:
    return DetectedSubscription(
        merchant=name,
        normalized_name=normalize_merchant_name(name),
        average_amount=amount,
        frequency=frequency,
        confidence="medium",
        occurrences=occurrences,
        last_charged_at=datetime(2026, 9, 1),
        next_expected_at=datetime(2026, 10, 1),
    )


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalizeMerchantName:
    @pytest.mark.parametrize("raw, expected", [
        ("Netflix.com ", "netflixcom"),
        ("SPOTIFY INDIA", "spotifyindia"),
        ("Zee-5", "zee5"),
        ("", ""),
        (None, ""),
    ])
    def test_normalization(self, raw, expected):
        assert normalize_merchant_name(raw) == expected


# =============================================================================
# DETECTION
# =============================================================================

class TestSubscriptionDetector:
    def test_detects_monthly_netflix(self):
        subs = SubscriptionDetector().detect(_make_netflix_history(), now=NOW)
        assert len(subs) == 1
        sub = subs[0]
        assert sub.merchant == "Netflix"
        assert sub.normalized_name == "netflix"
        assert sub.frequency == "monthly"
        assert sub.confidence == "high"
        assert sub.occurrences == 3
        assert sub.average_amount == pytest.approx(649.0)
        assert sub.last_charged_at == datetime(2026, 9, 1, 9, 0)
        assert sub.next_expected_at == datetime(2026, 10, 2, 9, 0)

    def test_accepts_dataframe_input(self):
        df = pd.DataFrame([
            {"posted_at": r.posted_at, "amount": r.amount, "merchant": r.merchant}
            for r in _make_netflix_history()
        ])
        subs = SubscriptionDetector().detect(df, now=NOW)
        assert [s.normalized_name for s in subs] == ["netflix"]

    def test_missing_columns_raises(self):
        df = pd.DataFrame({"posted_at": [NOW], "amount": ["100"]})
        with pytest.raises(ValueError, match="Missing required columns"):
            SubscriptionDetector().detect(df, now=NOW)

    def test_too_few_transactions_returns_empty(self):
        history = _make_netflix_history()[:3]
        assert SubscriptionDetector().detect(history, now=NOW) == []

    def test_unstable_amounts_rejected(self):
        history = [
            _make_record("FitLife Gym", "100", datetime(2026, 6, 10)),
            _make_record("FitLife Gym", "100", datetime(2026, 7, 10)),
            _make_record("FitLife Gym", "1000", datetime(2026, 8, 10)),
            _make_record("Swiggy", "312", datetime(2026, 9, 5)),
        ]
        assert SubscriptionDetector().detect(history, now=NOW) == []

    def test_irregular_gaps_rejected(self):
        start = datetime(2026, 7, 1)
        history = [
            _make_record("Acme Services", "500", start + timedelta(days=offset))
            for offset in (0, 3, 48, 57)
        ]
        assert SubscriptionDetector().detect(history, now=NOW) == []

    def test_weekly_unknown_merchant_low_confidence(self):
        history = [
            _make_record("Sunday Dhobi", "150", datetime(2026, 8, 2)),
            _make_record("Sunday Dhobi", "150", datetime(2026, 8, 9)),
            _make_record("Swiggy", "312", datetime(2026, 9, 5)),
            _make_record("Uber India", "183", datetime(2026, 9, 6)),
        ]
        subs = SubscriptionDetector().detect(history, now=NOW)
        assert len(subs) == 1
        assert subs[0].frequency == "weekly"
        assert subs[0].confidence == "low"

    def test_old_transactions_outside_lookback_ignored(self):
        history = [
            _make_record("Netflix", "649", datetime(2026, 3, 1)),
            _make_record("Netflix", "649", datetime(2026, 4, 1)),
            _make_record("Netflix", "649", datetime(2026, 5, 1)),
            _make_record("Swiggy", "312", datetime(2026, 9, 5)),
        ]
        assert SubscriptionDetector().detect(history, now=NOW) == []

    def test_short_keys_dropped(self):
        history = [
            _make_record("Vi", "299", datetime(2026, 7, 1)),
            _make_record("Vi", "299", datetime(2026, 8, 1)),
            _make_record("Vi", "299", datetime(2026, 9, 1)),
            _make_record("Swiggy", "312", datetime(2026, 9, 5)),
        ]
        assert SubscriptionDetector().detect(history, now=NOW) == []

    def test_known_vocabulary_substring_match(self):
        detector = SubscriptionDetector()
        assert detector._is_known_subscription("netflixindia")
        assert detector._is_known_subscription("spotifyab")
        # Two-letter entries only match the whole key.
        assert not detector._is_known_subscription("vivek")
        assert not detector._is_known_subscription("davidsalon")
        assert detector._is_known_subscription("vi")
        assert not detector._is_known_subscription("unknownshop")

    def test_comma_amounts_parsed(self):
        history = [
            _make_record("Adobe Systems", "1,675.00", datetime(2026, 7, 3)),
            _make_record("Adobe Systems", "1,675.00", datetime(2026, 8, 3)),
            _make_record("Adobe Systems", "1,675.00", datetime(2026, 9, 3)),
            _make_record("Swiggy", "312", datetime(2026, 9, 5)),
        ]
        subs = SubscriptionDetector().detect(history, now=NOW)
        assert subs[0].average_amount == pytest.approx(1675.0)

    def test_small_amount_drift_within_tolerance(self):
        start = datetime(2026, 6, 20, 9, 0)
        history = [
            _make_record("Netflix", amount, start + timedelta(days=30 * i))
            for i, amount in enumerate(["649", "649", "650"])
        ] + [_make_record("Swiggy", "312", datetime(2026, 9, 5))]
        subs = SubscriptionDetector().detect(history, now=NOW)
        assert len(subs) == 1
        assert subs[0].frequency == "monthly"
        assert subs[0].confidence == "high"
        assert subs[0].average_amount == pytest.approx(649.33)
        assert subs[0].next_expected_at == datetime(2026, 9, 18, 9, 0)

    def test_timezone_aware_history_with_naive_now(self):
        history = [
            _make_record(r.merchant, r.amount, r.posted_at.replace(tzinfo=timezone.utc))
            for r in _make_netflix_history()
        ]
        subs = SubscriptionDetector().detect(history, now=NOW)
        assert [s.normalized_name for s in subs] == ["netflix"]
        assert subs[0].last_charged_at == datetime(2026, 9, 1, 9, 0, tzinfo=timezone.utc)

    def test_timezone_aware_history_default_now(self):
        today = datetime.now(timezone.utc)
        history = [
            _make_record("Netflix", "649", today - timedelta(days=days))
            for days in (65, 35, 5)
        ] + [_make_record("Swiggy", "312", today - timedelta(days=2))]
        subs = SubscriptionDetector().detect(history)
        assert [s.frequency for s in subs] == ["monthly"]

    def test_naive_history_with_aware_now(self):
        now = NOW.replace(tzinfo=timezone.utc)
        subs = SubscriptionDetector().detect(_make_netflix_history(), now=now)
        assert [s.normalized_name for s in subs] == ["netflix"]

    def test_sorted_by_occurrences(self):
        history = _make_netflix_history() + [
            _make_record("Spotify", "119", datetime(2026, 8, 15)),
            _make_record("Spotify", "119", datetime(2026, 9, 14)),
        ]
        subs = SubscriptionDetector().detect(history, now=NOW)
        assert [s.normalized_name for s in subs] == ["netflix", "spotify"]
        assert subs[1].confidence == "medium"

    def test_inverted_band_raises(self):
        config = dict(get_subscription_detection_config())
        config["frequency_bands"] = {"monthly": {"min_gap_days": 40, "max_gap_days": 20}}
        with pytest.raises(ValueError):
            SubscriptionDetector(config=config)


# =============================================================================
# MONTHLY BURN & UPSERT
# =============================================================================

class TestMonthlyBurnAndUpsert:
    def test_monthly_burn(self):
        subs = [
            _make_detected("Dhobi", 100.0, "weekly"),
            _make_detected("Netflix", 649.0, "monthly"),
            _make_detected("Amazon Prime", 1200.0, "yearly"),
        ]
        assert SubscriptionDetector().monthly_burn(subs) == pytest.approx(433.0 + 649.0 + 100.0, abs=1e-3)

    def test_yearly_burn_is_exact_twelfth(self):
        subs = [_make_detected("Amazon Prime", 12000.0, "yearly")]
        assert SubscriptionDetector().monthly_burn(subs) == 12000.0 / 12

    def test_non_positive_divisor_raises(self):
        config = dict(get_subscription_detection_config())
        config["monthly_divisors"] = {"yearly": 0}
        with pytest.raises(ValueError):
            SubscriptionDetector(config=config)

    def test_monthly_burn_empty(self):
        assert SubscriptionDetector().monthly_burn([]) == 0.0

    def test_upsert_inserts_then_updates(self):
        store = InMemoryStore()
        detector = SubscriptionDetector()
        detected = [_make_detected("Netflix", 649.0, "monthly", occurrences=3)]

        assert detector.save_detected_subscriptions(store, detected) == (1, 0)
        stored = store.find_subscription("netflix")
        assert stored.times_detected == 3
        assert stored.merchant_name == "Netflix"

        assert detector.save_detected_subscriptions(store, detected) == (0, 1)
        assert len(store.list_subscriptions()) == 1
        assert store.find_subscription("netflix").times_detected == 4
