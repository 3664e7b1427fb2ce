"""
test_correlation_engine.py
---------------------------
Tests for app-session attribution, the offline fallback and the knowledge base.

Run from the project root:
    python -m pytest tests/test_correlation_engine.py -v
"""

import sys
import os
import copy
import pytest
from datetime import datetime, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import get_correlation_config, reset_config
from core.knowledge_base import AppKnowledgeBase
from core.models import AppUsageSession, TransactionRecord
from correlation.correlation_engine import CorrelationEngine
from correlation.offline_classifier import OfflineClassifier


PAID_AT = datetime(2026, 3, 14, 21, 0, 0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_session(app_id: str, duration_sec: int = 120, gap_sec: int = 30) -> AppUsageSession:
    """Helper: a session ending `gap_sec` before the payment."""
    end = PAID_AT - timedelta(seconds=gap_sec)
    return AppUsageSession(app_id=app_id, start=end - timedelta(seconds=duration_sec), end=end)


# =============================================================================
# KNOWLEDGE BASE
# =============================================================================

class TestKnowledgeBase:
    def test_known_app_lookup(self):
        kb = AppKnowledgeBase()
        info = kb.get_app_info("com.application.zomato")
        assert info.friendly_name == "Zomato"
        assert info.category == "Food Delivery"

    def test_unknown_app_returns_none(self):
        kb = AppKnowledgeBase()
        assert kb.get_app_info("com.example.unknown") is None
        assert kb.category_for("com.example.unknown") == "Unknown"

    def test_friendly_name_falls_back_to_last_segment(self):
        kb = AppKnowledgeBase()
        assert kb.friendly_name("com.example.shop") == "shop"
        assert kb.friendly_name("") == "Unknown"

    @pytest.mark.parametrize("app_id", [
        "com.android.systemui",
        "com.google.android.apps.nexuslauncher",
        "com.sec.android.app.launcher",
        "com.google.android.inputmethod.latin",
        "com.android.settings",
        "com.vendor.custom.launcher3",
        "",
    ])
    def test_irrelevant_apps_filtered(self, app_id):
        assert not AppKnowledgeBase().is_relevant_app(app_id)

    def test_regular_app_is_relevant(self):
        kb = AppKnowledgeBase()
        assert kb.is_relevant_app("com.application.zomato")
        assert kb.is_relevant_app("com.example.unknown")

    def test_contains_and_len(self):
        kb = AppKnowledgeBase()
        assert "com.ubercab" in kb
        assert len(kb) > 0
        assert "Transport" in kb.get_all_categories()


# =============================================================================
# OFFLINE CLASSIFIER
# =============================================================================

class TestOfflineClassifier:
    @pytest.mark.parametrize("merchant, expected", [
        ("RAMESH CHOWMEIN", "Food"),
        ("AUTO STAND", "Transport"),
        ("CITY PHARMACY", "Healthcare"),
        ("XYZ ENTERPRISES", "Offline Purchase"),
    ])
    def test_bucket_guess(self, merchant, expected):
        assert OfflineClassifier().guess(merchant, f"₹40 paid to {merchant}") == expected

    def test_handles_missing_inputs(self):
        assert OfflineClassifier().guess(None, None) == "Offline Purchase"


# =============================================================================
# CORRELATION ENGINE
# =============================================================================

class TestCorrelationEngine:
    def test_known_transactional_app_wins_high(self):
        engine = CorrelationEngine()
        result = engine.correlate(PAID_AT, "Zomato Ltd", "₹247 paid to Zomato Ltd",
                                  [_make_session("com.application.zomato", 270, 30)])
        assert result.attributed_app_name == "Zomato"
        assert result.attributed_app_id == "com.application.zomato"
        assert result.category == "Food Delivery"
        assert result.confidence == "high"
        assert result.reason == "User used Zomato for 270s before payment (score: 120)"

    def test_no_sessions_falls_back_to_offline(self):
        result = CorrelationEngine().correlate(PAID_AT, "RAMESH CHOWMEIN", "₹40 paid to RAMESH CHOWMEIN", [])
        assert result.attributed_app_name is None
        assert result.attributed_app_id is None
        assert result.category == "Food"
        assert result.confidence == "low"
        assert "offline" in result.reason

    def test_launcher_only_is_offline(self):
        sessions = [
            _make_session("com.google.android.apps.nexuslauncher", 300, 5),
            _make_session("com.android.systemui", 300, 5),
        ]
        result = CorrelationEngine().correlate(PAID_AT, "AUTO STAND", "₹120 paid to AUTO STAND", sessions)
        assert result.attributed_app_name is None
        assert result.category == "Transport"

    def test_sessions_outside_window_ignored(self):
        old = _make_session("com.application.zomato", 120, gap_sec=11 * 60)
        result = CorrelationEngine().correlate(PAID_AT, None, "₹99 paid", [old])
        assert result.attributed_app_name is None

    def test_session_overlapping_window_start_counts(self):
        # Started 20 min before, ended 9 min before: overlaps the 10-min window.
        session = AppUsageSession(
            app_id="com.ubercab",
            start=PAID_AT - timedelta(minutes=20),
            end=PAID_AT - timedelta(minutes=9),
        )
        result = CorrelationEngine().correlate(PAID_AT, None, "₹183 paid", [session])
        assert result.attributed_app_name == "Uber"

    def test_known_app_beats_unknown_app(self):
        sessions = [
            _make_session("com.example.unknown", 600, 5),
            _make_session("com.ubercab", 20, 200),
        ]
        result = CorrelationEngine().correlate(PAID_AT, None, "₹183 paid", sessions)
        assert result.attributed_app_name == "Uber"

    def test_unknown_app_gets_unknown_category(self):
        result = CorrelationEngine().correlate(PAID_AT, None, "₹10 paid", [_make_session("com.example.shop", 90, 10)])
        assert result.attributed_app_name == "shop"
        assert result.category == "Unknown"
        # 0 + 0 + 20 + 20 = 40 → medium
        assert result.confidence == "medium"

    def test_ties_keep_first_seen(self):
        sessions = [
            _make_session("com.example.first", 90, 10),
            _make_session("com.example.second", 90, 10),
        ]
        result = CorrelationEngine().correlate(PAID_AT, None, "₹10 paid", sessions)
        assert result.attributed_app_id == "com.example.first"

    def test_longer_session_never_scores_lower(self):
        engine = CorrelationEngine()
        info = engine.knowledge_base.get_app_info("com.ubercab")
        scores = [
            engine.score_session(_make_session("com.ubercab", d, 30), info, PAID_AT)
            for d in (0, 5, 10, 29, 30, 59, 60, 600)
        ]
        assert scores == sorted(scores)

    def test_more_recent_session_never_scores_lower(self):
        engine = CorrelationEngine()
        info = engine.knowledge_base.get_app_info("com.ubercab")
        scores = [
            engine.score_session(_make_session("com.ubercab", 60, g), info, PAID_AT)
            for g in (599, 300, 179, 120, 59, 0)
        ]
        assert scores == sorted(scores)

    def test_confidence_tiers(self):
        engine = CorrelationEngine()
        assert engine.confidence_for(120) == "high"
        assert engine.confidence_for(80) == "high"
        assert engine.confidence_for(79) == "medium"
        assert engine.confidence_for(40) == "medium"
        assert engine.confidence_for(39) == "low"

    def test_correlate_record(self):
        record = TransactionRecord(
            id=1, source_app_id="com.phonepe.app", title="Paid", text="₹183 paid to Uber India",
            posted_at=PAID_AT, amount="183", merchant="Uber India",
        )
        result = CorrelationEngine().correlate_record(record, [_make_session("com.ubercab")])
        assert result.category == "Transport"

    def test_results_are_fresh_objects(self):
        engine = CorrelationEngine()
        sessions = [_make_session("com.ubercab")]
        a = engine.correlate(PAID_AT, None, "₹183 paid", sessions)
        b = engine.correlate(PAID_AT, None, "₹183 paid", sessions)
        assert a == b
        assert a is not b

    def test_inverted_thresholds_raise(self):
        config = copy.deepcopy(get_correlation_config())
        config["confidence_thresholds"] = {"high": 40, "medium": 80}
        with pytest.raises(ValueError):
            CorrelationEngine(config=config)

    def test_non_positive_window_raises(self):
        config = copy.deepcopy(get_correlation_config())
        config["window_minutes"] = 0
        with pytest.raises(ValueError):
            CorrelationEngine(config=config)

    def test_session_ending_before_start_raises(self):
        with pytest.raises(ValueError):
            AppUsageSession(app_id="com.ubercab", start=PAID_AT, end=PAID_AT - timedelta(seconds=1))
