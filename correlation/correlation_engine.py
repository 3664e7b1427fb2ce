"""
correlation_engine.py
----------------------
Answers one question per payment: "which app session caused this?"

Algorithm:
    1. A payment arrives at time T.
    2. Candidate sessions are those overlapping [T - window, T] whose app
       passes the knowledge-base relevance filter.
    3. No candidates → offline purchase. The category is guessed from the
       merchant and notification text; confidence is low.
    4. Otherwise each candidate is scored:
         known app                        +50
         ... in a transactional category  +30
         session duration                 +20 / +15 / +10 / +5
         recency (T - session end)        +20 / +10 / +5 / 0
       Maximum attainable score is 120.
    5. The highest score wins (ties → first seen) and maps to a
       confidence tier.

All weights and thresholds are read from config.yaml. The engine holds no
state beyond its configuration and may be shared across threads.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config.config_loader import get_correlation_config, require_non_negative, require_positive
from core.knowledge_base import AppInfo, AppKnowledgeBase
from core.models import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    AppUsageSession,
    CorrelationResult,
    TransactionRecord,
)
from correlation.offline_classifier import OfflineClassifier

logger = logging.getLogger(__name__)


class CorrelationEngine:
    """
    Scores app-usage sessions against a payment event.

    Usage:
        engine = CorrelationEngine()
        result = engine.correlate(paid_at, merchant, text, sessions)
    """

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        knowledge_base: AppKnowledgeBase | None = None,
        offline_classifier: OfflineClassifier | None = None,
    ):
        self.config = config if config is not None else get_correlation_config()
        self.knowledge_base = knowledge_base or AppKnowledgeBase()
        self.offline_classifier = offline_classifier or OfflineClassifier()
        self._load_config()

    def _load_config(self) -> None:
        """Reads and validates weights. Bad values are programmer errors."""
        c = self.config
        self.window_minutes = require_positive("correlation", "window_minutes", c["window_minutes"])
        self.window = timedelta(minutes=self.window_minutes)
        self.known_app_bonus = require_non_negative("correlation", "known_app_bonus", c["known_app_bonus"])
        self.transactional_bonus = require_non_negative(
            "correlation", "transactional_category_bonus", c["transactional_category_bonus"]
        )
        self.transactional_categories = set(c["transactional_categories"])

        # Longest duration first, shortest gap first, so the first hit wins.
        self.duration_bonus: List[Tuple[float, float]] = sorted(
            ((b["min_seconds"], b["points"]) for b in c["duration_bonus"]),
            reverse=True,
        )
        self.recency_bonus: List[Tuple[float, float]] = sorted(
            (b["max_seconds"], b["points"]) for b in c["recency_bonus"]
        )

        tiers = c["confidence_thresholds"]
        self.high_threshold = require_positive("correlation", "confidence_thresholds.high", tiers["high"])
        self.medium_threshold = require_positive("correlation", "confidence_thresholds.medium", tiers["medium"])
        if self.medium_threshold > self.high_threshold:
            raise ValueError(
                f"correlation.confidence_thresholds: medium ({self.medium_threshold}) "
                f"exceeds high ({self.high_threshold})"
            )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def correlate(
        self,
        payment_time: datetime,
        merchant: Optional[str],
        text: Optional[str],
        sessions: Iterable[AppUsageSession],
    ) -> CorrelationResult:
        """
        Attribute one payment to an app session or to an offline purchase.

        Args:
            payment_time: When the payment notification was posted.
            merchant: Parsed merchant name, if any.
            text: Raw notification text (used by the offline fallback).
            sessions: Any sessions; filtered to the window here.

        Returns:
            A fresh CorrelationResult. Never raises for bad or missing data.
        """
        candidates = self.filter_candidates(payment_time, sessions)
        logger.debug(f"Found {len(candidates)} relevant app(s) in {self.window_minutes}-min window")

        if not candidates:
            category = self.offline_classifier.guess(merchant, text)
            logger.debug(f"No app activity → offline purchase (guessed: {category})")
            return CorrelationResult(
                attributed_app_name=None,
                attributed_app_id=None,
                category=category,
                confidence=CONFIDENCE_LOW,
                reason=(
                    f"No app activity found in the {self.window_minutes:g}-min window; "
                    f"likely an offline purchase"
                ),
            )

        best_session, best_info, best_score = None, None, None
        for session in candidates:
            info = self.knowledge_base.get_app_info(session.app_id)
            score = self.score_session(session, info, payment_time)
            logger.debug(
                f"  {session.app_id} → score: {score} "
                f"(duration: {int(session.duration.total_seconds())}s)"
            )
            # Strict comparison keeps the first-seen session on ties.
            if best_score is None or score > best_score:
                best_session, best_info, best_score = session, info, score

        name = self.knowledge_base.friendly_name(best_session.app_id)
        category = best_info.category if best_info is not None else "Unknown"
        confidence = self.confidence_for(best_score)
        duration_sec = int(best_session.duration.total_seconds())

        logger.debug(f"Winner: {name} ({category}), confidence: {confidence}")

        return CorrelationResult(
            attributed_app_name=name,
            attributed_app_id=best_session.app_id,
            category=category,
            confidence=confidence,
            reason=f"User used {name} for {duration_sec}s before payment (score: {best_score:g})",
        )

    def correlate_record(
        self, record: TransactionRecord, sessions: Iterable[AppUsageSession]
    ) -> CorrelationResult:
        """Convenience wrapper for a stored transaction."""
        return self.correlate(record.posted_at, record.merchant, record.text, sessions)

    # -------------------------------------------------------------------------
    # INTERNAL: FILTERING & SCORING
    # -------------------------------------------------------------------------

    def window_start(self, payment_time: datetime) -> datetime:
        return payment_time - self.window

    def filter_candidates(
        self, payment_time: datetime, sessions: Iterable[AppUsageSession]
    ) -> List[AppUsageSession]:
        """Sessions overlapping the window whose app is worth analyzing, in input order."""
        start = self.window_start(payment_time)
        return [
            s for s in sessions
            if s.end >= start
            and s.start <= payment_time
            and self.knowledge_base.is_relevant_app(s.app_id)
        ]

    def score_session(
        self, session: AppUsageSession, info: Optional[AppInfo], payment_time: datetime
    ) -> float:
        score = 0

        if info is not None:
            score += self.known_app_bonus
            if info.category in self.transactional_categories:
                score += self.transactional_bonus

        duration_sec = session.duration.total_seconds()
        for min_seconds, points in self.duration_bonus:
            if duration_sec >= min_seconds:
                score += points
                break

        gap_sec = (payment_time - session.end).total_seconds()
        for max_seconds, points in self.recency_bonus:
            if gap_sec < max_seconds:
                score += points
                break

        return score

    def confidence_for(self, score: float) -> str:
        if score >= self.high_threshold:
            return CONFIDENCE_HIGH
        if score >= self.medium_threshold:
            return CONFIDENCE_MEDIUM
        return CONFIDENCE_LOW
