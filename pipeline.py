"""
pipeline.py
------------
Main orchestration layer. Wires together, per notification:
    1. Source filters + NotificationDeduper   →  drop noise and re-deliveries
    2. TransactionParser                      →  amount / merchant / channel
    3. Learned MerchantAlias or CorrelationEngine  →  category + app attribution
    4. Optional enrichment collaborator       →  free-text description

and, over history:
    5. SubscriptionDetector                   →  upserted subscriptions

Storage, the foreground-app probe, the payment-verification predicate and
the enrichment call are all injected. The pipeline never performs network
or disk I/O itself.

Usage:
    from pipeline import IngestionPipeline

    pipeline = IngestionPipeline(store=InMemoryStore())
    result = pipeline.process(event)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config.config_loader import get_ingestion_config, require_non_negative
from core.deduper import NotificationDeduper
from core.models import (
    CONFIDENCE_LEARNED,
    CONFIDENCE_LOW,
    CONFIDENCE_USER,
    AppUsageSession,
    CorrelationResult,
    DetectedSubscription,
    Enrichment,
    IngestionResult,
    MerchantAlias,
    NotificationEvent,
    ParsedTransaction,
    TransactionRecord,
)
from core.subscription_detector import SubscriptionDetector, normalize_merchant_name
from core.transaction_parser import TransactionParser
from correlation.correlation_engine import CorrelationEngine
from store.repository import TransactionRepository

logger = logging.getLogger(__name__)


PaymentPredicate = Callable[[str], bool]
ForegroundAppProvider = Callable[[], Optional[str]]
Enricher = Callable[[TransactionRecord, CorrelationResult], Optional[Enrichment]]


def reject_uncertain_payment(text: str) -> bool:
    """
    Conservative default for the injected payment verifier. Rejects every
    message it is asked about, whatever the text.
    """
    return False


class IngestionPipeline:
    """
    End-to-end notification ingestion.

    Orchestrates filter → parse → attribute → enrich without exposing
    internal objects to callers.
    """

    def __init__(
        self,
        store: TransactionRepository,
        config: Dict[str, Any] | None = None,
        parser: TransactionParser | None = None,
        engine: CorrelationEngine | None = None,
        deduper: NotificationDeduper | None = None,
        detector: SubscriptionDetector | None = None,
        is_real_payment: PaymentPredicate = reject_uncertain_payment,
        foreground_app: ForegroundAppProvider | None = None,
        enricher: Enricher | None = None,
        own_app_id: str | None = None,
    ):
        """
        Args:
            store: Repository for transactions, sessions, aliases, subscriptions.
            is_real_payment: Verifies amount-bearing messages with no payment
                verb (promotions vs. payments). Failures count as False.
            foreground_app: Returns the app currently on screen, if known.
            enricher: Produces an Enrichment for a correlated payment.
            own_app_id: The host application's identifier; its notifications are ignored.
        """
        self.store = store
        self.config = config if config is not None else get_ingestion_config()
        self.parser = parser or TransactionParser()
        self.engine = engine or CorrelationEngine()
        self.deduper = deduper or NotificationDeduper()
        self.detector = detector or SubscriptionDetector()
        self.is_real_payment = is_real_payment
        self.foreground_app = foreground_app
        self.enricher = enricher
        self.own_app_id = own_app_id

        self.ignored_source_apps = set(self.config["ignored_source_apps"])
        if own_app_id:
            self.ignored_source_apps.add(own_app_id)
        self.ignored_source_keywords = [k.lower() for k in self.config["ignored_source_keywords"]]
        self.payment_verbs = [v.lower() for v in self.config["payment_verbs"]]
        self.review_categories = [c.lower() for c in self.config["review_categories"]]
        self.foreground_session = timedelta(seconds=require_non_negative(
            "ingestion", "foreground_session_seconds", self.config["foreground_session_seconds"]
        ))

        logger.info(
            f"Pipeline initialized. "
            f"Window: {self.engine.window_minutes:g} min. "
            f"Dedup capacity: {self.deduper.capacity}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def process(self, event: NotificationEvent) -> IngestionResult:
        """
        Run one notification through the pipeline.

        Returns:
            IngestionResult. `skipped_reason` is set when the notification
            was filtered out; otherwise `record` holds the stored row and,
            for payments, `correlation` holds the attribution.
        """
        skip = self._filter(event)
        if skip is not None:
            logger.debug(f"Skipping notification from {event.source_app_id}: {skip}")
            return IngestionResult(skipped_reason=skip)

        parsed = self.parser.parse(event.text)
        logger.debug(
            f"Parsed: amount={parsed.amount or 'not found'}, "
            f"merchant={parsed.merchant or 'not found'}, "
            f"channel={parsed.channel or 'not found'}"
        )

        if self.deduper.is_duplicate_restatement(
            event.text, parsed.amount, event.posted_at, self._has_recent_amount
        ):
            return IngestionResult(skipped_reason="duplicate bank restatement")

        record = self.store.add_transaction(self._to_record(event, parsed))
        logger.info(f"Saved notification (id={record.id}) from {event.source_app_id}")

        if not parsed.is_transaction:
            return IngestionResult(record=record)

        alias_result = self._apply_learned_alias(record)
        if alias_result is not None:
            return alias_result

        correlation = self.engine.correlate_record(record, self._sessions_for(event.posted_at))
        needs_review = self._needs_review(correlation)
        self.store.update_correlation(
            record.id,
            category=correlation.category,
            attributed_app=correlation.attributed_app_name,
            confidence=CONFIDENCE_LOW if needs_review else correlation.confidence,
        )
        logger.info(
            f"Correlation complete (id={record.id}): {correlation.category}, "
            f"app={correlation.attributed_app_name}, confidence={correlation.confidence}"
        )

        enrichment = None if needs_review else self._enrich(record, correlation)
        return IngestionResult(
            record=self.store.get_transaction(record.id),
            correlation=correlation,
            enrichment=enrichment,
            needs_review=needs_review,
        )

    def apply_user_category(
        self,
        record_id: int,
        category: str,
        subcategory: str | None = None,
        note: str | None = None,
        now: datetime | None = None,
    ) -> Optional[MerchantAlias]:
        """
        Record a user's categorization and learn it for the merchant.

        The next payment to the same normalized merchant is categorized
        from the alias with confidence "learned", skipping correlation.

        Returns:
            The saved alias, or None when the record has no usable merchant.
        """
        record = self.store.get_transaction(record_id)
        if record is None:
            raise KeyError(f"No transaction with id {record_id}")

        now = now or datetime.now()
        self.store.update_correlation(
            record_id,
            category=subcategory or category,
            attributed_app=record.attributed_app,
            confidence=CONFIDENCE_USER,
            subcategory=subcategory,
        )
        if note:
            self.store.update_enrichment(record_id, Enrichment(description=note, subcategory=subcategory))

        normalized = normalize_merchant_name(record.merchant)
        if not normalized:
            return None

        existing = self.store.find_alias(normalized)
        alias = MerchantAlias(
            merchant_name=record.merchant,
            normalized_name=normalized,
            category=category,
            subcategory=subcategory,
            user_note=note,
            times_used=existing.times_used + 1 if existing else 1,
            last_used_at=now,
        )
        self.store.save_alias(alias)
        logger.info(f"Learned category for '{normalized}': {category} / {subcategory or '-'}")
        return alias

    def detect_subscriptions(self, now: datetime | None = None) -> List[DetectedSubscription]:
        """Run subscription detection over stored history and upsert the results."""
        detected = self.detector.detect(self.store.transactions_with_amount(), now=now)
        logger.info(f"Subscription detection complete. Detected: {len(detected):,}.")
        self.detector.save_detected_subscriptions(self.store, detected)
        return detected

    # -------------------------------------------------------------------------
    # INTERNAL: FILTERS
    # -------------------------------------------------------------------------

    def _filter(self, event: NotificationEvent) -> Optional[str]:
        """Returns a skip reason, or None when the notification should be processed."""
        source = event.source_app_id or ""
        if source in self.ignored_source_apps or any(
            k in source.lower() for k in self.ignored_source_keywords
        ):
            return "ignored source app"

        if self.deduper.check_and_add(event.dedup_key):
            return "duplicate notification"

        if not event.text or not event.text.strip():
            return "empty text"

        if self.parser.has_amount(event.text) and not self._has_payment_verb(event.text):
            # Amount but no payment verb: a promotion ("Get ₹201 off") or a
            # terse payment ("₹150 for Swiggy order"). Ask the verifier.
            if not self._verify_payment(event.text):
                return "not a payment"

        return None

    def _has_payment_verb(self, text: str) -> bool:
        lowered = text.lower()
        return any(v in lowered for v in self.payment_verbs)

    def _verify_payment(self, text: str) -> bool:
        try:
            verified = bool(self.is_real_payment(text))
        except Exception as e:
            logger.warning(f"Payment verification failed, treating as not a payment: {e}")
            return False
        logger.debug(f"Payment verification for uncertain message: {verified}")
        return verified

    def _has_recent_amount(self, amount: str, since: datetime) -> bool:
        return self.store.find_recent_by_amount(amount, since) is not None

    # -------------------------------------------------------------------------
    # INTERNAL: ATTRIBUTION
    # -------------------------------------------------------------------------

    def _apply_learned_alias(self, record: TransactionRecord) -> Optional[IngestionResult]:
        """Short-circuits correlation when the merchant has a learned alias."""
        normalized = normalize_merchant_name(record.merchant)
        if not normalized:
            return None
        alias = self.store.find_alias(normalized)
        if alias is None:
            return None

        category = alias.subcategory or alias.category
        logger.info(f"Using learned category for '{normalized}': {category}")
        correlation = CorrelationResult(
            attributed_app_name=None,
            attributed_app_id=None,
            category=category,
            confidence=CONFIDENCE_LEARNED,
            reason=f"Learned from a previous categorization of {alias.merchant_name}",
        )
        self.store.update_correlation(
            record.id, category=category, attributed_app=None, confidence=CONFIDENCE_LEARNED
        )
        self.store.increment_alias_usage(normalized, record.posted_at)

        enrichment = None
        if alias.user_note:
            enrichment = Enrichment(description=alias.user_note, subcategory=alias.subcategory)
            self.store.update_enrichment(record.id, enrichment)

        return IngestionResult(
            record=self.store.get_transaction(record.id),
            correlation=correlation,
            enrichment=enrichment,
        )

    def _sessions_for(self, posted_at: datetime) -> List[AppUsageSession]:
        """
        Stored sessions in the window, plus a synthetic session for the app
        still on screen. The usage poller only records a session when the
        user leaves an app, so the paying app is often missing.
        """
        sessions = self.store.sessions_in_window(self.engine.window_start(posted_at), posted_at)
        if self.foreground_app is None:
            return sessions

        current = self.foreground_app()
        if current and not any(s.app_id == current for s in sessions):
            logger.debug(f"Injecting current foreground app: {current}")
            sessions.append(AppUsageSession(
                app_id=current,
                start=posted_at - self.foreground_session,
                end=posted_at,
            ))
        return sessions

    def _needs_review(self, correlation: CorrelationResult) -> bool:
        """True when the attribution is too weak to keep without asking the user."""
        if correlation.attributed_app_name is None or correlation.confidence == CONFIDENCE_LOW:
            return True
        # The user was looking at this app's own screen when the payment landed.
        if self.own_app_id and correlation.attributed_app_id == self.own_app_id:
            return True
        category = correlation.category.lower()
        return any(c in category for c in self.review_categories)

    def _enrich(self, record: TransactionRecord, correlation: CorrelationResult) -> Optional[Enrichment]:
        if self.enricher is None:
            return None
        try:
            enrichment = self.enricher(self.store.get_transaction(record.id), correlation)
        except Exception as e:
            logger.warning(f"Enrichment failed for id={record.id}: {e}")
            return None
        if enrichment is not None:
            self.store.update_enrichment(record.id, enrichment)
            logger.info(f"Enrichment saved (id={record.id}): {enrichment.description}")
        return enrichment

    @staticmethod
    def _to_record(event: NotificationEvent, parsed: ParsedTransaction) -> TransactionRecord:
        return TransactionRecord(
            id=0,
            source_app_id=event.source_app_id,
            title=event.title,
            text=event.text,
            posted_at=event.posted_at,
            amount=parsed.amount,
            merchant=parsed.merchant,
            channel=parsed.channel,
        )
