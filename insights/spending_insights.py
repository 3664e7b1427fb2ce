"""
spending_insights.py
---------------------
Spending summaries over stored transactions.

Two views:
    1. Daily summary:  one day's payments grouped by category, totalled,
                         biggest category first.
    2. Top apps:       all payments grouped by the app they were
                         attributed to, biggest spend first.

Amounts are stored as the strings found in the notification ("1,250.50").
Anything that does not parse contributes zero.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from config.config_loader import get_insights_config, require_positive
from core.models import TransactionRecord

logger = logging.getLogger(__name__)


@dataclass
class TransactionItem:
    """One payment inside a category breakdown."""
    amount: float
    merchant: str
    description: Optional[str]
    time: str                        # e.g. "09:05 PM"
    posted_at: Optional[datetime] = None
    necessity: Optional[str] = None  # "need" | "want"


@dataclass
class CategoryBreakdown:
    category: str
    total: float
    items: List[TransactionItem] = field(default_factory=list)


@dataclass
class DailySummary:
    """Total spent on one day plus the per-category breakdown."""
    day: date
    total_spent: float
    categories: List[CategoryBreakdown] = field(default_factory=list)
    transaction_count: int = 0


@dataclass
class AppSpending:
    app_name: str
    total_spent: float
    transaction_count: int
    category: str


def parse_amount(amount: Optional[str]) -> float:
    """"1,250.50" → 1250.5. Missing or malformed amounts are 0.0."""
    if amount is None:
        return 0.0
    try:
        return float(str(amount).replace(",", ""))
    except ValueError:
        return 0.0


def guess_necessity(category: Optional[str], merchant: Optional[str]) -> Optional[str]:
    """
    Heuristic need/want label from the category and merchant.

    Essentials (transport, groceries, health, bills, rent, education) are
    needs; discretionary spending (food delivery, shopping, entertainment,
    personal care, travel) is a want. None when nothing matches.
    """
    cat = (category or "").lower()
    merchant = (merchant or "").lower()

    if "transport" in cat:
        return "need"
    if any(k in cat for k in ("grocer", "medicine", "health")):
        return "need"
    if any(k in cat for k in ("bill", "recharge", "utility")):
        return "need"
    if "rent" in cat or "housing" in cat or "education" in cat:
        return "need"

    if "food delivery" in cat or "zomato" in merchant or "swiggy" in merchant:
        return "want"
    if any(k in cat for k in ("shopping", "entertainment", "personal", "salon", "travel")):
        return "want"

    return None


class SpendingInsights:
    """
    Aggregates transactions into daily and per-app spending views.

    Usage:
        insights = SpendingInsights()
        summary = insights.daily_summary(store.transactions_with_amount(), date.today())
    """

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config if config is not None else get_insights_config()
        self.top_apps_limit = int(require_positive("insights", "top_apps_limit", self.config["top_apps_limit"]))
        self.other_category = self.config["other_category"]
        self.uncategorized_labels = {label.lower() for label in self.config["uncategorized_labels"]}
        self.excluded_app_keywords = [k.lower() for k in self.config["excluded_app_keywords"]]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def daily_summary(self, records: Iterable[TransactionRecord], day: date) -> DailySummary:
        """
        Summarize one calendar day.

        Categories that are blank, "Unknown" or "Uncategorized" are folded
        into the "Other" bucket. Categories are ordered by total, descending;
        equal totals keep first-seen order.
        """
        todays = [r for r in records if r.amount is not None and r.posted_at.date() == day]
        logger.debug(f"Found {len(todays)} transactions on {day.isoformat()}")

        if not todays:
            return DailySummary(day=day, total_spent=0.0)

        df = self._to_frame(todays)
        df["bucket"] = df["category"].map(self._bucket_for)

        categories = []
        for bucket, group in df.groupby("bucket", sort=False):
            items = [self._to_item(r) for r in group["record"]]
            categories.append(CategoryBreakdown(
                category=bucket,
                total=float(group["amount_value"].sum()),
                items=items,
            ))
        categories = sorted(categories, key=lambda c: c.total, reverse=True)

        total = float(sum(c.total for c in categories))
        logger.info(f"Daily total for {day.isoformat()}: {total:,.2f} across {len(categories)} categories")

        return DailySummary(
            day=day,
            total_spent=total,
            categories=categories,
            transaction_count=len(todays),
        )

    def top_apps_by_spending(
        self, records: Iterable[TransactionRecord], limit: int | None = None
    ) -> List[AppSpending]:
        """
        Total spend per attributed app, biggest first.

        Records with no attributed app, or attributed to a launcher, system UI,
        settings or "Unknown", are excluded. The category reported for an app
        is the one on its first transaction.
        """
        limit = limit if limit is not None else self.top_apps_limit
        with_app = [r for r in records if r.amount is not None and self._is_reportable_app(r.attributed_app)]

        if not with_app:
            logger.debug("No correlated transactions found for top apps")
            return []

        df = self._to_frame(with_app)
        grouped = df.groupby("attributed_app", sort=False).agg(
            total_spent=("amount_value", "sum"),
            transaction_count=("amount_value", "size"),
            category=("category", "first"),
        )
        grouped = grouped.sort_values("total_spent", ascending=False, kind="stable").head(limit)

        results = [
            AppSpending(
                app_name=app,
                total_spent=float(row["total_spent"]),
                transaction_count=int(row["transaction_count"]),
                category=row["category"] if isinstance(row["category"], str) and row["category"] else "Uncategorized",
            )
            for app, row in grouped.iterrows()
        ]
        logger.debug(f"Top apps: {[(a.app_name, a.total_spent) for a in results]}")
        return results

    # -------------------------------------------------------------------------
    # INTERNAL HELPERS
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_frame(records: List[TransactionRecord]) -> pd.DataFrame:
        df = pd.DataFrame({
            "record": records,
            "category": [r.category for r in records],
            "attributed_app": [r.attributed_app for r in records],
            "amount_value": [parse_amount(r.amount) for r in records],
        })
        return df

    def _bucket_for(self, category: Optional[str]) -> str:
        if not isinstance(category, str) or not category.strip():
            return self.other_category
        if category.lower() in self.uncategorized_labels:
            return self.other_category
        return category

    def _is_reportable_app(self, app: Optional[str]) -> bool:
        if not app or not app.strip():
            return False
        lowered = app.lower()
        if lowered in self.uncategorized_labels:
            return False
        return not any(k in lowered for k in self.excluded_app_keywords)

    @staticmethod
    def _to_item(record: TransactionRecord) -> TransactionItem:
        # Necessity from enrichment wins over the heuristic.
        necessity = record.necessity or guess_necessity(record.category, record.merchant)
        return TransactionItem(
            amount=parse_amount(record.amount),
            merchant=record.merchant or "Unknown",
            description=record.ai_description,
            time=record.posted_at.strftime("%I:%M %p"),
            posted_at=record.posted_at,
            necessity=necessity,
        )
