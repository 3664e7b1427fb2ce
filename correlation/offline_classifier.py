"""
offline_classifier.py
----------------------
Category guess for payments with no correlated app session.

Handles offline purchases such as:
    "₹40 paid to RAMESH CHOWMEIN"   → Food
    "₹120 paid to AUTO STAND"       → Transport

Buckets are evaluated in config order; the first bucket with any keyword
contained in "merchant + notification text" wins. Keyword matching is a
plain substring test on lowercased text.
"""

from typing import Any, Dict, List, Optional, Tuple

from config.config_loader import get_offline_categories_config


class OfflineClassifier:

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config if config is not None else get_offline_categories_config()
        self.default_category: str = self.config["default"]
        self.buckets: List[Tuple[str, List[str]]] = [
            (bucket["category"], [k.lower() for k in bucket["keywords"]])
            for bucket in self.config["buckets"]
        ]

    def guess(self, merchant: Optional[str], text: Optional[str]) -> str:
        combined = f"{(merchant or '').lower()} {(text or '').lower()}"
        for category, keywords in self.buckets:
            if any(k in combined for k in keywords):
                return category
        return self.default_category
