"""
knowledge_base.py
------------------
App knowledge base lookup layer.

Loads the known-app table from config.yaml and builds a lookup index keyed
on the app identifier (Android package name). This is the bridge between
raw foreground-app sessions and the commerce categories the correlation
engine reasons about.

Also owns the relevance filter: identifiers that belong to the OS shell
(system UI, launchers, keyboards, dialers, settings, camera and other
utilities, Play services) are never worth correlating.

Knowledge base updates happen in config.yaml, with no code changes required.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.config_loader import get_knowledge_base_config


@dataclass(frozen=True)
class AppInfo:
    friendly_name: str               # e.g. "Zomato"
    category: str                    # e.g. "Food Delivery"


class AppKnowledgeBase:
    """
    Fast lookup from app identifier → AppInfo.

    Built once at init from the config table. Thread-safe for reads.
    """

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config if config is not None else get_knowledge_base_config()
        self._index: Dict[str, AppInfo] = {}
        self._irrelevant_prefixes = tuple(self.config.get("irrelevant_prefixes", []))
        self._irrelevant_keywords = tuple(
            k.lower() for k in self.config.get("irrelevant_keywords", [])
        )
        self._load_apps()

    def _load_apps(self) -> None:
        """Builds the lookup index from config. Later entries override earlier ones."""
        for entry in self.config.get("apps", []):
            self._index[entry["app_id"]] = AppInfo(
                friendly_name=entry["friendly_name"],
                category=entry["category"],
            )

    def get_app_info(self, app_id: str) -> Optional[AppInfo]:
        """Returns AppInfo for a known identifier, or None if unknown."""
        return self._index.get(app_id)

    def is_relevant_app(self, app_id: str) -> bool:
        """
        False for OS/system/launcher/keyboard identifiers that say nothing
        about why a payment happened.
        """
        if not app_id:
            return False
        if app_id.startswith(self._irrelevant_prefixes):
            return False
        lowered = app_id.lower()
        return not any(k in lowered for k in self._irrelevant_keywords)

    def friendly_name(self, app_id: str) -> str:
        """
        Known name, else the last dot-delimited segment of the identifier
        ("com.example.shop" → "shop").
        """
        info = self.get_app_info(app_id)
        if info is not None:
            return info.friendly_name
        last = app_id.split(".")[-1] if app_id else ""
        return last or "Unknown"

    def category_for(self, app_id: str) -> str:
        info = self.get_app_info(app_id)
        return info.category if info is not None else "Unknown"

    def get_all_categories(self) -> set[str]:
        """Returns all categories present in the knowledge base."""
        return {info.category for info in self._index.values()}

    def __contains__(self, app_id: str) -> bool:
        return app_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return f"AppKnowledgeBase(entries={len(self)}, categories={self.get_all_categories()})"
