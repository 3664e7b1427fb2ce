"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this; no hardcoded values.

Each component accepts an optional config dict override; when omitted it
falls back to the matching section accessor below. Validation helpers raise
ValueError for configurations that can never produce sensible results
(negative windows, inverted bands). These are programmer errors and are
meant to propagate.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def _get_section(name: str) -> Dict[str, Any]:
    config = load_config()
    if name not in config:
        raise KeyError(
            f"No '{name}' section in config. Available: {list(config.keys())}"
        )
    return config[name]


def get_knowledge_base_config() -> Dict[str, Any]:
    """Returns the knowledge_base block (known apps + relevance filters)."""
    return _get_section("knowledge_base")


def get_correlation_config() -> Dict[str, Any]:
    """Returns the correlation block (window, bonus weights, tiers)."""
    return _get_section("correlation")


def get_offline_categories_config() -> Dict[str, Any]:
    """Returns the ordered keyword buckets used for offline purchases."""
    return _get_section("offline_categories")


def get_subscription_detection_config() -> Dict[str, Any]:
    """Returns the subscription_detection block."""
    return _get_section("subscription_detection")


def get_deduplication_config() -> Dict[str, Any]:
    """Returns the deduplication block."""
    return _get_section("deduplication")


def get_ingestion_config() -> Dict[str, Any]:
    """Returns the ingestion block (source filters, payment verbs)."""
    return _get_section("ingestion")


def get_insights_config() -> Dict[str, Any]:
    """Returns the insights block."""
    return _get_section("insights")


# -----------------------------------------------------------------------------
# VALIDATION
# -----------------------------------------------------------------------------

def require_positive(section: str, key: str, value: float) -> float:
    """Raises ValueError unless value is a number strictly above zero."""
    if not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{section}.{key} must be a positive number, got {value!r}")
    return value


def require_non_negative(section: str, key: str, value: float) -> float:
    """Raises ValueError if value is negative or not a number."""
    if not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"{section}.{key} must be >= 0, got {value!r}")
    return value


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
