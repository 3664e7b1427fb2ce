"""
time_suggestions.py
--------------------
Category suggestions for the "what was this payment?" prompt, ordered by
what is likely at that time of day.

    06–09  breakfast, chai, commute
    10–11  snacks, chai, shopping
    12–14  lunch
    15–17  snacks, chai, shopping
    18–21  dinner, street food, movies, cab
    22–01  late-night food, cab
    02–05  food (general)

Weekends add outings and weekend shopping. A common tail of everyday
categories is always appended. Duplicates (same category and
subcategory) keep their first, time-based entry.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List


@dataclass(frozen=True)
class CategorySuggestion:
    category: str
    subcategory: str
    emoji: str
    priority: int                    # lower = show first


def _s(category: str, subcategory: str, emoji: str, priority: int) -> CategorySuggestion:
    return CategorySuggestion(category, subcategory, emoji, priority)


# (first hour, last hour) inclusive → suggestions
HOUR_BANDS = [
    ((6, 9), [
        _s("Food", "Breakfast", "🍳", 1),
        _s("Food", "Chai/Coffee", "☕", 2),
        _s("Transport", "Commute", "🚇", 3),
    ]),
    ((10, 11), [
        _s("Food", "Snacks", "🥪", 1),
        _s("Food", "Chai/Coffee", "☕", 2),
        _s("Shopping", "General", "🛍️", 3),
    ]),
    ((12, 14), [
        _s("Food", "Lunch", "🍛", 1),
        _s("Food", "Restaurant", "🍽️", 2),
        _s("Food", "Chai/Coffee", "☕", 3),
    ]),
    ((15, 17), [
        _s("Food", "Snacks", "🍿", 1),
        _s("Food", "Chai/Coffee", "☕", 2),
        _s("Shopping", "General", "🛍️", 3),
    ]),
    ((18, 21), [
        _s("Food", "Dinner", "🍕", 1),
        _s("Food", "Street Food", "🌮", 2),
        _s("Entertainment", "Movies", "🎬", 3),
        _s("Transport", "Auto/Cab", "🚕", 4),
    ]),
    ((22, 23), [
        _s("Food", "Late Night Snack", "🌙", 1),
        _s("Transport", "Auto/Cab", "🚕", 2),
        _s("Food", "Street Food", "🌮", 3),
    ]),
    ((0, 1), [
        _s("Food", "Late Night Snack", "🌙", 1),
        _s("Transport", "Auto/Cab", "🚕", 2),
    ]),
]

OFF_HOURS = [_s("Food", "General", "🍔", 1)]

WEEKEND_EXTRAS = [
    _s("Entertainment", "Outing", "🎢", 5),
    _s("Shopping", "Weekend Shopping", "🛒", 6),
]

COMMON = [
    _s("Food", "General", "🍔", 10),
    _s("Transport", "Auto", "🛺", 11),
    _s("Shopping", "General", "🛍️", 12),
    _s("Personal", "Transfer to Friend", "👤", 13),
    _s("Bills", "Recharge", "📱", 14),
    _s("Health", "Medicine", "💊", 15),
    _s("Groceries", "General", "🥬", 16),
    _s("Entertainment", "General", "🎮", 17),
    _s("Other", "Miscellaneous", "📦", 20),
]


def _for_hour(hour: int) -> List[CategorySuggestion]:
    for (first, last), suggestions in HOUR_BANDS:
        if first <= hour <= last:
            return suggestions
    return OFF_HOURS


def get_suggestions(when: datetime | None = None) -> List[CategorySuggestion]:
    """All suggestions for a moment in time, sorted by priority."""
    when = when or datetime.now()
    candidates = list(_for_hour(when.hour))
    if when.weekday() >= 5:
        candidates += WEEKEND_EXTRAS
    candidates += COMMON

    seen = set()
    unique = []
    for suggestion in candidates:
        key = (suggestion.category, suggestion.subcategory)
        if key in seen:
            continue
        seen.add(key)
        unique.append(suggestion)

    return sorted(unique, key=lambda s: s.priority)


def get_top_suggestions(when: datetime | None = None, limit: int = 9) -> List[CategorySuggestion]:
    return get_suggestions(when)[:limit]
