"""
Fuzzy title matching helpers (Levenshtein edit distance)
"""

import re
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from errors import NoResultsFound

T = TypeVar('T')


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)"""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def normalize_title(title: str) -> str:
    return re.sub(r'[^a-z0-9]', '', (title or '').lower())


def find_closest_match(query: str, titles: Sequence[T],
                       key: Optional[Callable[[T], str]] = None) -> T:
    """Return the entry of ``titles`` closest to ``query``, ignoring case.

    On equal distance the earlier entry wins.
    """
    if not titles:
        raise NoResultsFound(f"No titles to match against {query!r}")

    key = key or (lambda item: item)
    query_lower = (query or '').lower()

    closest = titles[0]
    min_distance = None
    for item in titles:
        distance = levenshtein(query_lower, (key(item) or '').lower())
        if min_distance is None or distance < min_distance:
            min_distance = distance
            closest = item
    return closest


def rank_titles(query: str, items: Sequence[Any], key: Callable[[Any], str],
                limit: Optional[int] = None) -> List[Any]:
    """Sort items by distance between normalized titles, closest first"""
    normalized_query = normalize_title(query)
    ranked = sorted(items, key=lambda item: levenshtein(normalized_query, normalize_title(key(item))))
    if limit is not None:
        ranked = ranked[:limit]
    return ranked
