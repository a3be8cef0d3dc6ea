from __future__ import annotations
from typing import Any, List, Mapping, Optional, Tuple

UNKNOWN = "unknown"
NOT_SET = "not set"
MAX_VALUE_LENGTH = 512

# dimension -> (normalized key path, placeholder)
CONTEXT_DIMENSIONS = (
    ("page", ("path",), UNKNOWN),
    ("referrer_domain", ("referrer_domain",), NOT_SET),
    ("utm_source", ("utm", "utm_source"), NOT_SET),
    ("utm_campaign", ("utm", "utm_campaign"), NOT_SET),
    ("country", ("country",), UNKNOWN),
    ("region", ("region",), UNKNOWN),
    ("city", ("city",), UNKNOWN),
    ("device", ("device",), UNKNOWN),
    ("browser", ("browser",), UNKNOWN),
)
GOAL_DIMENSION = "goal"
DIMENSIONS = tuple(d for d, _, _ in CONTEXT_DIMENSIONS) + (GOAL_DIMENSION,)

METRIC_EVENT_TYPES = {"pageview", "goal", "payment"}


def _lookup(normalized: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    cur: Any = normalized
    for part in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(part)
    return cur


def _label(value: Any, placeholder: str) -> str:
    if value is None or isinstance(value, (dict, list)):
        return placeholder
    s = str(value).strip()
    if not s:
        return placeholder
    return s[:MAX_VALUE_LENGTH]


def extract_dimensions(event_type: str, name: Optional[str],
                       normalized: Optional[Mapping[str, Any]]) -> List[Tuple[str, str]]:
    """(dimension, value) pairs an event contributes to.

    Context dimensions always yield a value (a placeholder when absent) so
    per-dimension sums reconcile with the plain bucket. `goal` is yielded
    only by goal events.
    """
    if event_type not in METRIC_EVENT_TYPES:
        return []
    normalized = normalized or {}
    pairs = [(dim, _label(_lookup(normalized, path), placeholder))
             for dim, path, placeholder in CONTEXT_DIMENSIONS]
    if event_type == "goal":
        pairs.append((GOAL_DIMENSION, _label(name, UNKNOWN)))
    return pairs
