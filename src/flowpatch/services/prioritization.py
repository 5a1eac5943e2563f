"""Job prioritization.

Lower number = more urgent. Jobs default to a priority derived from the card's
labels; a project can instead name a payload field that carries the priority.
"""

from dataclasses import dataclass, field
from typing import Any

NO_PRIORITY = 999


@dataclass
class PriorityConfig:
    """Keyword buckets checked in order; the first bucket with a hit wins."""

    buckets: list[tuple[int, tuple[str, ...]]] = field(
        default_factory=lambda: [
            (0, ("p0", "critical", "urgent")),
            (1, ("p1", "high")),
            (2, ("p2", "medium")),
            (3, ("p3", "low")),
        ]
    )
    default: int = NO_PRIORITY


# Default configuration
DEFAULT_CONFIG = PriorityConfig()


def priority_from_labels(labels: list[str] | None, config: PriorityConfig | None = None) -> int:
    """
    Derive a numeric priority from card labels.

    Matching is case-insensitive and by substring, so "priority: high" and
    "P1-important" both count.
    """
    if config is None:
        config = DEFAULT_CONFIG
    if not labels:
        return config.default

    lowered = [str(label).lower() for label in labels]
    for priority, keywords in config.buckets:
        if any(keyword in label for label in lowered for keyword in keywords):
            return priority
    return config.default


def _lookup(payload: dict[str, Any], dotted: str) -> Any:
    value: Any = payload
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def calculate_job_priority(
    payload: dict[str, Any],
    priority_field: str | None = None,
    config: PriorityConfig | None = None,
) -> int:
    """
    Priority for a new job.

    Args:
        payload: Job payload (may carry ``labels``)
        priority_field: Optional dotted path to a priority value inside the payload.
            Integers are used as-is; strings go through label matching.

    Returns:
        Integer priority, lower is more urgent
    """
    if priority_field:
        value = _lookup(payload, priority_field)
        if isinstance(value, bool):
            value = None
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            if value.strip().lstrip("-").isdigit():
                return int(value)
            return priority_from_labels([value], config)

    labels = payload.get("labels")
    return priority_from_labels(labels if isinstance(labels, list) else None, config)

