"""Label normalization and matching against a remote label taxonomy.

Matching tolerates the spellings people actually use for the same status:
"In Progress", "in-progress", "status::in_progress" and so on.
"""

import re

from flowpatch.policy import CardStatus, StatusLabels

_DELIMITERS = re.compile(r"[-_\s]+")
STATUS_SEPARATOR = "::"


def normalize_label_for_matching(name: str | None) -> str:
    """Lowercase and drop dashes, underscores, whitespace and colons."""
    return _DELIMITERS.sub("", (name or "").lower()).replace(":", "")


def extract_status_from_label(label: str) -> str:
    """Status part of a ``prefix::status`` label, or the label itself."""
    if STATUS_SEPARATOR in label:
        return label.split(STATUS_SEPARATOR, 1)[1] or label
    return label


def find_matching_label(target: str, repo_labels: list[str]) -> str | None:
    """
    Find the repository label that corresponds to ``target``.

    Tried in order: exact match, normalized full match, then for
    ``prefix::value`` targets the value part against other prefixed labels
    and finally against unprefixed labels. Within each step the first label
    in ``repo_labels`` order wins.
    """
    if target in repo_labels:
        return target

    normalized_target = normalize_label_for_matching(target)
    for label in repo_labels:
        if normalize_label_for_matching(label) == normalized_target:
            return label

    if STATUS_SEPARATOR not in target:
        return None

    normalized_status = normalize_label_for_matching(target.split(STATUS_SEPARATOR, 1)[1])
    for label in repo_labels:
        if STATUS_SEPARATOR in label:
            value = label.split(STATUS_SEPARATOR, 1)[1]
            if normalize_label_for_matching(value) == normalized_status:
                return label
    for label in repo_labels:
        if STATUS_SEPARATOR not in label and normalize_label_for_matching(label) == normalized_status:
            return label
    return None


def is_status_label(label: str, status_labels: StatusLabels) -> bool:
    """Whether ``label`` denotes any configured card status."""
    candidates = status_labels.all_labels()
    if find_matching_label(label, candidates) is not None:
        return True
    # "In Progress" on the issue should count as the status::in-progress label
    normalized = normalize_label_for_matching(label)
    return any(
        normalize_label_for_matching(extract_status_from_label(candidate)) == normalized
        for candidate in candidates
    )


def status_from_labels(labels: list[str], status_labels: StatusLabels) -> CardStatus | None:
    """Card status implied by an issue's labels, if any."""
    for status in CardStatus:
        configured = status_labels.label_for(status)
        if find_matching_label(configured, labels) is not None:
            return status
    return None
