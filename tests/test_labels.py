"""Tests for status label matching."""

from flowpatch.policy import CardStatus, StatusLabels
from flowpatch.services.labels import (
    extract_status_from_label,
    find_matching_label,
    is_status_label,
    normalize_label_for_matching,
    status_from_labels,
)


class TestNormalize:
    def test_drops_delimiters_and_case(self) -> None:
        assert normalize_label_for_matching("Status::In-Progress") == "statusinprogress"
        assert normalize_label_for_matching("in_progress ") == "inprogress"
        assert normalize_label_for_matching(None) == ""

    def test_extract_status(self) -> None:
        assert extract_status_from_label("status::in-review") == "in-review"
        assert extract_status_from_label("Ready") == "Ready"


class TestFindMatchingLabel:
    """Tests for find_matching_label()."""

    def test_exact_match_wins(self) -> None:
        labels = ["status::in-progress", "Status::In-Progress"]

        assert find_matching_label("Status::In-Progress", labels) == "Status::In-Progress"

    def test_normalized_match(self) -> None:
        assert find_matching_label("status::in-progress", ["Status::In_Progress"]) == (
            "Status::In_Progress"
        )

    def test_value_against_other_prefix(self) -> None:
        assert find_matching_label("status::in-progress", ["workflow::in progress"]) == (
            "workflow::in progress"
        )

    def test_value_against_unprefixed_label(self) -> None:
        labels = ["bug", "In Progress"]

        assert find_matching_label("status::in-progress", labels) == "In Progress"

    def test_prefixed_candidates_beat_unprefixed(self) -> None:
        labels = ["In Progress", "state::in-progress"]

        assert find_matching_label("status::in-progress", labels) == "state::in-progress"

    def test_no_match(self) -> None:
        assert find_matching_label("status::done", ["bug", "enhancement"]) is None
        assert find_matching_label("done", ["status::done"]) is None


class TestStatusLabels:
    def test_is_status_label(self) -> None:
        status_labels = StatusLabels()

        assert is_status_label("status::ready", status_labels)
        assert is_status_label("In Review", status_labels)
        assert not is_status_label("bug", status_labels)

    def test_status_from_labels(self) -> None:
        status_labels = StatusLabels()

        assert status_from_labels(["bug", "Status::Testing"], status_labels) == CardStatus.TESTING
        assert status_from_labels(["bug"], status_labels) is None
