"""Tests for job prioritization."""

from flowpatch.services.prioritization import (
    NO_PRIORITY,
    PriorityConfig,
    calculate_job_priority,
    priority_from_labels,
)


class TestPriorityFromLabels:
    """Tests for label-derived priority."""

    def test_no_labels(self) -> None:
        assert priority_from_labels(None) == NO_PRIORITY
        assert priority_from_labels([]) == NO_PRIORITY

    def test_bucket_keywords(self) -> None:
        assert priority_from_labels(["Critical"]) == 0
        assert priority_from_labels(["priority: high"]) == 1
        assert priority_from_labels(["P2-medium"]) == 2
        assert priority_from_labels(["low"]) == 3

    def test_first_bucket_wins(self) -> None:
        assert priority_from_labels(["low", "urgent"]) == 0

    def test_unrelated_labels(self) -> None:
        assert priority_from_labels(["bug", "frontend"]) == NO_PRIORITY

    def test_custom_config(self) -> None:
        config = PriorityConfig(buckets=[(10, ("blocker",))], default=50)

        assert priority_from_labels(["Blocker"], config) == 10
        assert priority_from_labels(["p0"], config) == 50


class TestCalculateJobPriority:
    """Tests for calculate_job_priority()."""

    def test_labels_by_default(self) -> None:
        assert calculate_job_priority({"labels": ["P1"]}) == 1

    def test_integer_field(self) -> None:
        assert calculate_job_priority({"rank": 4, "labels": ["P0"]}, "rank") == 4

    def test_nested_field(self) -> None:
        assert calculate_job_priority({"meta": {"rank": "12"}}, "meta.rank") == 12

    def test_string_field_goes_through_label_matching(self) -> None:
        assert calculate_job_priority({"severity": "High"}, "severity") == 1

    def test_missing_field_falls_back_to_labels(self) -> None:
        assert calculate_job_priority({"labels": ["low"]}, "rank") == 3

    def test_boolean_field_is_ignored(self) -> None:
        assert calculate_job_priority({"rank": True}, "rank") == NO_PRIORITY
