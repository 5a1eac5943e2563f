"""Tests for project policy parsing and validation."""

from flowpatch.models import JobType
from flowpatch.policy import (
    CardStatus,
    QueueStrategy,
    WorkerPoolConfig,
    merge_pool_configs,
    parse_policy,
    project_worker_cap,
    validate_policy,
)


class TestParsePolicy:
    """Tests for parse_policy()."""

    def test_empty_policy_gets_defaults(self) -> None:
        policy = parse_policy({})

        assert policy.worker.max_minutes == 25
        assert policy.worker.worktree.max_concurrent == 1
        assert policy.retry.cooldown_minutes == 30
        assert policy.retry.max_attempts(JobType.WORKER_RUN) == 3
        assert policy.sync.status_labels.label_for(CardStatus.IN_REVIEW) == "status::in-review"

    def test_partial_policy_merges_defaults(self) -> None:
        policy = parse_policy({"worker": {"worktree": {"max_concurrent": 3}}})

        assert policy.worker.worktree.max_concurrent == 3
        assert policy.worker.worktree.branch_prefix == "flowpatch/"

    def test_invalid_policy_falls_back(self) -> None:
        policy = parse_policy({"worker": {"worktree": {"max_concurrent": 0}}})

        assert policy.worker.worktree.max_concurrent == 1

    def test_pool_workers_clamped(self) -> None:
        assert WorkerPoolConfig(max_workers=50).max_workers == 8
        assert WorkerPoolConfig(max_workers=0).max_workers == 1
        assert WorkerPoolConfig(queue_strategy="priority").queue_strategy == QueueStrategy.PRIORITY


class TestMergePoolConfigs:
    """Tests for merge_pool_configs() and project_worker_cap()."""

    def test_no_project_pools_keeps_base(self) -> None:
        base = WorkerPoolConfig(max_workers=2)

        assert merge_pool_configs(base, [parse_policy({})]) == base
        assert project_worker_cap(parse_policy({})) is None

    def test_largest_explicit_max_workers_wins(self) -> None:
        policies = [
            parse_policy({"worker": {"pool": {"max_workers": 3}}}),
            parse_policy({"worker": {"pool": {"max_workers": 2, "priority_field": "size"}}}),
        ]

        merged = merge_pool_configs(WorkerPoolConfig(), policies)

        assert merged.max_workers == 3
        assert merged.queue_strategy == QueueStrategy.FIFO
        assert merged.priority_field == "size"
        assert [project_worker_cap(p) for p in policies] == [3, 2]

    def test_priority_strategy_is_sticky(self) -> None:
        policies = [
            parse_policy({"worker": {"pool": {"queue_strategy": "priority"}}}),
            parse_policy({"worker": {"pool": {"queue_strategy": "fifo"}}}),
        ]

        merged = merge_pool_configs(WorkerPoolConfig(max_workers=4), policies)

        assert merged.queue_strategy == QueueStrategy.PRIORITY
        assert merged.max_workers == 4


class TestValidatePolicy:
    """Tests for validate_policy()."""

    def test_valid(self) -> None:
        result = validate_policy({"version": 1, "worker": {"max_minutes": 30}})

        assert result.valid
        assert result.errors == []

    def test_non_positive_max_minutes(self) -> None:
        result = validate_policy({"worker": {"max_minutes": 0}})

        assert not result.valid
        assert "worker.max_minutes must be a positive number" in result.errors

    def test_long_max_minutes_warns(self) -> None:
        result = validate_policy({"worker": {"max_minutes": 180}})

        assert result.valid
        assert result.warnings

    def test_custom_root_requires_path(self) -> None:
        result = validate_policy({"worker": {"worktree": {"root": "custom"}}})

        assert not result.valid

    def test_duplicate_status_labels_warn(self) -> None:
        result = validate_policy(
            {"sync": {"status_labels": {"ready": "todo", "draft": "todo"}}}
        )

        assert result.valid
        assert any("Duplicate" in w for w in result.warnings)

    def test_card_status_parse(self) -> None:
        assert CardStatus.parse("In-Progress") == CardStatus.IN_PROGRESS
        assert CardStatus.parse("in review") == CardStatus.IN_REVIEW
