"""Tests for status label reconciliation against a fake tracker."""

import json
from uuid import uuid4

import httpx
import pytest

from flowpatch.models import Job, JobType, Project
from flowpatch.policy import CardStatus
from flowpatch.services.reconciler import Reconciler, resolve_status
from flowpatch.services.tracker_client import (
    GitHubLabelClient,
    GitLabLabelClient,
    create_label_client,
)


class FakeGitHub:
    """Just enough of the GitHub labels API for one repository and issue."""

    def __init__(self, repo_labels: list[str], issue_labels: list[str], fail_on: str | None = None):
        self.repo_labels = list(repo_labels)
        self.issue_labels = list(issue_labels)
        self.fail_on = fail_on
        self.requests: list[tuple[str, str, dict | None]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if request.method == self.fail_on:
            return httpx.Response(500, json={"message": "Server Error"})

        path = request.url.path
        if path == "/repos/acme/app/labels" and request.method == "GET":
            page = int(request.url.params.get("page", "1"))
            labels = self.repo_labels if page == 1 else []
            return httpx.Response(200, json=[{"name": name} for name in labels])
        if path == "/repos/acme/app/labels" and request.method == "POST":
            self.repo_labels.append(body["name"])
            return httpx.Response(201, json=body)
        if path == "/repos/acme/app/issues/7" and request.method == "GET":
            return httpx.Response(
                200, json={"number": 7, "labels": [{"name": n} for n in self.issue_labels]}
            )
        if path == "/repos/acme/app/issues/7/labels" and request.method == "PUT":
            self.issue_labels = body["labels"]
            return httpx.Response(200, json=[{"name": n} for n in self.issue_labels])
        return httpx.Response(404, json={"message": "Not Found"})

    def reconciler(self) -> Reconciler:
        transport = httpx.MockTransport(self.handler)
        return Reconciler(lambda project: GitHubLabelClient("token", "acme/app", transport=transport))

    @property
    def methods(self) -> list[str]:
        return [method for method, _, _ in self.requests]


def _project(policy: dict | None = None) -> Project:
    return Project(
        id=uuid4(),
        name="app",
        local_path="/tmp/app",
        provider="github",
        remote_repo="acme/app",
        policy=policy or {},
    )


def _job(job_type: JobType = JobType.WORKER_RUN, **payload) -> Job:
    payload.setdefault("issue_number", 7)
    return Job(
        id=uuid4(),
        type=job_type,
        project_id=uuid4(),
        payload=payload,
        dedupe_key=f"{job_type.value}:test",
    )


class TestResolveStatus:
    """Tests for resolve_status()."""

    def test_card_status_artifact_wins(self) -> None:
        job = _job(target_status="in_review")

        status = resolve_status(job, {"artifacts": {"card_status": "testing"}})

        assert status == CardStatus.TESTING

    def test_payload_status(self) -> None:
        assert resolve_status(_job(JobType.SYNC_PUSH, status="done"), None) == CardStatus.DONE

    def test_worker_run_defaults_to_in_review(self) -> None:
        assert resolve_status(_job(), {}) == CardStatus.IN_REVIEW

    def test_unknown_status_is_skipped(self) -> None:
        assert resolve_status(_job(JobType.SYNC_PUSH, status="shipped"), None) is None


class TestReconcile:
    """Tests for Reconciler.reconcile()."""

    @pytest.mark.asyncio
    async def test_replaces_status_label_and_keeps_others(self) -> None:
        tracker = FakeGitHub(
            ["bug", "status::in-progress", "status::in-review"], ["bug", "status::in-progress"]
        )

        report = await tracker.reconciler().reconcile(_job(), _project())

        assert report.applied
        assert report.label == "status::in-review"
        assert report.previous_status == CardStatus.IN_PROGRESS
        assert tracker.issue_labels == ["bug", "status::in-review"]
        assert "POST" not in tracker.methods

    @pytest.mark.asyncio
    async def test_matches_human_spelled_labels(self) -> None:
        tracker = FakeGitHub(["bug", "In Progress", "Done"], ["bug", "Done"])

        report = await tracker.reconciler().reconcile(
            _job(JobType.SYNC_PUSH, status="in_progress"), _project()
        )

        assert report.label == "In Progress"
        assert tracker.issue_labels == ["bug", "In Progress"]

    @pytest.mark.asyncio
    async def test_creates_missing_label(self) -> None:
        tracker = FakeGitHub(["bug"], ["bug"])

        report = await tracker.reconciler().reconcile(
            _job(), _project({"sync": {"label_color": "#00ff00"}})
        )

        assert report.applied
        assert report.created_label
        post = next(r for r in tracker.requests if r[0] == "POST")
        assert post[2] == {"name": "status::in-review", "color": "00ff00"}
        assert tracker.issue_labels == ["bug", "status::in-review"]

    @pytest.mark.asyncio
    async def test_missing_label_without_creation(self) -> None:
        tracker = FakeGitHub(["bug"], ["bug"])

        report = await tracker.reconciler().reconcile(
            _job(), _project({"sync": {"create_missing_labels": False}})
        )

        assert not report.applied
        assert "creation is disabled" in report.diagnostics[0]
        assert tracker.methods == ["GET"]

    @pytest.mark.asyncio
    async def test_tracker_failure_is_reported_not_raised(self) -> None:
        tracker = FakeGitHub(["status::in-review"], ["bug"], fail_on="PUT")

        report = await tracker.reconciler().reconcile(_job(), _project())

        assert not report.applied
        assert "500" in report.diagnostics[0]

    @pytest.mark.asyncio
    async def test_job_types_without_labels_are_skipped(self) -> None:
        tracker = FakeGitHub([], [])

        report = await tracker.reconciler().reconcile(_job(JobType.SYNC_POLL), _project())

        assert not report.applied
        assert report.diagnostics == []
        assert tracker.requests == []

    @pytest.mark.asyncio
    async def test_missing_issue_number(self) -> None:
        tracker = FakeGitHub([], [])
        job = _job()
        job.payload = {"title": "no issue"}

        report = await tracker.reconciler().reconcile(job, _project())

        assert report.diagnostics == ["Job has no remote issue number"]

    @pytest.mark.asyncio
    async def test_no_client_for_project(self) -> None:
        report = await Reconciler(lambda project: None).reconcile(_job(), _project())

        assert not report.applied
        assert "No label client" in report.diagnostics[0]


class TestLabelClients:
    """Tests for the tracker clients and their factory."""

    def test_factory(self, settings) -> None:
        with_token = settings.model_copy(update={"github_token": "t", "gitlab_token": "g"})
        local = _project()
        local.provider, local.remote_repo = "local", None
        gitlab = _project()
        gitlab.provider = "gitlab"

        assert create_label_client(local, with_token) is None
        assert create_label_client(_project(), settings) is None
        assert isinstance(create_label_client(_project(), with_token), GitHubLabelClient)
        assert isinstance(create_label_client(gitlab, with_token), GitLabLabelClient)

    @pytest.mark.asyncio
    async def test_gitlab_set_labels(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"iid": 7, "labels": ["bug"]})

        client = GitLabLabelClient("token", "acme/app", transport=httpx.MockTransport(handler))
        async with client:
            assert await client.get_issue_labels(7) == ["bug"]
            await client.set_labels(7, ["bug", "status::done"])

        put = seen[-1]
        assert put.method == "PUT"
        assert b"acme%2Fapp" in put.url.raw_path
        assert put.headers["PRIVATE-TOKEN"] == "token"
        assert json.loads(put.content) == {"labels": "bug,status::done"}

    @pytest.mark.asyncio
    async def test_github_pagination(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            count = 100 if page == 1 else 3
            return httpx.Response(200, json=[{"name": f"l{page}-{i}"} for i in range(count)])

        client = GitHubLabelClient("token", "acme/app", transport=httpx.MockTransport(handler))
        async with client:
            labels = await client.list_labels()

        assert len(labels) == 103
