"""Remote tracker label clients (GitHub REST v3, GitLab REST v4).

Only the narrow label surface the reconciler needs is implemented. Every
transport or HTTP failure is raised as ReconciliationFailure.
"""

from typing import Any, Protocol
from urllib.parse import quote

import httpx

from flowpatch.config import Settings
from flowpatch.errors import ReconciliationFailure
from flowpatch.models import Project

GITHUB_API_URL = "https://api.github.com"
PAGE_SIZE = 100
MAX_PAGES = 20


class LabelClient(Protocol):
    async def __aenter__(self) -> "LabelClient": ...

    async def __aexit__(self, *args: Any) -> None: ...

    async def list_labels(self) -> list[str]: ...

    async def get_issue_labels(self, issue_number: int) -> list[str]: ...

    async def set_labels(self, issue_number: int, labels: list[str]) -> None: ...

    async def create_label(self, name: str, color: str) -> None: ...


class _RestLabelClient:
    """Shared httpx plumbing for the REST clients."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._headers = headers
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=30.0,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ReconciliationFailure(
                f"{method} {path} failed: {e.response.status_code} {e.response.text[:200]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ReconciliationFailure(f"{method} {path} failed: {e}") from e
        if not response.content:
            return None
        return response.json()

    async def _paginate(self, path: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = await self._request(
                "GET", path, params={"per_page": PAGE_SIZE, "page": page}
            )
            if not batch:
                break
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        return items


class GitHubLabelClient(_RestLabelClient):
    """Labels on a GitHub repository ``owner/name``."""

    def __init__(
        self,
        token: str,
        repo: str,
        base_url: str = GITHUB_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            base_url,
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
            },
            transport,
        )
        self.repo = repo

    async def list_labels(self) -> list[str]:
        return [label["name"] for label in await self._paginate(f"/repos/{self.repo}/labels")]

    async def get_issue_labels(self, issue_number: int) -> list[str]:
        issue = await self._request("GET", f"/repos/{self.repo}/issues/{issue_number}")
        return [label["name"] for label in issue.get("labels", [])]

    async def set_labels(self, issue_number: int, labels: list[str]) -> None:
        await self._request(
            "PUT", f"/repos/{self.repo}/issues/{issue_number}/labels", json={"labels": labels}
        )

    async def create_label(self, name: str, color: str) -> None:
        await self._request(
            "POST",
            f"/repos/{self.repo}/labels",
            json={"name": name, "color": color.lstrip("#")},
        )


class GitLabLabelClient(_RestLabelClient):
    """Labels on a GitLab project identified by its path (``group/name``)."""

    def __init__(
        self,
        token: str,
        project_path: str,
        base_url: str = "https://gitlab.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(f"{base_url.rstrip('/')}/api/v4", {"PRIVATE-TOKEN": token}, transport)
        self._project = quote(project_path, safe="")

    async def list_labels(self) -> list[str]:
        return [label["name"] for label in await self._paginate(f"/projects/{self._project}/labels")]

    async def get_issue_labels(self, issue_number: int) -> list[str]:
        issue = await self._request("GET", f"/projects/{self._project}/issues/{issue_number}")
        return list(issue.get("labels", []))

    async def set_labels(self, issue_number: int, labels: list[str]) -> None:
        await self._request(
            "PUT",
            f"/projects/{self._project}/issues/{issue_number}",
            json={"labels": ",".join(labels)},
        )

    async def create_label(self, name: str, color: str) -> None:
        await self._request(
            "POST",
            f"/projects/{self._project}/labels",
            json={"name": name, "color": f"#{color.lstrip('#')}"},
        )


def create_label_client(project: Project, settings: Settings) -> LabelClient | None:
    """Client for the project's tracker, or None for local projects / missing credentials."""
    if not project.remote_repo:
        return None
    if project.provider == "github" and settings.github_token:
        return GitHubLabelClient(settings.github_token, project.remote_repo)
    if project.provider == "gitlab" and settings.gitlab_token:
        return GitLabLabelClient(settings.gitlab_token, project.remote_repo, settings.gitlab_url)
    return None
