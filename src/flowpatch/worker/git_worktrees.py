"""Git worktree operations for the worktree pool.

All git commands run through asyncio subprocesses with ``git -C <path>``,
never through a shell.
"""

import asyncio
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from flowpatch.errors import WorktreeCreationFailure, WorktreeError
from flowpatch.logging import get_logger
from flowpatch.policy import WorktreeConfig, WorktreeRoot

logger = get_logger(__name__)

WORKTREE_DIR_NAME = ".flowpatch-worktrees"
MAX_BRANCH_LENGTH = 100
MIN_SLUG_LENGTH = 10


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim, cap at 50 chars."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50]


def generate_branch_name(
    pattern: str,
    prefix: str,
    branch_id: str | int | None,
    title: str,
) -> str:
    """Render a branch name from the configured pattern.

    ``pattern`` may use ``{prefix}``, ``{id}`` and ``{slug}``. The slug is
    shortened so the name stays within 100 characters.
    """
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    id_part = str(branch_id) if branch_id else "local"
    slug = slugify(title) or "work"

    name = pattern.format(prefix=prefix, id=id_part, slug=slug)
    if len(name) > MAX_BRANCH_LENGTH:
        overflow = len(name) - MAX_BRANCH_LENGTH
        slug = slug[: max(len(slug) - overflow, MIN_SLUG_LENGTH)]
        name = pattern.format(prefix=prefix, id=id_part, slug=slug)
    return name


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""

    path: str
    head_sha: str
    branch: str | None = None
    bare: bool = False
    detached: bool = False
    locked: bool = False
    prunable: bool = False


@dataclass
class EnsureResult:
    path: Path
    branch_name: str
    base_ref: str
    created: bool


def parse_porcelain(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output (blank-line separated)."""
    worktrees: list[WorktreeInfo] = []
    for entry in output.split("\n\n"):
        if not entry.strip():
            continue
        fields: dict[str, str] = {}
        flags: set[str] = set()
        for line in entry.splitlines():
            key, _, value = line.partition(" ")
            if value:
                fields[key] = value
            else:
                flags.add(key)
            if key in ("locked", "prunable"):
                flags.add(key)
        if "worktree" not in fields or "HEAD" not in fields:
            continue
        branch = fields.get("branch")
        if branch is not None:
            branch = branch.removeprefix("refs/heads/")
        worktrees.append(
            WorktreeInfo(
                path=fields["worktree"],
                head_sha=fields["HEAD"],
                branch=branch,
                bare="bare" in flags,
                detached="detached" in flags,
                locked="locked" in flags,
                prunable="prunable" in flags,
            )
        )
    return worktrees


class GitWorktreeManager:
    """Creates, resets and removes worktrees of one repository."""

    def __init__(self, repo_path: Path | str):
        self.repo_path = Path(repo_path).resolve()

    async def _run_git(
        self,
        *args: str,
        cwd: Path | None = None,
        check: bool = True,
    ) -> tuple[int, str, str]:
        """Run a git command; raise WorktreeError on failure when ``check``."""
        target = cwd or self.repo_path
        proc = await asyncio.create_subprocess_exec(
            "git",
            "-C",
            str(target),
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await proc.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        exit_code = proc.returncode or 0

        if check and exit_code != 0:
            logger.warning(
                "git.command_failed",
                args=list(args),
                cwd=str(target),
                exit_code=exit_code,
                stderr=stderr[:500],
            )
            raise WorktreeError(f"Git command failed: git {' '.join(args)}\n{stderr}")
        return exit_code, stdout, stderr

    async def _ref_exists(self, ref: str) -> bool:
        code, _, _ = await self._run_git("rev-parse", "--verify", "--quiet", ref, check=False)
        return code == 0

    async def list_worktrees(self) -> list[WorktreeInfo]:
        _, stdout, _ = await self._run_git("worktree", "list", "--porcelain")
        return parse_porcelain(stdout + "\n")

    async def default_branch(self) -> str:
        """origin/HEAD if known, else the first of main/master/develop that exists."""
        code, stdout, _ = await self._run_git(
            "symbolic-ref", "refs/remotes/origin/HEAD", check=False
        )
        if code == 0 and stdout:
            return stdout.removeprefix("refs/remotes/origin/")
        for candidate in ("main", "master", "develop"):
            if await self._ref_exists(f"refs/heads/{candidate}"):
                return candidate
        return "main"

    def worktree_root(self, config: WorktreeConfig) -> Path:
        if config.root == WorktreeRoot.SIBLING:
            return self.repo_path.parent / f"{self.repo_path.name}-worktrees"
        if config.root == WorktreeRoot.CUSTOM:
            if not config.custom_path:
                raise WorktreeError("Custom worktree path not configured")
            return Path(config.custom_path).resolve()
        return self.repo_path / WORKTREE_DIR_NAME

    def compute_path(self, branch_name: str, config: WorktreeConfig) -> Path:
        """Directory for a branch: the branch name minus its prefix, sanitized."""
        folder = branch_name.removeprefix(config.branch_prefix)
        folder = re.sub(r"[^a-zA-Z0-9-]", "-", folder)
        return self.worktree_root(config) / folder

    def is_valid_worktree_path(self, path: Path | str, config: WorktreeConfig) -> bool:
        """Only paths strictly inside the worktree root, never the repo or its parents."""
        resolved = Path(path).resolve()
        if resolved == self.repo_path or resolved in self.repo_path.parents:
            return False
        root = self.worktree_root(config).resolve()
        return resolved != root and root in resolved.parents

    async def branch_exists(self, branch_name: str) -> tuple[bool, bool]:
        """(exists locally, exists on origin)."""
        local = await self._ref_exists(f"refs/heads/{branch_name}")
        remote = await self._ref_exists(f"refs/remotes/origin/{branch_name}")
        return local, remote

    async def resolve_base_ref(self, base_branch: str) -> str:
        """Prefer ``origin/<base>``, fall back to the local branch."""
        for ref in (f"origin/{base_branch}", base_branch):
            if await self._ref_exists(ref):
                return ref
        raise WorktreeCreationFailure(f"Base branch {base_branch} not found locally or on remote")

    async def ensure_worktree(
        self,
        path: Path,
        branch_name: str,
        base_branch: str,
        config: WorktreeConfig,
    ) -> EnsureResult:
        """
        Make sure a worktree for ``branch_name`` exists at ``path``.

        Reuses a matching existing worktree, tracks the remote branch if only
        origin has it, and otherwise branches from the base.

        Raises:
            WorktreeCreationFailure: invalid path, missing base, or git failure
        """
        if not self.is_valid_worktree_path(path, config):
            raise WorktreeCreationFailure(f"Invalid worktree path: {path}")

        base_ref = await self.resolve_base_ref(base_branch)
        resolved = str(path.resolve())
        for info in await self.list_worktrees():
            if str(Path(info.path).resolve()) == resolved:
                if info.branch == branch_name:
                    return EnsureResult(path, branch_name, base_ref, created=False)
                raise WorktreeCreationFailure(
                    f"Worktree already exists at {path} for branch {info.branch}"
                )

        path.parent.mkdir(parents=True, exist_ok=True)
        local, remote = await self.branch_exists(branch_name)
        try:
            if local:
                await self._run_git("worktree", "add", str(path), branch_name)
            elif remote:
                await self._run_git(
                    "worktree", "add", "--track", "-b", branch_name, str(path),
                    f"origin/{branch_name}",
                )
            else:
                await self._run_git("worktree", "add", "-b", branch_name, str(path), base_ref)
        except WorktreeError as e:
            raise WorktreeCreationFailure(str(e)) from e

        logger.info("git.worktree_added", path=str(path), branch=branch_name, base=base_ref)
        return EnsureResult(path, branch_name, base_ref, created=True)

    async def is_dirty(self, path: Path) -> bool:
        _, stdout, _ = await self._run_git("status", "--porcelain", cwd=path)
        return bool(stdout)

    async def discard_changes(self, path: Path) -> None:
        """Drop uncommitted changes and untracked files, keeping commits."""
        await self._run_git("reset", "--hard", "HEAD", cwd=path)
        await self._run_git("clean", "-fd", cwd=path)

    async def reset_to_base(self, path: Path, base_ref: str) -> None:
        """Return the worktree's branch to ``base_ref`` with a clean tree."""
        await self._run_git("reset", "--hard", base_ref, cwd=path)
        await self._run_git("clean", "-fd", cwd=path)

    async def head_sha(self, path: Path) -> str:
        _, stdout, _ = await self._run_git("rev-parse", "HEAD", cwd=path)
        return stdout

    async def remove_worktree(self, path: Path, config: WorktreeConfig) -> None:
        """
        Remove a worktree directory.

        Tries ``git worktree remove --force`` first; if git refuses (for example
        the directory is no longer registered) removes the directory and prunes.
        """
        if not self.is_valid_worktree_path(path, config):
            raise WorktreeError(f"Refusing to remove path outside worktree root: {path}")

        code, _, stderr = await self._run_git(
            "worktree", "remove", "--force", str(path), check=False
        )
        if code != 0:
            logger.info("git.worktree_remove_fallback", path=str(path), stderr=stderr[:200])
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path)
            await self.prune()
        logger.info("git.worktree_removed", path=str(path))

    async def prune(self) -> None:
        await self._run_git("worktree", "prune")

    async def delete_branch(self, branch_name: str, force: bool = True) -> bool:
        code, _, _ = await self._run_git(
            "branch", "-D" if force else "-d", branch_name, check=False
        )
        return code == 0
