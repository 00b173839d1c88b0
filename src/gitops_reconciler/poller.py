# ABOUTME: Git poller resolving a revision and reading the file tree under a path
# ABOUTME: Retries network failures with backoff and reports unknown refs without retrying

"""
Git Poller.

=============================================================================
WHAT IT DOES
=============================================================================

Given (repo_url, revision, path) the poller returns the commit the revision
points at and the files under ``path`` at that commit:

    tree = await poller.fetch("https://github.com/acme/deploy.git", "main", "apps/web")
    tree.commit   -> "4f2a..."
    tree.files    -> {"deployment.yaml": "...", "values.yaml": "..."}

It shells out to the ``git`` binary:

    1. git ls-remote <repo> <revision>         resolve branch/tag/HEAD to a sha
    2. git fetch --depth 1 <repo> <sha>         into a per-repo bare cache
    3. git ls-tree -r -z --name-only <sha> -- <path>
    4. git cat-file blob <sha>:<file>           for each file

=============================================================================
FAILURE SEMANTICS
=============================================================================

- FetchError: the remote could not be reached, authentication failed, or
  git failed for another reason. Retried with exponential backoff.
- RevisionNotFound: the ref does not resolve. Retrying cannot help, so it
  is raised immediately and reported on the Sync Result.

The poller persists nothing except the Git object cache.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from gitops_reconciler.errors import FetchError, RevisionNotFound

if TYPE_CHECKING:
    from pathlib import Path

    from gitops_reconciler.config import RetrySettings

logger = structlog.get_logger(__name__)

_SHA_RE = re.compile(r"^[0-9a-f]{40}$")

# Substrings git prints when a ref or object does not exist on the remote.
_MISSING_REF_MARKERS = (
    "couldn't find remote ref",
    "not our ref",
    "unadvertised object",
    "no such remote ref",
)


class GitCommandError(Exception):
    """A git subprocess exited non-zero."""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} exited {returncode}: {stderr.strip()[:300]}")


@dataclass(frozen=True)
class SourceTree:
    """Files under ``path`` at ``commit``, keyed by path relative to ``path``."""

    commit: str
    path: str
    files: dict[str, str] = field(default_factory=dict)


class GitPoller:
    """
    Fetches Application sources from Git.

    One instance serves every Application. Fetches into the same
    repository cache are serialised with a per-repository lock; fetches of
    different repositories run concurrently.
    """

    def __init__(
        self,
        cache_dir: Path,
        retry: RetrySettings,
        timeout: float = 120.0,
    ) -> None:
        self._cache_dir = cache_dir
        self._retry = retry
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # GIT SUBPROCESS
    # -------------------------------------------------------------------------

    async def _git(self, *args: str, cwd: Path | None = None) -> bytes:
        """Run git and return stdout. Raises GitCommandError on failure."""
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitCommandError(args, -1, f"timed out after {self._timeout}s") from None
        if proc.returncode != 0:
            raise GitCommandError(args, proc.returncode or 1, stderr.decode(errors="replace"))
        return stdout

    def _repo_dir(self, repo_url: str) -> Path:
        return self._cache_dir / hashlib.sha1(repo_url.encode()).hexdigest()[:16]

    def _lock(self, repo_url: str) -> asyncio.Lock:
        return self._locks.setdefault(repo_url, asyncio.Lock())

    # -------------------------------------------------------------------------
    # RESOLVE
    # -------------------------------------------------------------------------

    async def _resolve_once(self, repo_url: str, revision: str) -> str:
        if _SHA_RE.match(revision):
            return revision
        try:
            output = await self._git("ls-remote", repo_url, revision)
        except GitCommandError as e:
            raise FetchError(f"Cannot list refs of {repo_url}", e.stderr.strip()[:300]) from e

        refs: dict[str, str] = {}
        for line in output.decode().splitlines():
            sha, _, ref = line.partition("\t")
            if sha and ref:
                refs[ref] = sha

        # Peeled tags (refs/tags/v1^{}) point at the commit rather than the tag object.
        for candidate in (
            revision,
            f"refs/heads/{revision}",
            f"refs/tags/{revision}^{{}}",
            f"refs/tags/{revision}",
        ):
            if candidate in refs:
                return refs[candidate]
        for ref, sha in refs.items():
            if ref.endswith(f"/{revision}"):
                return sha
        raise RevisionNotFound(f"Revision '{revision}' not found in {repo_url}")

    async def resolve(self, repo_url: str, revision: str) -> str:
        """
        Resolve ``revision`` to a commit sha.

        Raises:
            FetchError: After retries, when the remote stays unreachable.
            RevisionNotFound: When the ref does not exist (not retried).
        """
        async for attempt in self._retrying():
            with attempt:
                return await self._resolve_once(repo_url, revision)
        raise AssertionError("unreachable")  # pragma: no cover

    # -------------------------------------------------------------------------
    # FETCH
    # -------------------------------------------------------------------------

    async def _ensure_cache(self, repo_dir: Path) -> None:
        if (repo_dir / "HEAD").exists():
            return
        repo_dir.mkdir(parents=True, exist_ok=True)
        await self._git("init", "--bare", "--quiet", str(repo_dir))

    async def _fetch_commit(self, repo_url: str, commit: str) -> Path:
        repo_dir = self._repo_dir(repo_url)
        async with self._lock(repo_url):
            try:
                await self._ensure_cache(repo_dir)
                try:
                    await self._git("cat-file", "-e", f"{commit}^{{commit}}", cwd=repo_dir)
                    return repo_dir
                except GitCommandError:
                    pass
                await self._git(
                    "fetch", "--quiet", "--depth", "1", "--no-tags", repo_url, commit, cwd=repo_dir
                )
            except GitCommandError as e:
                stderr = e.stderr.lower()
                if any(marker in stderr for marker in _MISSING_REF_MARKERS):
                    raise RevisionNotFound(
                        f"Commit {commit} not found in {repo_url}", e.stderr.strip()[:300]
                    ) from e
                raise FetchError(f"Cannot fetch {commit} from {repo_url}", e.stderr.strip()[:300]) from e
        return repo_dir

    async def _read_tree(self, repo_dir: Path, commit: str, path: str) -> dict[str, str]:
        prefix = path.strip("/")
        if prefix in ("", "."):
            prefix = ""
        ls_args = ["ls-tree", "-r", "-z", "--name-only", commit]
        if prefix:
            ls_args += ["--", prefix]
        try:
            listing = await self._git(*ls_args, cwd=repo_dir)
            names = [n for n in listing.decode().split("\0") if n]
            files: dict[str, str] = {}
            for name in names:
                blob = await self._git("cat-file", "blob", f"{commit}:{name}", cwd=repo_dir)
                relative = name[len(prefix) + 1 :] if prefix else name
                files[relative] = blob.decode(errors="replace")
        except GitCommandError as e:
            raise FetchError(f"Cannot read tree {commit}:{path}", e.stderr.strip()[:300]) from e
        return files

    async def _fetch_once(self, repo_url: str, revision: str, path: str) -> SourceTree:
        commit = await self._resolve_once(repo_url, revision)
        repo_dir = await self._fetch_commit(repo_url, commit)
        files = await self._read_tree(repo_dir, commit, path)
        return SourceTree(commit=commit, path=path, files=files)

    async def fetch(self, repo_url: str, revision: str, path: str) -> SourceTree:
        """
        Resolve ``revision`` and return the files under ``path``.

        Args:
            repo_url: Clone URL (https, ssh or a local path)
            revision: Branch, tag, HEAD or a full commit sha
            path: Directory inside the repository ("." for the root)

        Raises:
            FetchError: When the repository stays unreachable after retries.
            RevisionNotFound: When the revision does not exist.
        """
        log = logger.bind(repo=repo_url, revision=revision, path=path)
        async for attempt in self._retrying():
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    log.info("Retrying git fetch", attempt=number)
                tree = await self._fetch_once(repo_url, revision, path)
                log.debug("Fetched source", commit=tree.commit, files=len(tree.files))
                return tree
        raise AssertionError("unreachable")  # pragma: no cover

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(FetchError),
            stop=stop_after_attempt(self._retry.attempts),
            wait=wait_exponential(
                multiplier=self._retry.backoff_base, max=self._retry.backoff_max
            ),
            reraise=True,
        )
