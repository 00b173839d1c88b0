# ABOUTME: Unit tests for the Git poller
# ABOUTME: Tests revision resolution, tree reading and retry behaviour with a scripted git

from __future__ import annotations

import pytest

from gitops_reconciler.errors import FetchError, RevisionNotFound
from gitops_reconciler.poller import GitCommandError, GitPoller

REPO = "https://git.example.com/acme/deploy.git"
MAIN_SHA = "1" * 40
TAG_OBJECT_SHA = "2" * 40
TAG_COMMIT_SHA = "3" * 40

LS_REMOTE = (
    f"{MAIN_SHA}\tHEAD\n"
    f"{MAIN_SHA}\trefs/heads/main\n"
    f"{TAG_OBJECT_SHA}\trefs/tags/v1.0\n"
    f"{TAG_COMMIT_SHA}\trefs/tags/v1.0^{{}}\n"
).encode()

FILES = {
    "apps/web/values.yaml": b"replicas: 2\n",
    "apps/web/templates/deployment.yaml": b"kind: Deployment\n",
}


class ScriptedGit:
    """Answers git invocations the way a small remote would."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.ls_remote_failures: list[GitCommandError] = []
        self.fetch_error: GitCommandError | None = None
        self.have_commit = False

    async def __call__(self, *args: str, cwd=None) -> bytes:
        self.calls.append(args)
        command = args[0]
        if command == "ls-remote":
            if self.ls_remote_failures:
                raise self.ls_remote_failures.pop(0)
            revision = args[2]
            return b"".join(
                line + b"\n"
                for line in LS_REMOTE.splitlines()
                if line.decode().split("\t")[1].endswith(revision)
                or line.decode().split("\t")[1].endswith(revision + "^{}")
            )
        if command == "init":
            return b""
        if command == "cat-file" and args[1] == "-e":
            if not self.have_commit:
                raise GitCommandError(args, 128, "fatal: Not a valid object name")
            return b""
        if command == "fetch":
            if self.fetch_error is not None:
                raise self.fetch_error
            self.have_commit = True
            return b""
        if command == "ls-tree":
            prefix = args[-1] if "--" in args else ""
            names = [n for n in FILES if n.startswith(prefix)]
            return "\0".join(names).encode() + b"\0"
        if command == "cat-file" and args[1] == "blob":
            name = args[2].split(":", 1)[1]
            return FILES[name]
        raise AssertionError(f"unexpected git call: {args}")


@pytest.fixture
def git() -> ScriptedGit:
    return ScriptedGit()


@pytest.fixture
def poller(tmp_path, retry_settings, git) -> GitPoller:
    poller = GitPoller(tmp_path / "cache", retry_settings, timeout=5)
    poller._git = git
    return poller


@pytest.mark.unit
class TestResolve:
    """Tests for revision resolution."""

    async def test_branch(self, poller):
        assert await poller.resolve(REPO, "main") == MAIN_SHA

    async def test_head(self, poller):
        assert await poller.resolve(REPO, "HEAD") == MAIN_SHA

    async def test_annotated_tag_resolves_to_commit(self, poller):
        assert await poller.resolve(REPO, "v1.0") == TAG_COMMIT_SHA

    async def test_full_sha_skips_remote(self, poller, git):
        sha = "a" * 40
        assert await poller.resolve(REPO, sha) == sha
        assert git.calls == []

    async def test_unknown_ref(self, poller, git):
        """Test that an unknown ref fails at once without retries."""
        with pytest.raises(RevisionNotFound, match="does-not-exist"):
            await poller.resolve(REPO, "does-not-exist")
        assert len(git.calls) == 1

    async def test_transient_failure_is_retried(self, poller, git):
        git.ls_remote_failures.append(GitCommandError(("ls-remote",), 128, "Could not resolve host"))

        assert await poller.resolve(REPO, "main") == MAIN_SHA
        assert [c[0] for c in git.calls] == ["ls-remote", "ls-remote"]

    async def test_persistent_failure_raises_fetch_error(self, poller, git):
        git.ls_remote_failures.extend(
            GitCommandError(("ls-remote",), 128, "Could not resolve host") for _ in range(5)
        )

        with pytest.raises(FetchError, match="Cannot list refs"):
            await poller.resolve(REPO, "main")
        assert len(git.calls) == 3


@pytest.mark.unit
class TestFetch:
    """Tests for fetch()."""

    async def test_fetch_reads_files_under_path(self, poller):
        tree = await poller.fetch(REPO, "main", "apps/web")

        assert tree.commit == MAIN_SHA
        assert tree.path == "apps/web"
        assert tree.files == {
            "values.yaml": "replicas: 2\n",
            "templates/deployment.yaml": "kind: Deployment\n",
        }

    async def test_cached_commit_is_not_fetched_again(self, poller, git):
        await poller.fetch(REPO, "main", "apps/web")
        await poller.fetch(REPO, "main", "apps/web")

        assert [c[0] for c in git.calls].count("fetch") == 1

    async def test_missing_commit_on_remote(self, poller, git):
        git.fetch_error = GitCommandError(("fetch",), 128, "fatal: couldn't find remote ref 1111")

        with pytest.raises(RevisionNotFound):
            await poller.fetch(REPO, "main", "apps/web")
        assert [c[0] for c in git.calls].count("fetch") == 1

    async def test_fetch_failure_after_retries(self, poller, git):
        git.fetch_error = GitCommandError(("fetch",), 128, "fatal: Authentication failed")

        with pytest.raises(FetchError, match="Cannot fetch"):
            await poller.fetch(REPO, "main", "apps/web")
        assert [c[0] for c in git.calls].count("fetch") == 3

