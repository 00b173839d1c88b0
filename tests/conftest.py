# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides an in-memory cluster, a scripted Git poller and shared settings

from __future__ import annotations

import asyncio
import base64
import copy
import itertools
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from gitops_reconciler.config import ClusterConnection, ControllerSettings, RetrySettings
from gitops_reconciler.errors import AlreadyExists, ApplyConflict, ResourceNotFound
from gitops_reconciler.models import (
    TRACKING_LABEL,
    Application,
    ResourceDescriptor,
    ResourceKey,
    SyncPolicy,
)
from gitops_reconciler.poller import SourceTree
from gitops_reconciler.utils.cluster import ClusterClient
from gitops_reconciler.utils.logging import EventLogger


def make_resource(
    kind: str,
    name: str,
    namespace: str = "",
    api_version: str = "v1",
    labels: dict[str, str] | None = None,
    **body: Any,
) -> ResourceDescriptor:
    """Build a descriptor; extra keyword arguments become top-level manifest fields."""
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    manifest = {"apiVersion": api_version, "kind": kind, "metadata": metadata, **body}
    return ResourceDescriptor.from_manifest(manifest)


# =============================================================================
# FAKE CLUSTER
# =============================================================================


class FakeCluster:
    """
    In-memory ClusterApi.

    Stored objects gain server-managed metadata (resourceVersion, uid) and
    a status block, like a real API server. Secret ``stringData`` is
    folded into base64 ``data``. ``replace`` enforces optimistic
    concurrency on resourceVersion.

    Failure injection: ``fail(method, key, *errors)`` queues exceptions
    raised by the next calls of ``method`` for ``key``. ``gate`` blocks
    every write until it is set.
    """

    def __init__(self) -> None:
        self.objects: dict[ResourceKey, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.listed_kinds: set[tuple[str, str]] = set()
        self.gate: asyncio.Event | None = None
        self.write_started = asyncio.Event()
        self._failures: dict[tuple[str, ResourceKey], list[Exception]] = {}
        self._versions = itertools.count(1)

    # -------------------------------------------------------------------------
    # TEST HELPERS
    # -------------------------------------------------------------------------

    def seed(self, resource: ResourceDescriptor) -> None:
        self._store(resource.to_manifest(), resource.key)

    def fail(self, method: str, key: ResourceKey, *errors: Exception) -> None:
        self._failures.setdefault((method, key), []).extend(errors)

    def writes(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("create", "replace", "delete")]

    def payload(self, key: ResourceKey) -> dict[str, Any]:
        return self.objects[key]

    def mutate(self, key: ResourceKey, **changes: Any) -> None:
        """Simulate an out-of-band edit to a live object."""
        obj = self.objects[key]
        obj.update(copy.deepcopy(changes))
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def _store(self, manifest: dict[str, Any], key: ResourceKey) -> dict[str, Any]:
        metadata = manifest.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("uid", f"uid-{key.kind.lower()}-{key.name}")
        if manifest.get("kind") == "Secret" and "stringData" in manifest:
            data = manifest.get("data") or {}
            for name, value in manifest.pop("stringData").items():
                data[name] = base64.b64encode(str(value).encode()).decode()
            manifest["data"] = data
        manifest.setdefault("status", {"observedGeneration": 1})
        self.objects[key] = manifest
        return manifest

    async def _enter(self, method: str, resource: ResourceDescriptor) -> None:
        self.calls.append((method, str(resource.key)))
        if method != "get":
            self.write_started.set()
            if self.gate is not None:
                await self.gate.wait()
        queued = self._failures.get((method, resource.key))
        if queued:
            raise queued.pop(0)

    # -------------------------------------------------------------------------
    # ClusterApi
    # -------------------------------------------------------------------------

    async def get(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        await self._enter("get", resource)
        if resource.key not in self.objects:
            raise ResourceNotFound(404, f"{resource.key} not found")
        return ResourceDescriptor.from_manifest(copy.deepcopy(self.objects[resource.key]))

    async def create(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        await self._enter("create", resource)
        if resource.key in self.objects:
            raise AlreadyExists(409, f"{resource.key} already exists")
        stored = self._store(resource.to_manifest(), resource.key)
        return ResourceDescriptor.from_manifest(copy.deepcopy(stored))

    async def replace(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        await self._enter("replace", resource)
        current = self.objects.get(resource.key)
        if current is None:
            raise ResourceNotFound(404, f"{resource.key} not found")
        if resource.resource_version != current["metadata"]["resourceVersion"]:
            raise ApplyConflict(409, "the object has been modified")
        manifest = resource.to_manifest()
        manifest["metadata"]["uid"] = current["metadata"]["uid"]
        stored = self._store(manifest, resource.key)
        return ResourceDescriptor.from_manifest(copy.deepcopy(stored))

    async def delete(self, resource: ResourceDescriptor) -> None:
        await self._enter("delete", resource)
        if resource.key not in self.objects:
            raise ResourceNotFound(404, f"{resource.key} not found")
        del self.objects[resource.key]

    async def list_managed(
        self, application: str, kinds: Any = None
    ) -> list[ResourceDescriptor]:
        self.calls.append(("list", application))
        self.listed_kinds = set(kinds) if kinds is not None else set()
        wanted = {kind for _, kind in kinds} if kinds is not None else None
        result = []
        for key, obj in self.objects.items():
            labels = obj["metadata"].get("labels") or {}
            if labels.get(TRACKING_LABEL) != application:
                continue
            if wanted is not None and key.kind not in wanted:
                continue
            result.append(ResourceDescriptor.from_manifest(copy.deepcopy(obj)))
        return result


# =============================================================================
# FAKE POLLER
# =============================================================================


class FakePoller:
    """
    Scripted Git poller.

    ``publish(commit, files)`` moves the branch tip. ``fail_with`` makes the
    next fetches raise.
    """

    def __init__(self, commit: str = "a" * 40, files: dict[str, str] | None = None) -> None:
        self.commit = commit
        self.files = dict(files or {})
        self.fetches: list[tuple[str, str, str]] = []
        self.fail_with: Exception | None = None

    def publish(self, commit: str, files: dict[str, str]) -> None:
        self.commit = commit
        self.files = dict(files)

    async def fetch(self, repo_url: str, revision: str, path: str) -> SourceTree:
        self.fetches.append((repo_url, revision, path))
        if self.fail_with is not None:
            raise self.fail_with
        return SourceTree(commit=self.commit, path=path, files=dict(self.files))


# =============================================================================
# FIXTURES
# =============================================================================


CONFIGMAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: web-config
data:
  greeting: {{ values.greeting }}
"""

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: {{ values.replicas }}
  template:
    spec:
      containers:
        - name: web
          image: nginx:{{ values.tag }}
"""

NAMESPACE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: web
"""

VALUES = """\
greeting: hello
replicas: 2
tag: "1.25"
"""


@pytest.fixture
def chart_files() -> dict[str, str]:
    """A small chart: Namespace, ConfigMap and Deployment plus default values."""
    return {
        "values.yaml": VALUES,
        "namespace.yaml": NAMESPACE,
        "configmap.yaml.j2": CONFIGMAP,
        "deployment.yaml.j2": DEPLOYMENT,
    }


@pytest.fixture
def retry_settings() -> RetrySettings:
    """Fast retries for tests."""
    return RetrySettings(attempts=3, backoff_base=0, backoff_max=0)


@pytest.fixture
def settings(tmp_path: Path, retry_settings: RetrySettings) -> ControllerSettings:
    """Controller settings with long intervals so tickers never fire mid-test."""
    return ControllerSettings(
        cluster_url="https://cluster.example.com",
        cluster_token=SecretStr("test-token"),
        poll_interval=3600,
        drift_check_interval=3600,
        max_concurrency=4,
        git_cache_dir=tmp_path / "repos",
        retry=retry_settings,
    )


@pytest.fixture
def connection() -> ClusterConnection:
    """Create a cluster connection for respx-based tests."""
    return ClusterConnection(
        url="https://cluster.example.com",
        token=SecretStr("test-token"),
        name="test",
        insecure=True,
    )


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fake_poller(chart_files: dict[str, str]) -> FakePoller:
    return FakePoller(files=chart_files)


@pytest.fixture
def events() -> EventLogger:
    return EventLogger()


@pytest.fixture
def automated_app() -> Application:
    """Automated Application with prune and self-heal enabled."""
    return Application(
        name="web",
        repo_url="https://git.example.com/acme/deploy.git",
        path="apps/web",
        target_revision="main",
        destination_namespace="web",
        sync_policy=SyncPolicy(automated=True, prune=True, self_heal=True),
    )


@pytest.fixture
def manual_app() -> Application:
    """Application with a manual sync policy."""
    return Application(
        name="web",
        repo_url="https://git.example.com/acme/deploy.git",
        path="apps/web",
        target_revision="main",
        destination_namespace="web",
        sync_policy=SyncPolicy(automated=False),
    )


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def kube_api_url() -> str | None:
    """Get the cluster API URL from environment."""
    return os.environ.get("KUBE_API_URL")


@pytest.fixture
def kube_token() -> str | None:
    """Get the cluster API token from environment."""
    return os.environ.get("KUBE_TOKEN")


@pytest.fixture
async def live_cluster_client(
    kube_api_url: str | None,
    kube_token: str | None,
) -> AsyncIterator[ClusterClient | None]:
    """Create a live cluster client for integration tests."""
    if not kube_api_url or not kube_token:
        yield None
        return

    connection = ClusterConnection(
        url=kube_api_url,
        token=SecretStr(kube_token),
        name="integration-test",
        insecure=os.environ.get("KUBE_INSECURE", "false").lower() == "true",
    )
    async with ClusterClient(connection) as client:
        yield client
