# ABOUTME: Data model shared by the poller, differ, executor and reconciliation loop
# ABOUTME: Applications, resource descriptors, revision snapshots, operations and results

"""
Core data model.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every stage of a reconciliation pass hands values of these types to the
next stage. Nothing here performs I/O:

    Application        -> what to reconcile (repo, path, destination, policy)
    RevisionSnapshot   -> immutable, content-addressed rendered desired state
    ResourceDescriptor -> one Kubernetes object, identified by (kind, ns, name)
    SyncOperation      -> Create/Update/Delete over a descriptor, with outcome
    SyncResult         -> terminal record of one pass

=============================================================================
KNOWN KINDS VS OPAQUE KINDS
=============================================================================

Manifests are dynamically typed YAML. Kinds the controller knows about are
listed in the KnownKind enum, which carries what the cluster API and the
sync ordering need (api version, URL plural, scope, phase). Any other kind,
typically a custom resource, is kept as an opaque payload: it still diffs
and applies, and it is ordered in the workloads phase after CRDs exist.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum, StrEnum
from typing import Any, NamedTuple

# Label stamped on every managed resource so live state can be listed per Application.
TRACKING_LABEL = "app.kubernetes.io/instance"


# =============================================================================
# SYNC PHASES AND KINDS
# =============================================================================


class SyncPhase(IntEnum):
    """Dependency tiers applied in ascending order."""

    NAMESPACES = 0
    CRDS = 1
    CONFIG = 2
    WORKLOADS = 3
    NETWORK_POLICY = 4
    INGRESS = 5


@dataclass(frozen=True)
class KindInfo:
    """What the controller needs to know about a resource kind."""

    kind: str
    api_version: str
    plural: str
    namespaced: bool
    phase: SyncPhase


class KnownKind(Enum):
    """Resource kinds with a fixed place in the sync ordering."""

    NAMESPACE = KindInfo("Namespace", "v1", "namespaces", False, SyncPhase.NAMESPACES)
    CUSTOM_RESOURCE_DEFINITION = KindInfo(
        "CustomResourceDefinition",
        "apiextensions.k8s.io/v1",
        "customresourcedefinitions",
        False,
        SyncPhase.CRDS,
    )
    CONFIG_MAP = KindInfo("ConfigMap", "v1", "configmaps", True, SyncPhase.CONFIG)
    SECRET = KindInfo("Secret", "v1", "secrets", True, SyncPhase.CONFIG)
    SERVICE_ACCOUNT = KindInfo("ServiceAccount", "v1", "serviceaccounts", True, SyncPhase.CONFIG)
    RESOURCE_QUOTA = KindInfo("ResourceQuota", "v1", "resourcequotas", True, SyncPhase.CONFIG)
    LIMIT_RANGE = KindInfo("LimitRange", "v1", "limitranges", True, SyncPhase.CONFIG)
    STORAGE_CLASS = KindInfo(
        "StorageClass", "storage.k8s.io/v1", "storageclasses", False, SyncPhase.CONFIG
    )
    PERSISTENT_VOLUME = KindInfo(
        "PersistentVolume", "v1", "persistentvolumes", False, SyncPhase.CONFIG
    )
    PERSISTENT_VOLUME_CLAIM = KindInfo(
        "PersistentVolumeClaim", "v1", "persistentvolumeclaims", True, SyncPhase.CONFIG
    )
    CLUSTER_ROLE = KindInfo(
        "ClusterRole", "rbac.authorization.k8s.io/v1", "clusterroles", False, SyncPhase.CONFIG
    )
    CLUSTER_ROLE_BINDING = KindInfo(
        "ClusterRoleBinding",
        "rbac.authorization.k8s.io/v1",
        "clusterrolebindings",
        False,
        SyncPhase.CONFIG,
    )
    ROLE = KindInfo("Role", "rbac.authorization.k8s.io/v1", "roles", True, SyncPhase.CONFIG)
    ROLE_BINDING = KindInfo(
        "RoleBinding", "rbac.authorization.k8s.io/v1", "rolebindings", True, SyncPhase.CONFIG
    )
    SERVICE = KindInfo("Service", "v1", "services", True, SyncPhase.WORKLOADS)
    DEPLOYMENT = KindInfo("Deployment", "apps/v1", "deployments", True, SyncPhase.WORKLOADS)
    STATEFUL_SET = KindInfo("StatefulSet", "apps/v1", "statefulsets", True, SyncPhase.WORKLOADS)
    DAEMON_SET = KindInfo("DaemonSet", "apps/v1", "daemonsets", True, SyncPhase.WORKLOADS)
    REPLICA_SET = KindInfo("ReplicaSet", "apps/v1", "replicasets", True, SyncPhase.WORKLOADS)
    POD = KindInfo("Pod", "v1", "pods", True, SyncPhase.WORKLOADS)
    JOB = KindInfo("Job", "batch/v1", "jobs", True, SyncPhase.WORKLOADS)
    CRON_JOB = KindInfo("CronJob", "batch/v1", "cronjobs", True, SyncPhase.WORKLOADS)
    HORIZONTAL_POD_AUTOSCALER = KindInfo(
        "HorizontalPodAutoscaler",
        "autoscaling/v2",
        "horizontalpodautoscalers",
        True,
        SyncPhase.WORKLOADS,
    )
    POD_DISRUPTION_BUDGET = KindInfo(
        "PodDisruptionBudget", "policy/v1", "poddisruptionbudgets", True, SyncPhase.WORKLOADS
    )
    NETWORK_POLICY = KindInfo(
        "NetworkPolicy",
        "networking.k8s.io/v1",
        "networkpolicies",
        True,
        SyncPhase.NETWORK_POLICY,
    )
    INGRESS_CLASS = KindInfo(
        "IngressClass", "networking.k8s.io/v1", "ingressclasses", False, SyncPhase.INGRESS
    )
    INGRESS = KindInfo("Ingress", "networking.k8s.io/v1", "ingresses", True, SyncPhase.INGRESS)

    @property
    def info(self) -> KindInfo:
        return self.value

    @classmethod
    def lookup(cls, kind: str) -> KnownKind | None:
        """Return the KnownKind for ``kind`` or None for opaque kinds."""
        return _KINDS_BY_NAME.get(kind)


_KINDS_BY_NAME: dict[str, KnownKind] = {k.info.kind: k for k in KnownKind}


# =============================================================================
# RESOURCE DESCRIPTORS
# =============================================================================


class ResourceKey(NamedTuple):
    """Identity of a resource: (kind, namespace, name)."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    One Kubernetes object.

    ``payload`` is the full manifest (apiVersion, kind, metadata, spec...).
    ``namespace`` is empty for cluster-scoped objects. Treat descriptors as
    immutable: the with_* helpers return modified copies.
    """

    api_version: str
    kind: str
    name: str
    namespace: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> ResourceDescriptor:
        """
        Build a descriptor from a parsed manifest.

        Raises:
            ValueError: If apiVersion, kind or metadata.name is missing.
        """
        metadata = data.get("metadata") or {}
        api_version = data.get("apiVersion")
        kind = data.get("kind")
        name = metadata.get("name") if isinstance(metadata, dict) else None
        if not api_version or not kind or not name:
            raise ValueError("manifest requires apiVersion, kind and metadata.name")
        return cls(
            api_version=str(api_version),
            kind=str(kind),
            name=str(name),
            namespace=str(metadata.get("namespace") or ""),
            payload=copy.deepcopy(data),
        )

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)

    @property
    def known_kind(self) -> KnownKind | None:
        return KnownKind.lookup(self.kind)

    @property
    def phase(self) -> SyncPhase:
        known = self.known_kind
        return known.info.phase if known else SyncPhase.WORKLOADS

    @property
    def namespaced(self) -> bool:
        known = self.known_kind
        return known.info.namespaced if known else True

    @property
    def labels(self) -> dict[str, str]:
        return dict((self.payload.get("metadata") or {}).get("labels") or {})

    @property
    def resource_version(self) -> str | None:
        return (self.payload.get("metadata") or {}).get("resourceVersion")

    def to_manifest(self) -> dict[str, Any]:
        """Return a deep copy of the manifest, safe for the caller to mutate."""
        return copy.deepcopy(self.payload)

    def with_namespace(self, namespace: str) -> ResourceDescriptor:
        """Copy with ``namespace`` set; an empty namespace removes the field."""
        manifest = self.to_manifest()
        metadata = manifest.setdefault("metadata", {})
        if namespace:
            metadata["namespace"] = namespace
        else:
            metadata.pop("namespace", None)
        return ResourceDescriptor(self.api_version, self.kind, self.name, namespace, manifest)

    def with_labels(self, labels: dict[str, str]) -> ResourceDescriptor:
        manifest = self.to_manifest()
        metadata = manifest.setdefault("metadata", {})
        metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
        return ResourceDescriptor(self.api_version, self.kind, self.name, self.namespace, manifest)


# =============================================================================
# APPLICATION
# =============================================================================


@dataclass(frozen=True)
class SyncPolicy:
    """automated vs manual sync, plus the prune and self-heal switches."""

    automated: bool = False
    prune: bool = False
    self_heal: bool = False


@dataclass(frozen=True)
class Application:
    """
    One desired-state stream: a Git source rendered into one destination.

    FIELDS EXPLAINED:
    -----------------
    - repo_url / target_revision / path: where the manifests live in Git
    - destination_server / destination_namespace: where they are applied;
      the namespace is the default for namespaced objects that omit one
    - sync_policy: automated or manual, prune, self-heal
    - values: overlay merged over the chart's values.yaml before rendering
    """

    name: str
    repo_url: str
    path: str = "."
    target_revision: str = "HEAD"
    destination_server: str = "https://kubernetes.default.svc"
    destination_namespace: str = "default"
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    project: str = "default"
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> Application:
        """
        Create an Application from an Argo CD ``Application`` manifest.

        The ``automated`` block switches on automated sync; ``prune`` and
        ``selfHeal`` live inside it, as in Argo CD. A missing or null block
        means manual sync.

        Raises:
            ValueError: If metadata.name or spec.source.repoURL is missing.
        """
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        source = spec.get("source") or {}
        destination = spec.get("destination") or {}
        sync_policy = spec.get("syncPolicy") or {}
        helm = source.get("helm") or {}

        name = metadata.get("name")
        repo_url = source.get("repoURL")
        if not name or not repo_url:
            raise ValueError("Application requires metadata.name and spec.source.repoURL")

        automated = sync_policy.get("automated")
        policy = SyncPolicy(
            automated=automated is not None,
            prune=bool((automated or {}).get("prune", False)),
            self_heal=bool((automated or {}).get("selfHeal", False)),
        )

        return cls(
            name=name,
            repo_url=repo_url,
            path=source.get("path") or ".",
            target_revision=source.get("targetRevision") or "HEAD",
            destination_server=destination.get("server") or "https://kubernetes.default.svc",
            destination_namespace=destination.get("namespace") or "default",
            sync_policy=policy,
            project=spec.get("project") or "default",
            values=dict(helm.get("valuesObject") or {}),
        )


# =============================================================================
# REVISION SNAPSHOT
# =============================================================================


@dataclass(frozen=True)
class RevisionSnapshot:
    """
    Content-addressed rendered desired state at one commit.

    ``digest`` hashes the canonical JSON of the resources sorted by identity,
    so two renders of the same content share a digest regardless of file
    order or commit.
    """

    commit: str
    resources: tuple[ResourceDescriptor, ...]
    digest: str

    @classmethod
    def build(cls, commit: str, resources: list[ResourceDescriptor]) -> RevisionSnapshot:
        ordered = tuple(sorted(resources, key=lambda r: r.key))
        canonical = json.dumps(
            [r.payload for r in ordered], sort_keys=True, separators=(",", ":"), default=str
        )
        digest = hashlib.sha256(canonical.encode()).hexdigest()
        return cls(commit=commit, resources=ordered, digest=digest)

    def by_key(self) -> dict[ResourceKey, ResourceDescriptor]:
        return {r.key: r for r in self.resources}


# =============================================================================
# OPERATIONS AND RESULTS
# =============================================================================


class OperationType(StrEnum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class OperationState(StrEnum):
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class SyncStatus(StrEnum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    DEGRADED = "Degraded"
    ERROR = "Error"


@dataclass
class SyncOperation:
    """
    A Create, Update or Delete of one resource.

    ``resource`` is the desired descriptor for Create/Update and the live
    descriptor for Delete. The executor fills in state, attempts, message
    and ``terminal`` (failed with a non-retryable error).
    """

    type: OperationType
    resource: ResourceDescriptor
    state: OperationState = OperationState.PENDING
    attempts: int = 0
    message: str = ""
    terminal: bool = False

    @property
    def phase(self) -> SyncPhase:
        return self.resource.phase

    @property
    def sort_key(self) -> tuple[int, str, str, str]:
        key = self.resource.key
        return (int(self.phase), key.kind, key.namespace, key.name)

    def __str__(self) -> str:
        return f"{self.type} {self.resource.key}"

    def to_dict(self) -> dict[str, Any]:
        key = self.resource.key
        return {
            "type": str(self.type),
            "kind": key.kind,
            "namespace": key.namespace,
            "name": key.name,
            "phase": self.phase.name,
            "state": str(self.state),
            "attempts": self.attempts,
            "message": self.message,
        }


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SyncResult:
    """
    Terminal record of one reconciliation pass.

    Results are history: the next pass supersedes a result but never
    deletes or edits it.
    """

    application: str
    revision: str
    status: SyncStatus
    digest: str = ""
    trigger: str = ""
    operations: list[SyncOperation] = field(default_factory=list)
    drift: list[ResourceKey] = field(default_factory=list)
    message: str = ""
    superseded: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.state == OperationState.SUCCEEDED]

    @property
    def failed(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.state == OperationState.FAILED]

    @property
    def pending(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.state == OperationState.PENDING]

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.operations),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "pending": len(self.pending),
            "drift": len(self.drift),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "application": self.application,
            "revision": self.revision,
            "digest": self.digest,
            "status": str(self.status),
            "trigger": self.trigger,
            "message": self.message,
            "superseded": self.superseded,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "summary": self.summary(),
            "operations": [op.to_dict() for op in self.operations],
            "drift": [str(key) for key in self.drift],
        }
