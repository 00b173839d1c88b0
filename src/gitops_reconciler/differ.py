# ABOUTME: Desired-state differ comparing rendered manifests with live cluster state
# ABOUTME: Produces Create/Update/Delete operations sorted by the fixed sync phase table

"""
Desired-State Differ.

=============================================================================
ALGORITHM
=============================================================================

1. Index desired and live descriptors by identity (kind, namespace, name).
2. Desired only           -> Create
   Live only, prune=True  -> Delete
   Live only, prune=False -> no operation; the identity is reported as drift
   Both, payload differs  -> Update
3. Sort by (phase, kind, namespace, name).

=============================================================================
SEMANTIC EQUALITY
=============================================================================

Live objects come back from the API server with fields nobody wrote:
resourceVersion, uid, managedFields, status, defaulted spec fields such as
``spec.revisionHistoryLimit``. Comparing bytes would report every object as
changed forever. Instead both sides are normalized (server-managed metadata,
status and empty values removed) and the desired object must be *contained*
in the live one: every field the manifest sets must match, fields only the
server set are ignored.

Containment alone cannot see a field that was deleted from Git. Every
applied object therefore carries the set of field paths it was applied with
(APPLIED_FIELDS_ANNOTATION, keys only, no values). A live field listed there
but missing from the current desired manifest is drift:

    applied  {data: {a, b}}     desired {data: {a: 1}}
    live     {data: {a: 1, b: 2}}                      -> Update (b removed)

Fields the server or another client added were never applied by us and stay
ignored.

Secrets written with ``stringData`` are compared as the base64 ``data`` the
API server stores them as.

Applying the operations and diffing again therefore yields no operations.
"""

from __future__ import annotations

import base64
import copy
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from gitops_reconciler.models import OperationType, ResourceDescriptor, SyncOperation

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.models import ResourceKey

SERVER_MANAGED_METADATA = frozenset(
    [
        "resourceVersion",
        "uid",
        "creationTimestamp",
        "generation",
        "managedFields",
        "selfLink",
        "deletionTimestamp",
        "deletionGracePeriodSeconds",
    ]
)

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
APPLIED_FIELDS_ANNOTATION = "gitops-reconciler.io/applied-fields"


@dataclass
class DiffResult:
    """Ordered operations plus identities left out of sync (prune disabled)."""

    operations: list[SyncOperation] = field(default_factory=list)
    drift: list[ResourceKey] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.operations and not self.drift


# =============================================================================
# NORMALIZATION
# =============================================================================


def normalize(manifest: dict[str, Any]) -> dict[str, Any]:
    """Strip server-managed fields and empty values from a manifest copy."""
    data = copy.deepcopy(manifest)
    data.pop("status", None)

    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        for key in SERVER_MANAGED_METADATA:
            metadata.pop(key, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            annotations.pop(LAST_APPLIED_ANNOTATION, None)
            annotations.pop(APPLIED_FIELDS_ANNOTATION, None)

    if data.get("kind") == "Secret" and isinstance(data.get("stringData"), dict):
        _fold_string_data(data)

    cleaned = _drop_empty(data)
    return cleaned if isinstance(cleaned, dict) else {}


def _fold_string_data(secret: dict[str, Any]) -> None:
    # stringData is write-only: the API server merges it into data, base64-encoded.
    encoded = dict(secret.get("data") or {})
    for key, value in secret.pop("stringData").items():
        encoded[key] = base64.b64encode(str(value).encode()).decode()
    secret["data"] = encoded


def _drop_empty(value: Any) -> Any:
    if isinstance(value, dict):
        result = {}
        for k, v in value.items():
            v = _drop_empty(v)
            if v is None or v == {} or v == []:
                continue
            result[k] = v
        return result
    if isinstance(value, list):
        return [_drop_empty(item) for item in value]
    return value


def _contains(desired: Any, live: Any) -> bool:
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and _contains(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(_contains(d, lv) for d, lv in zip(desired, live, strict=True))
    return bool(desired == live)


def resources_equal(desired: ResourceDescriptor, live: ResourceDescriptor) -> bool:
    """
    True when ``live`` matches ``desired``.

    Every normalized desired field must match live, and no field recorded
    in the live object's applied-fields annotation may linger after being
    removed from desired.
    """
    wanted = normalize(desired.payload)
    current = normalize(live.payload)
    if not _contains(wanted, current):
        return False
    applied = applied_fields_of(live)
    return applied is None or not _removed(applied, wanted, current)


# =============================================================================
# APPLIED FIELDS
# =============================================================================


def applied_fields(manifest: dict[str, Any]) -> dict[str, Any]:
    """
    Field paths of a manifest as nested keys; leaves (scalars, lists) are None.

        {"data": {"a": "1"}, "metadata": {"name": "x"}}
        -> {"data": {"a": None}, "metadata": {"name": None}}
    """

    def paths(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: paths(v) for k, v in value.items()}
        return None

    result = paths(normalize(manifest))
    return result if isinstance(result, dict) else {}


def with_applied_fields(resource: ResourceDescriptor) -> ResourceDescriptor:
    """Return ``resource`` annotated with the field paths it is applied with."""
    fields = json.dumps(applied_fields(resource.payload), sort_keys=True, separators=(",", ":"))
    manifest = resource.to_manifest()
    metadata = manifest.setdefault("metadata", {})
    metadata["annotations"] = {**(metadata.get("annotations") or {}), APPLIED_FIELDS_ANNOTATION: fields}
    return ResourceDescriptor.from_manifest(manifest)


def applied_fields_of(live: ResourceDescriptor) -> dict[str, Any] | None:
    """The applied-fields annotation of a live object, or None when absent or unreadable."""
    annotations = (live.payload.get("metadata") or {}).get("annotations") or {}
    raw = annotations.get(APPLIED_FIELDS_ANNOTATION)
    if not raw:
        return None
    try:
        fields = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return fields if isinstance(fields, dict) else None


def _removed(applied: dict[str, Any], desired: dict[str, Any], live: dict[str, Any]) -> bool:
    for key, sub in applied.items():
        if key not in live:
            continue
        if key not in desired:
            return True
        if (
            isinstance(sub, dict)
            and isinstance(desired[key], dict)
            and isinstance(live[key], dict)
            and _removed(sub, desired[key], live[key])
        ):
            return True
    return False


# =============================================================================
# DIFF
# =============================================================================


def order_operations(operations: Iterable[SyncOperation]) -> list[SyncOperation]:
    """Sort operations by sync phase, then lexicographically by identity."""
    return sorted(operations, key=lambda op: op.sort_key)


def _index(resources: Iterable[ResourceDescriptor], side: str) -> dict[ResourceKey, ResourceDescriptor]:
    indexed: dict[ResourceKey, ResourceDescriptor] = {}
    for resource in resources:
        if resource.key in indexed:
            raise ValueError(f"duplicate {side} resource: {resource.key}")
        indexed[resource.key] = resource
    return indexed


def diff(
    desired: Iterable[ResourceDescriptor],
    actual: Iterable[ResourceDescriptor],
    prune: bool = False,
) -> DiffResult:
    """
    Compute the operations that move ``actual`` to ``desired``.

    Args:
        desired: Rendered resources for one Application.
        actual: Last-observed live resources managed by that Application.
        prune: Emit Delete for live-only resources instead of flagging drift.

    Returns:
        DiffResult with phase-ordered operations and the drift list.

    Raises:
        ValueError: If either side contains the same identity twice.
    """
    wanted = _index(desired, "desired")
    live = _index(actual, "live")

    operations: list[SyncOperation] = []
    drift: list[ResourceKey] = []

    for key, resource in wanted.items():
        current = live.get(key)
        if current is None:
            operations.append(SyncOperation(OperationType.CREATE, resource))
        elif not resources_equal(resource, current):
            operations.append(SyncOperation(OperationType.UPDATE, resource))

    for key, resource in live.items():
        if key in wanted:
            continue
        if prune:
            operations.append(SyncOperation(OperationType.DELETE, resource))
        else:
            drift.append(key)

    return DiffResult(operations=order_operations(operations), drift=sorted(drift))
