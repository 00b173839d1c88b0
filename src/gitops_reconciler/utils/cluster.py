# ABOUTME: Cluster API client wrapper with retry logic, rate limiting and error mapping
# ABOUTME: Provides async create/read/replace/delete/list of typed resource descriptors

"""
Cluster API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The reconciler talks to a Kubernetes-style REST API through this client:

1. HTTP COMMUNICATION: one httpx.AsyncClient connection pool, shared by
   every Application's reconciliation loop
2. AUTHENTICATION: Bearer token on every request
3. RATE LIMITING: a shared sliding-window limiter so concurrent passes do
   not overwhelm the API server
4. ERROR MAPPING: HTTP failures become the controller's error taxonomy
   (ApplyConflict, AdmissionRejected, ClusterUnavailable, ...)
5. RETRY LOGIC: timeouts are retried here; conflicts and throttling are
   retried by the Sync Executor, which knows how to re-read state

=============================================================================
KUBERNETES REST PATHS
=============================================================================

Core group ("v1") objects live under /api/v1, everything else under
/apis/<group>/<version>:

    GET    /api/v1/namespaces/{ns}/configmaps/{name}
    POST   /apis/apps/v1/namespaces/{ns}/deployments
    PUT    /apis/apps/v1/namespaces/{ns}/deployments/{name}
    DELETE /api/v1/namespaces/{name}                       (cluster-scoped)
    GET    /apis/apps/v1/deployments?labelSelector=...     (all namespaces)

Errors come back as a Status object:
    {"kind": "Status", "code": 409, "reason": "Conflict", "message": "..."}

=============================================================================
OPTIMISTIC CONCURRENCY
=============================================================================

No client holds locks. Every object has a metadata.resourceVersion; a PUT
carrying a stale resourceVersion is refused with 409 Conflict. The API
server is the arbiter, so Applications can share this client freely.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import (
    AdmissionRejected,
    AlreadyExists,
    ApplyConflict,
    ClusterApiError,
    ClusterUnavailable,
    ResourceNotFound,
)
from gitops_reconciler.models import TRACKING_LABEL, KnownKind, ResourceDescriptor

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.config import ClusterConnection
    from gitops_reconciler.models import ResourceKey
    from gitops_reconciler.utils.ratelimit import RateLimiter

logger = structlog.get_logger(__name__)


# =============================================================================
# PATH HELPERS
# =============================================================================


def plural_for(kind: str) -> str:
    """URL plural of a kind, from the KnownKind table or English rules."""
    known = KnownKind.lookup(kind)
    if known:
        return known.info.plural
    lower = kind.lower()
    if lower.endswith(("s", "x", "ch", "sh")):
        return f"{lower}es"
    if lower.endswith("y") and lower[-2:-1] not in "aeiou":
        return f"{lower[:-1]}ies"
    return f"{lower}s"


def resource_path(
    api_version: str,
    kind: str,
    namespace: str = "",
    name: str | None = None,
) -> str:
    """
    Build the REST path for a kind, optionally scoped to namespace and name.

    Example:
        resource_path("apps/v1", "Deployment", "web", "frontend")
        -> "/apis/apps/v1/namespaces/web/deployments/frontend"
    """
    prefix = "/api/v1" if api_version == "v1" else f"/apis/{api_version}"
    path = prefix
    if namespace:
        path += f"/namespaces/{namespace}"
    path += f"/{plural_for(kind)}"
    if name:
        path += f"/{name}"
    return path


def _object_path(resource: ResourceDescriptor, with_name: bool = True) -> str:
    namespace = resource.namespace if resource.namespaced else ""
    return resource_path(
        resource.api_version,
        resource.kind,
        namespace,
        resource.name if with_name else None,
    )


def _is_controlled(item: dict[str, Any]) -> bool:
    """True for children created by a controller (ReplicaSets of a Deployment, ...)."""
    owners = (item.get("metadata") or {}).get("ownerReferences") or []
    return any(owner.get("controller") for owner in owners)


# =============================================================================
# CLUSTER API PROTOCOL
# =============================================================================


class ClusterApi(Protocol):
    """What the executor and reconciliation loop need from a cluster."""

    async def get(self, resource: ResourceDescriptor) -> ResourceDescriptor: ...

    async def create(self, resource: ResourceDescriptor) -> ResourceDescriptor: ...

    async def replace(self, resource: ResourceDescriptor) -> ResourceDescriptor: ...

    async def delete(self, resource: ResourceDescriptor) -> None: ...

    async def list_managed(
        self,
        application: str,
        kinds: Iterable[tuple[str, str]],
    ) -> list[ResourceDescriptor]: ...


# =============================================================================
# CLIENT
# =============================================================================


class ClusterClient:
    """
    Async cluster API client with retry logic.

    LIFECYCLE:
    ----------
        async with ClusterClient(connection, rate_limiter) as client:
            live = await client.list_managed("guestbook", kinds)

    The connection pool is created in __aenter__ and closed in __aexit__.

    RETRY LOGIC:
    ------------
    Timeouts are retried here with exponential backoff (3 attempts). A
    request that still times out surfaces as ClusterUnavailable, which the
    Sync Executor treats as transient.
    """

    def __init__(
        self,
        connection: ClusterConnection,
        rate_limiter: RateLimiter | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._connection = connection
        self._rate_limiter = rate_limiter
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ClusterClient:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = self._connection.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._connection.url,
            headers=headers,
            timeout=self._timeout,
            verify=not self._connection.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # REQUEST CORE
    # -------------------------------------------------------------------------

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        """
        Convert an error response into the controller's error taxonomy.

        STATUS MAPPING:
        ---------------
        404                        -> ResourceNotFound
        409 reason=AlreadyExists   -> AlreadyExists
        409 (other)                -> ApplyConflict        (retryable)
        400, 422                   -> AdmissionRejected    (invalid spec)
        403 from admission webhook -> AdmissionRejected
        429, 5xx                   -> ClusterUnavailable   (retryable)
        anything else              -> ClusterApiError
        """
        code = response.status_code
        message = f"HTTP {code}"
        reason = ""
        details = None
        try:
            body = response.json()
            message = body.get("message", message)
            reason = body.get("reason", "")
            details = reason or None
        except ValueError:
            details = response.text[:200] if response.text else None

        if code == 404:
            raise ResourceNotFound(code, message, details)
        if code == 409:
            if reason == "AlreadyExists":
                raise AlreadyExists(code, message, details)
            raise ApplyConflict(code, message, details)
        if code in (400, 422):
            raise AdmissionRejected(code, message, details)
        if code == 403 and "admission webhook" in message.lower():
            raise AdmissionRejected(code, message, details)
        if code == 429 or code >= 500:
            raise ClusterUnavailable(code, message, details)
        raise ClusterApiError(code, message, details)

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make one HTTP request to the cluster API.

        Raises:
            ClusterApiError (or a subclass): On 4xx/5xx responses
            httpx.TimeoutException: On timeout, after retries
            RuntimeError: If the client was not entered with 'async with'
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        if self._rate_limiter:
            await self._rate_limiter.acquire("cluster")

        log = logger.bind(method=method, path=path, cluster=self._connection.name)
        log.debug("Cluster API request")

        try:
            response = await self._client.request(method, path, params=params, json=json_data)
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as e:
            log.warning("Cluster API unreachable", error=str(e))
            raise ClusterUnavailable(503, "Cluster API unreachable", str(e)) from e

        if response.status_code >= 400:
            log.debug("Cluster API error", status=response.status_code, body=response.text[:200])
            self._raise_for_status(response)

        result = response.json() if response.content else {}
        return result if isinstance(result, dict) else {}

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            return await self._request(method, path, params=params, json_data=json_data)
        except httpx.TimeoutException as e:
            raise ClusterUnavailable(504, "Cluster API request timed out", str(e)) from e

    # -------------------------------------------------------------------------
    # RESOURCE OPERATIONS
    # -------------------------------------------------------------------------

    async def get(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        """Read the live object with the same identity as ``resource``."""
        data = await self._call("GET", _object_path(resource))
        data.setdefault("apiVersion", resource.api_version)
        data.setdefault("kind", resource.kind)
        return ResourceDescriptor.from_manifest(data)

    async def create(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        """POST a new object to its collection."""
        data = await self._call(
            "POST", _object_path(resource, with_name=False), json_data=resource.to_manifest()
        )
        return ResourceDescriptor.from_manifest(data) if data else resource

    async def replace(self, resource: ResourceDescriptor) -> ResourceDescriptor:
        """PUT the object; the manifest must carry the live resourceVersion."""
        data = await self._call("PUT", _object_path(resource), json_data=resource.to_manifest())
        return ResourceDescriptor.from_manifest(data) if data else resource

    async def delete(self, resource: ResourceDescriptor) -> None:
        """DELETE the object, letting the garbage collector remove dependents."""
        await self._call(
            "DELETE",
            _object_path(resource),
            json_data={"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Background"},
        )

    async def list_kind(
        self,
        api_version: str,
        kind: str,
        label_selector: str | None = None,
    ) -> list[ResourceDescriptor]:
        """
        List objects of one kind across all namespaces.

        List responses omit apiVersion/kind on items; they are filled in
        from the request. Objects owned by a controller are skipped: they
        are children of managed objects, not managed objects themselves.
        """
        params = {"labelSelector": label_selector} if label_selector else None
        data = await self._call("GET", resource_path(api_version, kind), params=params)
        resources: list[ResourceDescriptor] = []
        for item in data.get("items") or []:
            if _is_controlled(item):
                continue
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
            resources.append(ResourceDescriptor.from_manifest(item))
        return resources

    async def list_managed(
        self,
        application: str,
        kinds: Iterable[tuple[str, str]],
    ) -> list[ResourceDescriptor]:
        """
        List every live object carrying the Application's tracking label.

        Kinds the API server does not serve (404, e.g. a CRD not installed
        yet) are skipped. An object served under two versions of its kind
        is returned once.

        Args:
            application: Application name (tracking label value)
            kinds: (api_version, kind) pairs to list
        """
        selector = f"{TRACKING_LABEL}={application}"

        async def list_one(api_version: str, kind: str) -> list[ResourceDescriptor]:
            try:
                return await self.list_kind(api_version, kind, selector)
            except ResourceNotFound:
                logger.debug("Kind not served, skipping", kind=kind, api_version=api_version)
                return []

        batches = await asyncio.gather(*(list_one(v, k) for v, k in sorted(set(kinds))))
        seen: set[ResourceKey] = set()
        resources: list[ResourceDescriptor] = []
        for resource in (r for batch in batches for r in batch):
            if resource.key in seen:
                continue
            seen.add(resource.key)
            resources.append(resource)
        return resources


def default_kinds() -> list[tuple[str, str]]:
    """(api_version, kind) for every KnownKind."""
    return [(k.info.api_version, k.info.kind) for k in KnownKind]
