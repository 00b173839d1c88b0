# ABOUTME: Error taxonomy for the reconciliation controller
# ABOUTME: Separates retryable failures from terminal ones that are only reported

"""
Error taxonomy for fetch, render and apply failures.

Every error raised by a pipeline stage derives from ReconcileError and says
whether retrying it can help:

    RETRYABLE (retried locally with exponential backoff):
        FetchError          - network or auth failure talking to Git
        ApplyConflict       - optimistic-concurrency clash (HTTP 409)
        ClusterUnavailable  - throttling, 5xx, timeouts from the cluster API

    TERMINAL (reported on the Sync Result, never retried):
        RevisionNotFound    - the ref does not resolve in the repository
        RenderError         - bad template, bad values, malformed manifest
        AdmissionRejected   - invalid spec or admission webhook denial
        ClusterApiError     - any other cluster API failure

"Degraded" is not an exception. It is the aggregate status of a pass where
some operations failed and others succeeded (see models.SyncStatus).
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for all reconciliation failures."""

    retryable: bool = False

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"{type(self).__name__}: {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


# =============================================================================
# GIT SOURCE ERRORS
# =============================================================================


class FetchError(ReconcileError):
    """Network, auth or git failure while fetching a revision."""

    retryable = True


class RevisionNotFound(ReconcileError):
    """The requested ref does not exist in the repository."""


# =============================================================================
# RENDER ERRORS
# =============================================================================


class RenderError(ReconcileError):
    """Template, values or manifest structure could not be rendered."""


# =============================================================================
# CLUSTER API ERRORS
# =============================================================================


class ClusterApiError(ReconcileError):
    """
    Cluster API error carrying the HTTP status code.

    Subclasses select the retry behaviour; this base class is terminal.
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        super().__init__(message, details)

    def __str__(self) -> str:
        base = f"Cluster API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class ApplyConflict(ClusterApiError):
    """The resource changed since it was read (stale resourceVersion)."""

    retryable = True


class ClusterUnavailable(ClusterApiError):
    """Throttled, timed out or the API server failed (429, 5xx)."""

    retryable = True


class AdmissionRejected(ClusterApiError):
    """The API server or an admission webhook refused the object."""


class ResourceNotFound(ClusterApiError):
    """The addressed resource does not exist (404)."""


class AlreadyExists(ClusterApiError):
    """Create was refused because the resource already exists (409)."""


def is_retryable(error: BaseException) -> bool:
    """Return True when retrying ``error`` may succeed."""
    return isinstance(error, ReconcileError) and error.retryable
