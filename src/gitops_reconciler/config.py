# ABOUTME: Configuration management for the GitOps reconciliation controller
# ABOUTME: Reads environment settings and loads Application manifests from YAML

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two kinds of configuration feed the controller:

1. CONTROLLER SETTINGS (environment variables, optional .env file)
   - How to reach the cluster API (URL, token, TLS)
   - How often to poll Git and check for drift
   - Retry, concurrency and rate-limit bounds
   - Logging and event log output

2. APPLICATIONS (a YAML file of Argo CD style Application manifests)
   - Which repositories, paths and revisions to reconcile
   - Where to apply them and with which sync policy

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. ClusterConnection: one cluster API endpoint (URL, token, TLS flag)

2. RetrySettings: backoff bounds shared by the Git poller and the executor
   (GITOPS_RETRY_* prefix)

3. ControllerSettings: top-level container (GITOPS_* prefix)
   - Cluster endpoint from KUBE_API_URL / KUBE_TOKEN / KUBE_INSECURE
   - Intervals, concurrency, history retention, logging
   - Nested RetrySettings

4. load_applications(): parses the Applications file into models.Application

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Cluster API:
    KUBE_API_URL            -> API server URL
    KUBE_TOKEN              -> Bearer token
    KUBE_INSECURE           -> Skip TLS certificate verification

Controller (GITOPS_ prefix):
    GITOPS_APPLICATIONS_FILE      -> YAML file with Application manifests
    GITOPS_POLL_INTERVAL          -> Seconds between Git polls (default: 180)
    GITOPS_DRIFT_CHECK_INTERVAL   -> Seconds between live drift checks (default: 30)
    GITOPS_MAX_CONCURRENCY        -> Operations applied at once per phase (default: 10)
    GITOPS_RATE_LIMIT_CALLS       -> Cluster API calls per window (default: 50)
    GITOPS_RATE_LIMIT_WINDOW      -> Rate limit window in seconds (default: 1)
    GITOPS_HISTORY_LIMIT          -> Sync Results kept per Application (default: 10)
    GITOPS_GIT_CACHE_DIR          -> Where fetched repositories are cached
    GITOPS_LOG_LEVEL / GITOPS_JSON_LOGS / GITOPS_EVENT_LOG

Retry (GITOPS_RETRY_ prefix):
    GITOPS_RETRY_ATTEMPTS / GITOPS_RETRY_BACKOFF_BASE / GITOPS_RETRY_BACKOFF_MAX
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

import structlog
import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_reconciler.models import Application

logger = structlog.get_logger(__name__)

# =============================================================================
# CLUSTER CONNECTION
# =============================================================================


class ClusterConnection(BaseModel):
    """
    Connection details for one cluster API server.

    This is a BaseModel (not BaseSettings): it is assembled from the
    KUBE_* variables by ControllerSettings.cluster, or built directly in
    code and tests.

    USAGE EXAMPLE:
    --------------
        cluster = ClusterConnection(
            url="https://kubernetes.example.com:6443",
            token=SecretStr("service-account-token"),
        )
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="Cluster API server URL")

    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    # SecretStr keeps the token out of reprs and logs.
    # Read it with token.get_secret_value() when building the Authorization header.

    name: str = Field(default="in-cluster", description="Cluster identifier")

    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Ensure URL has a scheme and no trailing slash.

        API paths start with "/", so a trailing slash on the base URL would
        produce "//api/v1/...". A bare host gets "https://" prepended.
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# RETRY SETTINGS
# =============================================================================


class RetrySettings(BaseSettings):
    """
    Exponential backoff bounds for retryable failures.

    Used for Git fetches (FetchError) and for cluster writes (ApplyConflict,
    ClusterUnavailable). The wait before attempt n is
    ``min(backoff_base * 2 ** (n - 1), backoff_max)`` seconds.
    """

    model_config = SettingsConfigDict(env_prefix="GITOPS_RETRY_")

    attempts: int = Field(default=5, ge=1, description="Maximum attempts including the first")

    backoff_base: float = Field(default=1.0, ge=0, description="First backoff in seconds")

    backoff_max: float = Field(default=30.0, ge=0, description="Backoff ceiling in seconds")


# =============================================================================
# CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Main controller configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.cluster.url          # Cluster API endpoint
        settings.poll_interval        # Seconds between Git polls
        settings.retry.attempts       # Nested retry bounds
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # CLUSTER API (from KUBE_* variables)
    # -------------------------------------------------------------------------

    cluster_url: str = Field(
        default="https://kubernetes.default.svc",
        validation_alias="KUBE_API_URL",
        description="Cluster API server URL",
    )

    cluster_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_TOKEN",
        description="Cluster API bearer token",
    )
    # Inside a pod, the service account token lives at
    # /var/run/secrets/kubernetes.io/serviceaccount/token

    cluster_insecure: bool = Field(
        default=False,
        validation_alias="KUBE_INSECURE",
        description="Skip TLS verification for the cluster API",
    )

    # -------------------------------------------------------------------------
    # APPLICATIONS AND SCHEDULING
    # -------------------------------------------------------------------------

    applications_file: Path | None = Field(
        default=None,
        description="YAML file containing Application manifests",
    )

    poll_interval: float = Field(default=180.0, gt=0, description="Seconds between Git polls")
    # Argo CD's default reconciliation timeout is also three minutes.

    drift_check_interval: float = Field(
        default=30.0, gt=0, description="Seconds between live drift checks"
    )

    max_concurrency: int = Field(
        default=10, ge=1, description="Operations applied concurrently within one phase"
    )

    rate_limit_calls: int = Field(default=50, ge=1, description="Cluster API calls per window")

    rate_limit_window: float = Field(default=1.0, gt=0, description="Rate limit window in seconds")

    history_limit: int = Field(default=10, ge=1, description="Sync Results kept per Application")

    # -------------------------------------------------------------------------
    # GIT
    # -------------------------------------------------------------------------

    git_cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "gitops-reconciler" / "repos",
        description="Directory holding bare repository caches",
    )

    git_timeout: float = Field(default=120.0, gt=0, description="Seconds per git command")

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    event_log: Path | None = Field(
        default=None,
        description="File receiving reconciliation events as JSON lines",
    )

    retry: RetrySettings = Field(default_factory=RetrySettings)

    @property
    def cluster(self) -> ClusterConnection:
        """The cluster endpoint assembled from the KUBE_* fields."""
        return ClusterConnection(
            url=self.cluster_url,
            token=self.cluster_token,
            insecure=self.cluster_insecure,
        )


# =============================================================================
# LOADERS
# =============================================================================


def load_settings() -> ControllerSettings:
    """
    Load settings from the environment with validation.

    If GITOPS_ENV_FILE is set, variables are also read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ControllerSettings(
        _env_file=os.environ.get("GITOPS_ENV_FILE"),
    )


def load_applications(path: Path) -> list[Application]:
    """
    Parse Application manifests from a (multi-document) YAML file.

    Documents whose kind is not ``Application`` are skipped with a warning.

    Raises:
        ValueError: If the YAML is invalid, an Application is malformed or
            two Applications share a name.
    """
    try:
        with path.open() as f:
            documents = list(yaml.safe_load_all(f))
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    applications: list[Application] = []
    seen: set[str] = set()
    for doc in documents:
        if not doc:
            continue
        if not isinstance(doc, dict) or doc.get("kind") != "Application":
            logger.warning("Skipping non-Application document", path=str(path))
            continue
        app = Application.from_manifest(doc)
        if app.name in seen:
            raise ValueError(f"Duplicate Application name '{app.name}' in {path}")
        seen.add(app.name)
        applications.append(app)
    return applications
