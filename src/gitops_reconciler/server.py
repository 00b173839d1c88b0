# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Runs the reconciler for its lifetime and exposes status queries and triggers

"""GitOps Reconciler - continuous Git to cluster reconciliation behind an MCP server."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ControllerSettings, load_applications, load_settings
from gitops_reconciler.models import SyncResult, SyncStatus
from gitops_reconciler.reconciler import Reconciler, TriggerKind
from gitops_reconciler.utils.cluster import ClusterClient
from gitops_reconciler.utils.logging import EventLogger, configure_logging, set_correlation_id
from gitops_reconciler.utils.ratelimit import RateLimiter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ControllerSettings | None = None
_reconciler: Reconciler | None = None
_events: EventLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, start controllers, stop them on shutdown."""
    global _settings, _reconciler, _events

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting GitOps reconciler", cluster=_settings.cluster.url)

    _events = EventLogger(_settings.event_log)
    limiter = RateLimiter(_settings.rate_limit_calls, _settings.rate_limit_window)

    async with ClusterClient(_settings.cluster, limiter) as cluster:
        _reconciler = Reconciler(_settings, cluster, events=_events)
        if _settings.applications_file:
            for app in load_applications(_settings.applications_file):
                _reconciler.add_application(app)
        else:
            logger.warning("No applications file configured (GITOPS_APPLICATIONS_FILE)")

        _reconciler.start()
        try:
            yield {"settings": _settings, "reconciler": _reconciler}
        finally:
            await _reconciler.stop()
            _reconciler = None

    logger.info("GitOps reconciler stopped")


mcp = FastMCP("gitops-reconciler", lifespan=lifespan)


def get_settings() -> ControllerSettings:
    """Get controller settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_reconciler() -> Reconciler:
    """Get the running reconciler."""
    if not _reconciler:
        raise RuntimeError("Server not initialized")
    return _reconciler


def get_event_logger() -> EventLogger:
    """Get the event logger shared with the reconciler."""
    if not _events:
        raise RuntimeError("Server not initialized")
    return _events


def _marker(status: str) -> str:
    return "[OK]" if status == SyncStatus.SYNCED else "[!]"


def _format_result(result: SyncResult) -> list[str]:
    summary = result.summary()
    lines = [
        f"Status: {result.status} {_marker(result.status)}",
        f"Revision: {result.revision[:12] or 'unknown'}",
        f"Trigger: {result.trigger}",
        f"Finished: {result.finished_at.isoformat()}",
        f"Operations: {summary['succeeded']} succeeded, {summary['failed']} failed, "
        f"{summary['pending']} pending",
    ]
    if result.message:
        lines.append(f"Message: {result.message}")
    if result.superseded:
        lines.append("Superseded by a newer revision")
    return lines


# =============================================================================
# READ OPERATIONS
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    sync_status: str | None = Field(
        default=None, description="Filter by sync status (Synced, OutOfSync, Degraded, Error)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List reconciled applications with their state and last sync status.

    Use this to find applications that are out of sync or failing.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    statuses = [c.status() for c in get_reconciler().applications()]
    if params.sync_status:
        statuses = [s for s in statuses if s["syncStatus"] == params.sync_status]

    if not statuses:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(statuses)} application(s):", ""]
    for s in statuses:
        lines.append(
            f"- {s['name']} state={s['state']} "
            f"sync={s['syncStatus']} {_marker(s['syncStatus'])} "
            f"rev={s['revision'][:12] or '-'} dest={s['destination']}"
        )
    return "\n".join(lines)


class GetApplicationStatusParams(BaseModel):
    """Parameters for get_application_status tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: GetApplicationStatusParams, ctx: MCPContext) -> str:
    """
    Get the current state and latest Sync Result of an application.

    Includes the per-operation outcome of the last pass and recent events.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        controller = get_reconciler().controller(params.name)
    except ValueError as e:
        return str(e)

    s = controller.status()
    policy = s["syncPolicy"]
    lines = [
        f"Application: {s['name']}",
        f"State: {s['state']}",
        f"Source: {s['repoURL']} @ {s['targetRevision']} ({s['path']})",
        f"Destination: {s['destination']}",
        f"Sync policy: automated={policy['automated']} prune={policy['prune']} "
        f"selfHeal={policy['selfHeal']}",
        "",
    ]

    result = get_reconciler().latest_result(params.name)
    if result is None:
        lines.append("No reconciliation pass has completed yet.")
        return "\n".join(lines)

    lines.extend(_format_result(result))
    if result.operations:
        lines.extend(["", "Operations:"])
        for op in result.operations:
            lines.append(f"  - [{op.state}] {op} (attempts={op.attempts}) {op.message}".rstrip())
    if result.drift:
        lines.extend(["", "Not in Git (prune disabled):"])
        lines.extend(f"  - {key}" for key in result.drift)

    events = get_event_logger().recent(params.name, limit=5)
    if events:
        lines.extend(["", "Recent events:"])
        for event in events:
            lines.append(f"  - {event['timestamp']} [{event['reason']}] {event['message']}")

    return "\n".join(lines)


class GetSyncHistoryParams(BaseModel):
    """Parameters for get_sync_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, description="Maximum number of results", ge=1, le=50)


@mcp.tool()
async def get_sync_history(params: GetSyncHistoryParams, ctx: MCPContext) -> str:
    """
    View recent Sync Results, newest first.

    Shows the revision, status and trigger of each completed pass.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    reconciler = get_reconciler()
    try:
        reconciler.controller(params.name)
    except ValueError as e:
        return str(e)

    history = reconciler.history(params.name, params.limit)
    if not history:
        return f"No sync history found for application '{params.name}'"

    lines = [f"Sync history for '{params.name}' (last {len(history)} entries):", ""]
    for i, result in enumerate(reversed(history), 1):
        summary = result.summary()
        lines.append(
            f"{i}. [{result.revision[:8] or 'unknown'}] {result.status} "
            f"trigger={result.trigger} ops={summary['succeeded']}/{summary['total']} "
            f"at {result.finished_at.isoformat()}"
        )
    return "\n".join(lines)


# =============================================================================
# TRIGGERS
# =============================================================================


class RefreshApplicationParams(BaseModel):
    """Parameters for refresh_application tool."""

    name: str = Field(description="Application name")
    revision: str | None = Field(
        default=None,
        description=(
            "Full 40-character commit sha that was just pushed; a pass syncing a different "
            "commit is superseded. Branch names and short shas only queue a refresh."
        ),
    )


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Signal that Git changed, like a push webhook.

    Queues a reconciliation pass without waiting for the next poll. Applies
    changes only if the application has an automated sync policy.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        get_reconciler().trigger(
            params.name, TriggerKind.WEBHOOK, revision=params.revision, reason="refresh requested"
        )
    except ValueError as e:
        return str(e)

    return (
        f"Refresh queued for '{params.name}'"
        + (f" at revision {params.revision[:12]}" if params.revision else "")
        + "\n\nUse get_application_status to monitor progress."
    )


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    wait: bool = Field(default=False, description="Wait for the pass to finish and report it")


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Synchronize an application with its Git source now.

    Works for manual sync policies too: a manual sync applies the pending
    operations. Pruning still follows the application's prune setting.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    reconciler = get_reconciler()
    try:
        controller = reconciler.controller(params.name)
    except ValueError as e:
        return str(e)

    reconciler.trigger(params.name, TriggerKind.MANUAL, reason="manual sync")
    if not params.wait:
        return (
            f"Sync queued for '{params.name}'\n\n"
            f"Use get_application_status to monitor progress."
        )

    await ctx.report_progress(0, 1, f"Syncing {params.name}")
    await controller.wait_idle()
    await ctx.report_progress(1, 1, "Complete")

    result = reconciler.latest_result(params.name)
    if result is None:
        return f"Sync for '{params.name}' did not produce a result"
    return "\n".join([f"Sync finished for '{params.name}'", "", *_format_result(result)])


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://applications")
async def get_applications_resource() -> str:
    """Get the configured applications and their sync policies."""
    controllers = get_reconciler().applications()
    if not controllers:
        return "No applications configured"

    lines = ["Configured Applications:", ""]
    for controller in controllers:
        app = controller.app
        policy = app.sync_policy
        mode = "automated" if policy.automated else "manual"
        lines.append(
            f"- {app.name}: {app.repo_url} @ {app.target_revision} ({app.path}) "
            f"-> {app.destination_namespace} [{mode}, prune={policy.prune}, "
            f"selfHeal={policy.self_heal}]"
        )
    return "\n".join(lines)


@mcp.resource("gitops://settings")
async def get_settings_resource() -> str:
    """Get current controller settings."""
    s = get_settings()
    return (
        "Controller Settings:\n"
        f"  Cluster: {s.cluster.url}\n"
        f"  Poll interval: {s.poll_interval}s\n"
        f"  Drift check interval: {s.drift_check_interval}s\n"
        f"  Max concurrency per phase: {s.max_concurrency}\n"
        f"  Rate limit: {s.rate_limit_calls} calls per {s.rate_limit_window}s\n"
        f"  Retry: {s.retry.attempts} attempts, backoff {s.retry.backoff_base}s..{s.retry.backoff_max}s\n"
        f"  History kept: {s.history_limit} results per application"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps reconciler MCP server."""
    configure_logging(level="INFO")
    logger.info("GitOps reconciler starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
