# ABOUTME: Reconciliation loop driving poll -> render -> diff -> sync per Application
# ABOUTME: Coalesces triggers, supersedes stale passes, self-heals drift, records results

"""
Reconciliation Loop.

=============================================================================
ONE STATE MACHINE PER APPLICATION
=============================================================================

    Idle --trigger--> Polling --> Diffing --> Syncing --> Idle
                                                 |
                                                 +--(failure)--> Degraded
    Degraded --trigger--> Polling ... --(success)--> Idle

Each ApplicationController owns three asyncio tasks:

    receiver  consumes the inbox (an asyncio.Queue of Trigger messages)
              and coalesces them into at most ONE pending request
    worker    runs one pass at a time for the pending request
    tickers   submit an ``interval`` trigger every poll_interval and run
              a live drift check every drift_check_interval

Controllers share nothing but the cluster client, so a failing or slow
Application never blocks another one.

=============================================================================
TRIGGERS
=============================================================================

    interval   scheduled Git poll
    webhook    external signal (e.g. a push notification), may carry the
               pushed commit as a revision hint
    self-heal  live state drifted from the last synced state
    manual     explicit sync request; the only trigger that applies
               changes for Applications with a manual sync policy

Triggers arriving while a pass runs are merged into the single pending
request, so any number of them produce exactly one follow-up pass. A
trigger whose revision differs from the commit being synced marks the
running pass stale: in-flight operations finish, no new phase starts.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.differ import diff, with_applied_fields
from gitops_reconciler.errors import ReconcileError, RenderError
from gitops_reconciler.executor import SyncExecutor
from gitops_reconciler.history import SyncHistory
from gitops_reconciler.models import (
    TRACKING_LABEL,
    Application,
    ResourceDescriptor,
    RevisionSnapshot,
    SyncResult,
    SyncStatus,
    utcnow,
)
from gitops_reconciler.poller import GitPoller
from gitops_reconciler.renderer import TemplateRenderer
from gitops_reconciler.utils.cluster import default_kinds
from gitops_reconciler.utils.logging import EventLogger, new_correlation_id

if TYPE_CHECKING:
    from datetime import datetime

    from gitops_reconciler.config import ControllerSettings
    from gitops_reconciler.differ import DiffResult
    from gitops_reconciler.executor import ExecutionReport
    from gitops_reconciler.models import SyncOperation
    from gitops_reconciler.poller import SourceTree
    from gitops_reconciler.renderer import ManifestRenderer
    from gitops_reconciler.utils.cluster import ClusterApi

logger = structlog.get_logger(__name__)


# =============================================================================
# STATES AND TRIGGERS
# =============================================================================


class AppState(StrEnum):
    IDLE = "Idle"
    POLLING = "Polling"
    DIFFING = "Diffing"
    SYNCING = "Syncing"
    DEGRADED = "Degraded"


class TriggerKind(StrEnum):
    INTERVAL = "interval"
    WEBHOOK = "webhook"
    SELF_HEAL = "self-heal"
    MANUAL = "manual"


_COMMIT_SHA = re.compile(r"[0-9a-f]{40}")

# Merging keeps the strongest kind: a queued manual sync must not be
# downgraded to a refresh by a later interval tick.
_TRIGGER_STRENGTH = {
    TriggerKind.INTERVAL: 0,
    TriggerKind.WEBHOOK: 1,
    TriggerKind.SELF_HEAL: 2,
    TriggerKind.MANUAL: 3,
}


@dataclass(frozen=True)
class Trigger:
    """A request for a reconciliation pass."""

    kind: TriggerKind
    revision: str | None = None
    reason: str = ""

    def merge(self, other: Trigger) -> Trigger:
        """Combine two pending requests into one."""
        kind = max(self.kind, other.kind, key=_TRIGGER_STRENGTH.__getitem__)
        reasons = [r for r in (self.reason, other.reason) if r]
        return Trigger(
            kind=kind,
            revision=other.revision or self.revision,
            reason=reasons[-1] if reasons else "",
        )


def _is_commit(revision: str) -> bool:
    """Only a full commit sha can identify a newer revision; refs and short shas cannot."""
    return bool(_COMMIT_SHA.fullmatch(revision))


@dataclass
class _Pass:
    """Bookkeeping for the pass in flight."""

    trigger: Trigger
    commit: str | None = None
    stale: bool = False

    def is_stale(self) -> bool:
        return self.stale


# =============================================================================
# PER-APPLICATION CONTROLLER
# =============================================================================


class ApplicationController:
    """
    Reconciliation state machine for one Application.

    USAGE:
    ------
        controller = ApplicationController(app, poller=..., renderer=..., cluster=...,
                                           settings=settings, history=history, events=events)
        controller.start()
        controller.submit(Trigger(TriggerKind.WEBHOOK, revision="4f2a..."))
        await controller.wait_idle()
        await controller.stop()

    ``reconcile()`` runs one pass directly; the tasks started by ``start()``
    call it for each coalesced request.
    """

    def __init__(
        self,
        app: Application,
        *,
        poller: GitPoller,
        renderer: ManifestRenderer,
        cluster: ClusterApi,
        settings: ControllerSettings,
        history: SyncHistory,
        events: EventLogger,
    ) -> None:
        self.app = app
        self._poller = poller
        self._renderer = renderer
        self._cluster = cluster
        self._settings = settings
        self._history = history
        self._events = events
        self._executor = SyncExecutor(cluster, settings.retry, settings.max_concurrency)

        self.inbox: asyncio.Queue[Trigger] = asyncio.Queue()
        self.state = AppState.IDLE
        self.passes = 0
        self._pending: Trigger | None = None
        self._current: _Pass | None = None
        self._last_synced: RevisionSnapshot | None = None
        self._degraded = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: list[asyncio.Task[None]] = []
        self._log = logger.bind(application=app.name)

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def last_synced(self) -> RevisionSnapshot | None:
        return self._last_synced

    def start(self, poll: bool = True) -> None:
        """Start receiver and worker tasks, plus the tickers when ``poll``."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._receive(), name=f"{self.app.name}-receiver"),
            asyncio.create_task(self._work(), name=f"{self.app.name}-worker"),
        ]
        if poll:
            self.submit(Trigger(TriggerKind.INTERVAL, reason="initial poll"))
            self._tasks += [
                asyncio.create_task(self._poll_ticker(), name=f"{self.app.name}-poll"),
                asyncio.create_task(self._drift_ticker(), name=f"{self.app.name}-drift"),
            ]
        self._log.info("Controller started", poll_interval=self._settings.poll_interval)

    async def stop(self) -> None:
        """Cancel the controller's tasks. A pass in flight is abandoned."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._log.info("Controller stopped")

    def submit(self, trigger: Trigger) -> None:
        """Post a trigger to the inbox."""
        self._idle.clear()
        self.inbox.put_nowait(trigger)

    async def wait_idle(self) -> None:
        """Wait until the inbox is drained and no pass is running or pending."""
        await self.inbox.join()
        await self._idle.wait()

    # -------------------------------------------------------------------------
    # TASKS
    # -------------------------------------------------------------------------

    async def _receive(self) -> None:
        while True:
            trigger = await self.inbox.get()
            try:
                self._accept(trigger)
            finally:
                self.inbox.task_done()

    def _accept(self, trigger: Trigger) -> None:
        current = self._current
        if (
            current is not None
            and not current.stale
            and trigger.revision
            and _is_commit(trigger.revision)
            and current.commit
            and trigger.revision != current.commit
        ):
            current.stale = True
            self._events.emit(
                self.app.name,
                "PassSuperseded",
                f"Revision {trigger.revision[:12]} arrived while syncing {current.commit[:12]}",
            )
        self._pending = trigger if self._pending is None else self._pending.merge(trigger)
        self._wakeup.set()

    async def _work(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            trigger, self._pending = self._pending, None
            if trigger is not None:
                try:
                    await self.reconcile(trigger)
                except Exception as e:
                    # The loop must outlive any single pass.
                    self._log.exception("Reconciliation pass crashed")
                    self._finish(
                        SyncResult(
                            application=self.app.name,
                            revision="",
                            status=SyncStatus.ERROR,
                            trigger=str(trigger.kind),
                            message=f"Unexpected error: {e}",
                        )
                    )
            if self._pending is None and self.inbox.empty():
                self._idle.set()

    async def _poll_ticker(self) -> None:
        while True:
            await asyncio.sleep(self._settings.poll_interval)
            self.submit(Trigger(TriggerKind.INTERVAL, reason="poll interval"))

    async def _drift_ticker(self) -> None:
        while True:
            await asyncio.sleep(self._settings.drift_check_interval)
            try:
                await self.check_drift()
            except ReconcileError as e:
                self._log.warning("Drift check failed", error=str(e))
            except Exception:
                # The ticker must outlive any single check.
                self._log.exception("Drift check crashed")

    # -------------------------------------------------------------------------
    # RECONCILIATION PASS
    # -------------------------------------------------------------------------

    async def reconcile(self, trigger: Trigger) -> SyncResult:
        """
        Run one full pass: fetch, render, diff and (policy permitting) apply.

        Fetch, render and cluster errors end the pass with an Error result;
        they are never raised to the caller.
        """
        new_correlation_id()
        current = _Pass(trigger)
        self._current = current
        started = utcnow()
        self._log.info("Reconciliation pass started", trigger=str(trigger.kind), reason=trigger.reason)
        try:
            result = await self._run_pass(current, started)
        except ReconcileError as e:
            self._log.warning("Reconciliation pass failed", error=str(e))
            result = SyncResult(
                application=self.app.name,
                revision=current.commit or "",
                status=SyncStatus.ERROR,
                trigger=str(trigger.kind),
                message=str(e),
                started_at=started,
            )
        finally:
            self._current = None
        self._finish(result)
        return result

    async def _run_pass(self, current: _Pass, started: datetime) -> SyncResult:
        app = self.app

        self._set_state(AppState.POLLING)
        tree = await self._poller.fetch(app.repo_url, app.target_revision, app.path)
        current.commit = tree.commit

        self._set_state(AppState.DIFFING)
        snapshot = self._snapshot(tree)
        live = await self._observe(snapshot)
        plan = diff(snapshot.resources, live, prune=app.sync_policy.prune)

        base: dict[str, Any] = {
            "application": app.name,
            "revision": snapshot.commit,
            "digest": snapshot.digest,
            "trigger": str(current.trigger.kind),
            "drift": plan.drift,
            "started_at": started,
        }

        if not plan.operations:
            self._last_synced = snapshot
            status = SyncStatus.OUT_OF_SYNC if plan.drift else SyncStatus.SYNCED
            return SyncResult(status=status, message=self._drift_message(plan), **base)

        if not (app.sync_policy.automated or current.trigger.kind == TriggerKind.MANUAL):
            return SyncResult(
                status=SyncStatus.OUT_OF_SYNC,
                operations=plan.operations,
                message=f"Manual sync policy: {len(plan.operations)} operation(s) waiting",
                **base,
            )

        self._set_state(AppState.SYNCING)
        report = await self._executor.execute(plan.operations, is_stale=current.is_stale)
        if report.complete:
            self._last_synced = snapshot

        status, message = self._status_for(report, plan)
        return SyncResult(
            status=status,
            operations=report.operations,
            message=message,
            superseded=report.superseded,
            finished_at=utcnow(),
            **base,
        )

    def _snapshot(self, tree: SourceTree) -> RevisionSnapshot:
        """Render, fix up namespaces, stamp the tracking label and applied fields, hash."""
        rendered = self._renderer.render(tree, self.app.values)
        desired: list[ResourceDescriptor] = []
        seen = set()
        for resource in rendered:
            if not resource.namespaced:
                # Cluster-scoped objects are listed without a namespace.
                if resource.namespace:
                    resource = resource.with_namespace("")
            elif not resource.namespace:
                resource = resource.with_namespace(self.app.destination_namespace)
            resource = with_applied_fields(resource.with_labels({TRACKING_LABEL: self.app.name}))
            if resource.key in seen:
                raise RenderError(f"Duplicate resource {resource.key}")
            seen.add(resource.key)
            desired.append(resource)
        return RevisionSnapshot.build(tree.commit, desired)

    def _kinds(self, snapshot: RevisionSnapshot) -> set[tuple[str, str]]:
        """
        One (api_version, kind) per kind.

        Listing a kind at two versions returns every object twice. The
        version the current manifests use wins over the last synced one,
        which wins over the built-in default.
        """
        versions = {kind: api_version for api_version, kind in default_kinds()}
        if self._last_synced is not None:
            versions.update((r.kind, r.api_version) for r in self._last_synced.resources)
        versions.update((r.kind, r.api_version) for r in snapshot.resources)
        return {(api_version, kind) for kind, api_version in versions.items()}

    async def _observe(self, snapshot: RevisionSnapshot) -> list[ResourceDescriptor]:
        return await self._cluster.list_managed(self.app.name, self._kinds(snapshot))

    @staticmethod
    def _drift_message(plan: DiffResult) -> str:
        if plan.drift:
            return f"{len(plan.drift)} live resource(s) not in Git; prune disabled"
        return "Live state matches Git"

    def _status_for(self, report: ExecutionReport, plan: DiffResult) -> tuple[SyncStatus, str]:
        failed = report.failed
        if failed and report.terminal_failure:
            return SyncStatus.ERROR, f"{len(failed)} operation(s) rejected"
        if failed:
            return SyncStatus.DEGRADED, (
                f"{len(failed)} operation(s) failed after retries; "
                f"phase {report.blocked_phase.name if report.blocked_phase else '?'} blocked"
            )
        if report.superseded:
            return SyncStatus.OUT_OF_SYNC, "Superseded by a newer revision"
        if plan.drift:
            return SyncStatus.OUT_OF_SYNC, self._drift_message(plan)
        return SyncStatus.SYNCED, f"{len(report.operations)} operation(s) applied"

    def _finish(self, result: SyncResult) -> None:
        self._history.record(result)
        self.passes += 1
        self._events.emit(
            self.app.name,
            "SyncCompleted",
            f"{result.status} at {result.revision[:12] or 'unknown revision'}",
            {**result.summary(), "status": str(result.status), "superseded": result.superseded},
        )
        if result.status in (SyncStatus.DEGRADED, SyncStatus.ERROR):
            self._degraded = True
        elif self._converged(result):
            self._degraded = False
        self._set_state(AppState.DEGRADED if self._degraded else AppState.IDLE)
        self._log.info(
            "Reconciliation pass finished",
            status=str(result.status),
            revision=result.revision,
            **result.summary(),
        )

    @staticmethod
    def _converged(result: SyncResult) -> bool:
        """Synced, or OutOfSync only because prune is off and orphans remain."""
        if result.status == SyncStatus.SYNCED:
            return True
        summary = result.summary()
        return (
            result.status == SyncStatus.OUT_OF_SYNC
            and not result.superseded
            and summary["pending"] == 0
            and summary["failed"] == 0
        )

    def _set_state(self, state: AppState) -> None:
        if state == self.state:
            return
        old, self.state = self.state, state
        self._events.state_changed(self.app.name, str(old), str(state))

    # -------------------------------------------------------------------------
    # DRIFT / SELF-HEAL
    # -------------------------------------------------------------------------

    async def check_drift(self) -> list[SyncOperation]:
        """
        Compare live state with the last synced snapshot.

        Only drift that a pass would act on counts (changed or deleted
        resources, and orphans when prune is on). With self-heal on, drift
        submits a ``self-heal`` trigger; otherwise it is only reported and
        waits for the next scheduled poll.

        Returns:
            The operations that would revert the drift (not executed here).
        """
        snapshot = self._last_synced
        if snapshot is None or self.state != AppState.IDLE or self._pending is not None:
            return []

        live = await self._cluster.list_managed(self.app.name, self._kinds(snapshot))
        plan = diff(snapshot.resources, live, prune=self.app.sync_policy.prune)
        if not plan.operations:
            return []

        policy = self.app.sync_policy
        heal = policy.automated and policy.self_heal
        self._events.drift_detected(self.app.name, [str(op) for op in plan.operations], heal)
        if heal:
            self.submit(Trigger(TriggerKind.SELF_HEAL, reason="live state drifted"))
        return plan.operations

    def status(self) -> dict[str, Any]:
        latest = self._history.latest(self.app.name)
        policy = self.app.sync_policy
        return {
            "name": self.app.name,
            "state": str(self.state),
            "repoURL": self.app.repo_url,
            "targetRevision": self.app.target_revision,
            "path": self.app.path,
            "destination": f"{self.app.destination_namespace}@{self.app.destination_server}",
            "syncPolicy": {
                "automated": policy.automated,
                "prune": policy.prune,
                "selfHeal": policy.self_heal,
            },
            "syncStatus": str(latest.status) if latest else "Unknown",
            "revision": latest.revision if latest else "",
            "lastResult": latest.to_dict() if latest else None,
        }


# =============================================================================
# SUPERVISOR
# =============================================================================


class Reconciler:
    """
    Runs one ApplicationController per Application.

    USAGE:
    ------
        async with ClusterClient(settings.cluster, limiter) as cluster:
            async with Reconciler(settings, cluster) as reconciler:
                reconciler.add_application(app)
                ...
                reconciler.latest_result("guestbook")
    """

    def __init__(
        self,
        settings: ControllerSettings,
        cluster: ClusterApi,
        poller: GitPoller | None = None,
        renderer: ManifestRenderer | None = None,
        events: EventLogger | None = None,
    ) -> None:
        self._settings = settings
        self._cluster = cluster
        self._poller = poller or GitPoller(
            settings.git_cache_dir, settings.retry, timeout=settings.git_timeout
        )
        self._renderer = renderer or TemplateRenderer()
        self._events = events or EventLogger(settings.event_log)
        self._history = SyncHistory(settings.history_limit)
        self._controllers: dict[str, ApplicationController] = {}
        self._started = False

    async def __aenter__(self) -> Reconciler:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    @property
    def events(self) -> EventLogger:
        return self._events

    def add_application(self, app: Application) -> ApplicationController:
        """Register ``app``; its controller starts at once if the reconciler is running."""
        if app.name in self._controllers:
            raise ValueError(f"Application '{app.name}' already registered")
        controller = ApplicationController(
            app,
            poller=self._poller,
            renderer=self._renderer,
            cluster=self._cluster,
            settings=self._settings,
            history=self._history,
            events=self._events,
        )
        self._controllers[app.name] = controller
        if self._started:
            controller.start()
        logger.info("Application registered", application=app.name, repo=app.repo_url)
        return controller

    async def remove_application(self, name: str) -> None:
        """Stop and forget a controller. Its history stays queryable."""
        controller = self.controller(name)
        await controller.stop()
        del self._controllers[name]

    def controller(self, name: str) -> ApplicationController:
        if name not in self._controllers:
            available = sorted(self._controllers)
            raise ValueError(f"Unknown application '{name}'. Available: {available}")
        return self._controllers[name]

    def applications(self) -> list[ApplicationController]:
        return [self._controllers[name] for name in sorted(self._controllers)]

    def start(self) -> None:
        self._started = True
        for controller in self._controllers.values():
            controller.start()

    async def stop(self) -> None:
        self._started = False
        await asyncio.gather(*(c.stop() for c in self._controllers.values()))

    def trigger(
        self,
        name: str,
        kind: TriggerKind = TriggerKind.WEBHOOK,
        revision: str | None = None,
        reason: str = "",
    ) -> None:
        """Deliver an external signal to one Application's inbox."""
        self.controller(name).submit(Trigger(kind, revision=revision, reason=reason))

    def latest_result(self, name: str) -> SyncResult | None:
        return self._history.latest(name)

    def history(self, name: str, limit: int | None = None) -> list[SyncResult]:
        return self._history.results(name, limit)
