# ABOUTME: Sync executor applying ordered operations phase by phase
# ABOUTME: Bounded concurrency inside a phase, retry of transient errors, stale-pass cutoff

"""
Sync Executor.

=============================================================================
PHASES AND BARRIERS
=============================================================================

Operations arrive sorted by phase (see differ.py). The executor runs them
phase by phase:

    phase 0 (Namespaces)   [op, op]        <- concurrently, at most N at once
    ---------------- barrier: every op above has finished ----------------
    phase 2 (ConfigMaps)   [op, op, op]
    ---------------- barrier ----------------
    phase 3 (workloads)    [op]

A failed operation does not cancel its siblings in the same phase; they
run to completion and record their own outcomes. It does stop the pass at
the barrier: later phases are not started and their operations stay
Pending.

=============================================================================
RETRIES
=============================================================================

ApplyConflict and ClusterUnavailable are retried with exponential backoff
up to RetrySettings.attempts. Updates re-read the live resourceVersion on
every attempt, so a conflict caused by a concurrent writer resolves itself.
AdmissionRejected and other terminal errors fail the operation at once.

=============================================================================
SUPERSEDED PASSES
=============================================================================

``is_stale`` is consulted before each phase. When a newer revision has
arrived, operations already in flight finish but no new phase starts.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from gitops_reconciler.differ import order_operations
from gitops_reconciler.errors import AlreadyExists, ReconcileError, ResourceNotFound, is_retryable
from gitops_reconciler.models import (
    OperationState,
    OperationType,
    ResourceDescriptor,
    SyncOperation,
    SyncPhase,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from gitops_reconciler.config import RetrySettings
    from gitops_reconciler.utils.cluster import ClusterApi

logger = structlog.get_logger(__name__)


@dataclass
class ExecutionReport:
    """Outcome of one executor run."""

    operations: list[SyncOperation] = field(default_factory=list)
    superseded: bool = False
    blocked_phase: SyncPhase | None = None

    @property
    def failed(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.state == OperationState.FAILED]

    @property
    def terminal_failure(self) -> bool:
        return any(op.terminal for op in self.failed)

    @property
    def complete(self) -> bool:
        return all(op.state == OperationState.SUCCEEDED for op in self.operations)


class SyncExecutor:
    """Applies SyncOperations against a cluster API."""

    def __init__(
        self,
        cluster: ClusterApi,
        retry: RetrySettings,
        max_concurrency: int = 10,
    ) -> None:
        self._cluster = cluster
        self._retry = retry
        self._max_concurrency = max_concurrency

    async def execute(
        self,
        operations: Iterable[SyncOperation],
        is_stale: Callable[[], bool] | None = None,
    ) -> ExecutionReport:
        """
        Apply ``operations`` phase by phase.

        Args:
            operations: Operations to apply; re-sorted by phase before running.
            is_stale: Returns True once this pass has been superseded.

        Returns:
            ExecutionReport; every operation carries its final state.
        """
        ordered = order_operations(operations)
        report = ExecutionReport(operations=ordered)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        for phase, group in itertools.groupby(ordered, key=lambda op: op.phase):
            batch = list(group)
            if is_stale is not None and is_stale():
                logger.info("Pass superseded, not starting phase", phase=phase.name)
                report.superseded = True
                break

            logger.debug("Starting phase", phase=phase.name, operations=len(batch))
            await asyncio.gather(*(self._run(op, semaphore) for op in batch))

            failed = [op for op in batch if op.state == OperationState.FAILED]
            if failed:
                logger.warning(
                    "Phase failed, later phases blocked",
                    phase=phase.name,
                    failed=[str(op) for op in failed],
                )
                report.blocked_phase = phase
                break

        return report

    async def _run(self, op: SyncOperation, semaphore: asyncio.Semaphore) -> None:
        log = logger.bind(operation=str(op))
        async with semaphore:
            try:
                await self._apply_with_retry(op)
            except ReconcileError as e:
                op.state = OperationState.FAILED
                op.message = str(e)
                op.terminal = not e.retryable
                log.warning("Operation failed", error=str(e), attempts=op.attempts, terminal=op.terminal)
                return
        op.state = OperationState.SUCCEEDED
        op.message = f"{op.type.lower()}d"
        log.info("Operation succeeded", attempts=op.attempts)

    async def _apply_with_retry(self, op: SyncOperation) -> None:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self._retry.attempts),
            wait=wait_exponential(multiplier=self._retry.backoff_base, max=self._retry.backoff_max),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                op.attempts = attempt.retry_state.attempt_number
                await self._apply(op)

    async def _apply(self, op: SyncOperation) -> None:
        if op.type == OperationType.CREATE:
            try:
                await self._cluster.create(op.resource)
            except AlreadyExists:
                await self._update(op.resource)
        elif op.type == OperationType.UPDATE:
            await self._update(op.resource)
        else:
            try:
                await self._cluster.delete(op.resource)
            except ResourceNotFound:
                logger.debug("Already deleted", resource=str(op.resource.key))

    async def _update(self, resource: ResourceDescriptor) -> None:
        """Replace ``resource`` using the live resourceVersion (optimistic concurrency)."""
        try:
            live = await self._cluster.get(resource)
        except ResourceNotFound:
            await self._cluster.create(resource)
            return
        manifest = resource.to_manifest()
        if live.resource_version:
            manifest.setdefault("metadata", {})["resourceVersion"] = live.resource_version
        await self._cluster.replace(ResourceDescriptor.from_manifest(manifest))
