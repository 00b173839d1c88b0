# ABOUTME: Bounded per-Application history of Sync Results
# ABOUTME: The latest entry always reflects the most recent completed pass

"""Sync Result history, queryable by Application name."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitops_reconciler.models import SyncResult


class SyncHistory:
    """Keeps the newest ``limit`` results per Application, oldest first."""

    def __init__(self, limit: int = 10) -> None:
        self._limit = limit
        self._results: dict[str, deque[SyncResult]] = {}

    def record(self, result: SyncResult) -> None:
        entries = self._results.setdefault(result.application, deque(maxlen=self._limit))
        entries.append(result)

    def latest(self, application: str) -> SyncResult | None:
        entries = self._results.get(application)
        return entries[-1] if entries else None

    def results(self, application: str, limit: int | None = None) -> list[SyncResult]:
        """Results for ``application``, oldest first, optionally only the last ``limit``."""
        entries = list(self._results.get(application, ()))
        return entries[-limit:] if limit else entries

    def forget(self, application: str) -> None:
        self._results.pop(application, None)
