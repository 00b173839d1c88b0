# ABOUTME: Structured logging with correlation IDs for the reconciliation controller
# ABOUTME: Configures structlog and records reconciliation events as JSON lines

"""
Structured logging, correlation IDs and the reconciliation event log.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: structlog renders every log call as key/value pairs,
   coloured for terminals or one JSON object per line for log aggregators.

2. CORRELATION IDs: every reconciliation pass gets a short random id. All
   log lines emitted while that pass runs (poll, render, diff, each apply)
   carry it, so one pass can be pulled out of interleaved output:

       jq 'select(.correlation_id == "a1b2c3d4")'

3. EVENT LOG: state transitions, completed syncs and detected drift are
   recorded as events, appended to a JSON-lines file or logged through
   structlog when no file is configured.

=============================================================================
WHY contextvars?
=============================================================================

Many Applications reconcile concurrently on one event loop. A module-level
"current pass id" would be overwritten by whichever task ran last. A
ContextVar is scoped to the asyncio task that set it: each Application's
worker task sees its own id, and tasks it spawns (the executor's per
operation tasks) inherit a copy.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Generate a fresh 8-character id and make it current."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a pass (startup, the drift checker) still gets an
    id so its log lines remain correlatable.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    structlog processor adding ``correlation_id`` to every event.

    Processors receive (logger, method_name, event_dict) and return the
    event_dict; the first two parameters are part of the API even though
    this processor does not use them.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound with structlog.contextvars
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: the current pass id
    5. Renderer: JSON lines or coloured console output

    Args:
        level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
        json_output: JSON for production, console rendering for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# EVENT LOGGER
# =============================================================================


class EventLogger:
    """
    Records reconciliation events for one or many Applications.

    EVENT REASONS:
    --------------
    - StateChanged:     the Application's state machine moved
                        (Idle -> Polling -> Diffing -> Syncing -> Idle/Degraded)
    - SyncCompleted:    a pass ended; carries status, revision and counts
    - DriftDetected:    live state diverged from the last synced state
    - PassSuperseded:   a newer revision arrived while a pass was syncing

    EXAMPLE ENTRY:
    --------------
    {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc12345",
     "application": "guestbook", "reason": "SyncCompleted",
     "message": "Synced at 4f2a...", "details": {"succeeded": 3, "failed": 0}}

    Entries go to ``log_path`` when set (appended, never truncated),
    otherwise through structlog under the "events" logger. The most recent
    entries are also kept in memory for status queries.
    """

    def __init__(self, log_path: Path | None = None, keep: int = 100) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("events")
        self._keep = keep
        self._recent: dict[str, list[dict[str, Any]]] = {}

    def emit(
        self,
        application: str,
        reason: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record one event and return the entry."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "application": application,
            "reason": reason,
            "message": message,
        }
        if details:
            entry["details"] = details

        recent = self._recent.setdefault(application, [])
        recent.append(entry)
        del recent[: -self._keep]

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "event",
                application=application,
                reason=reason,
                message=message,
                details=details,
            )
        return entry

    def recent(self, application: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent events for ``application``, oldest first."""
        return list(self._recent.get(application, [])[-limit:])

    # -------------------------------------------------------------------------
    # CONVENIENCE METHODS
    # -------------------------------------------------------------------------

    def state_changed(self, application: str, old: str, new: str) -> None:
        self.emit(application, "StateChanged", f"{old} -> {new}", {"from": old, "to": new})

    def drift_detected(self, application: str, resources: list[str], self_heal: bool) -> None:
        action = "self-heal triggered" if self_heal else "self-heal disabled, waiting for next poll"
        self.emit(
            application,
            "DriftDetected",
            f"{len(resources)} resource(s) drifted; {action}",
            {"resources": resources, "selfHeal": self_heal},
        )
