# ABOUTME: Structured logging with per-run correlation IDs for the GitOps reconciler
# ABOUTME: Configures structlog and records every cluster mutation in an audit trail

"""
Structured logging, correlation IDs and the mutation audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: structlog with console (development) or JSON
   (production) rendering.

2. CORRELATION IDs: every reconciliation run gets its own ID. Workers run
   many applications concurrently, so without it the lines of one run are
   interleaved with everybody else's.

3. AUDIT LOGGING: every create / update / delete the executor issues, and
   every manual trigger, is written as one JSON line.

=============================================================================
HOW A RUN IS TAGGED
=============================================================================

The loop wraps each run in ``reconciliation_context(app, trigger)``:

    with reconciliation_context("guestbook-prod", "scheduled"):
        await pipeline()

Inside the block every log line carries::

    {"correlation_id": "a1b2c3d4", "application": "guestbook-prod",
     "trigger": "scheduled", "event": "Applied resource", ...}

so ``jq 'select(.application == "guestbook-prod")'`` pulls one
application's history, and ``correlation_id`` narrows it to one pass.

asyncio tasks copy the current context when they are created, so the
per-resource tasks the sync executor fans out inherit the tags.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
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
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str:
    """
    Current correlation ID, generating one when none is set.

    Code outside a run (startup, graph resolution) still gets an ID so its
    lines stay correlatable.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding ``correlation_id`` to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


@contextmanager
def reconciliation_context(application: str, trigger: str) -> Iterator[str]:
    """
    Tag every log line of one run with a fresh correlation ID and the application.

    Yields the correlation ID. The previous ID and bindings are restored on
    exit, so nested or sequential runs on one task do not leak into each other.
    """
    cid = new_correlation_id()
    token = correlation_id.set(cid)
    with structlog.contextvars.bound_contextvars(application=application, trigger=trigger):
        try:
            yield cid
        finally:
            correlation_id.reset(token)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog. Call once at startup; calling again reconfigures.

    Processor pipeline:
    1. merge_contextvars: application / trigger bound by reconciliation_context
    2. add_log_level
    3. TimeStamper (ISO 8601)
    4. add_correlation_id
    5. JSONRenderer or ConsoleRenderer

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregators instead of coloured text.
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
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Append-only record of what the reconciler did to clusters.

    Every entry records:
    - timestamp: UTC ISO 8601
    - correlation_id: the run that issued it
    - action: "create", "update", "delete", "sync_application", ...
    - target: "<application>:<Kind/namespace/name>" or the application name
    - result: "success", "failed", "skipped", "blocked", "error", "queued"
    - details: optional context (error message, attempts, prune flag)

    Output goes to a JSON lines file when ``log_path`` is set, otherwise
    through structlog to stdout.

    Example entry:
        {"timestamp": "2024-01-15T10:30:00+00:00", "correlation_id": "abc12345",
         "action": "update", "target": "guestbook-prod:Deployment/prod/web",
         "result": "success", "details": {"attempts": 1}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_mutation(
        self,
        application: str,
        action: str,
        resource: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record one create / update / delete issued against a cluster."""
        self.log(action, f"{application}:{resource}", result, details)

    def log_trigger(self, action: str, application: str, details: dict[str, Any] | None = None) -> None:
        """Record a manual request accepted into the reconciliation queue."""
        self.log(action, application, "queued", details)

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Record a manual request refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})
