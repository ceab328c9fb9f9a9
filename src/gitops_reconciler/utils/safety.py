# ABOUTME: Guards on operator-initiated sync and refresh requests
# ABOUTME: Read-only and destructive switches, per-application trigger budgets, prune confirmation, masking

"""
Safety guards for manual triggers.

Automation declared in Git (autoSync, selfHeal, prune) is never filtered
here. The guard only decides whether a request arriving through the MCP
surface may enter the reconciliation queue:

    read       -> trigger budget only
    sync/refresh -> read-only switch, destination cluster, trigger budget
    prune      -> the above, then the destructive switch, then confirm_name

Each refusal is a value (``OperationBlocked`` or ``ConfirmationRequired``)
that the server renders for the agent and records in the audit log.
"""

from __future__ import annotations

import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.models import IN_CLUSTER

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gitops_reconciler.config import SecuritySettings

logger = structlog.get_logger(__name__)

# Orphans listed in a prune confirmation before the list is summarised
MAX_LISTED_ORPHANS = 10

SECRET_PATTERNS = [
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"), r"\1***MASKED***"),
    (re.compile(r"(?i)((?:password|passwd|token|secret|api[_-]?key)\s*[=:]\s*)\S+"), r"\1***MASKED***"),
    (re.compile(r"(https?://)[^/\s:@]+:[^/\s@]+@"), r"\1***MASKED***@"),
]


def mask_text(text: str) -> str:
    """Mask credentials that leak into error messages (tokens, passwords, URL userinfo)."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


@dataclass
class OperationBlocked:
    """A manual request refused by configuration."""

    operation: str
    reason: str
    setting: str
    application: str | None = None

    def format_message(self) -> str:
        lines = [f"OPERATION BLOCKED: {self.operation}"]
        if self.application:
            lines.append(f"Application: {self.application}")
        lines.extend([
            f"Reason: {self.reason}",
            f"Setting: {self.setting}",
            f"To allow it, set {self.setting}=false in the reconciler environment",
        ])
        return "\n".join(lines)


@dataclass
class ConfirmationRequired:
    """A prune request that must be repeated with confirm=true and the application name."""

    operation: str
    application: str
    orphans: list[str] = field(default_factory=list)

    @property
    def instructions(self) -> str:
        return f"To proceed, set confirm=true AND confirm_name='{self.application}'"

    def format_message(self) -> str:
        """Format the request, listing what the prune would delete as of the last diff."""
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Application: {self.application}",
            "Impact: live resources no longer declared in Git will be DELETED from the cluster",
        ]
        if self.orphans:
            lines.extend(["", f"Orphaned resources ({len(self.orphans)}):"])
            lines.extend(f"  - {key}" for key in self.orphans[:MAX_LISTED_ORPHANS])
            if len(self.orphans) > MAX_LISTED_ORPHANS:
                lines.append(f"  ... and {len(self.orphans) - MAX_LISTED_ORPHANS} more")
        else:
            lines.extend(["", "No orphaned resources at the last diff; the sync re-diffs before deleting."])
        lines.extend(["", self.instructions])
        return "\n".join(lines)


class TriggerBudget:
    """
    Sliding-window call budget per key.

    Writes are keyed by operation and application, so an agent retrying one
    application cannot starve manual triggers for the others.
    """

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, deque[float]] = defaultdict(deque)

    def allow(self, key: str) -> bool:
        """Spend one call from ``key``'s budget; False when it is exhausted."""
        now = time.monotonic()
        calls = self._calls[key]
        while calls and now - calls[0] >= self._window:
            calls.popleft()

        if len(calls) >= self._max_calls:
            logger.warning("Trigger budget exhausted", key=key, calls=len(calls), window=self._window)
            return False

        calls.append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._calls.clear()
        else:
            self._calls.pop(key, None)


class SafetyGuard:
    """Decides whether a manual request may enter the reconciliation queue."""

    def __init__(self, settings: SecuritySettings, home_cluster: str = IN_CLUSTER) -> None:
        self._settings = settings
        self._home_cluster = home_cluster
        self._budget = TriggerBudget(settings.rate_limit_calls, settings.rate_limit_window)

    def _over_budget(self, operation: str, key: str, application: str | None = None) -> OperationBlocked | None:
        if self._budget.allow(key):
            return None
        return OperationBlocked(
            operation=operation,
            reason=f"More than {self._settings.rate_limit_calls} calls in {self._settings.rate_limit_window}s",
            setting="MCP_RATE_LIMIT_CALLS",
            application=application,
        )

    def check_read(self, operation: str) -> OperationBlocked | None:
        return self._over_budget(operation, f"read:{operation}")

    def check_trigger(self, operation: str, application: str, cluster: str | None = None) -> OperationBlocked | None:
        """
        Guard a sync or refresh request for ``application``.

        ``cluster`` is the application's destination in the current graph,
        or None when the application is unknown (the reconciler reports that).
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Reconciler is running in read-only mode",
                setting="MCP_READ_ONLY",
                application=application,
            )

        if self._settings.single_cluster and cluster is not None and cluster != self._home_cluster:
            return OperationBlocked(
                operation=operation,
                reason=f"Destination cluster '{cluster}' is outside single-cluster mode ({self._home_cluster})",
                setting="MCP_SINGLE_CLUSTER",
                application=application,
            )

        return self._over_budget(operation, f"write:{operation}:{application}", application)

    def check_prune(
        self,
        application: str,
        *,
        confirmed: bool = False,
        confirm_name: str | None = None,
        orphans: Sequence[str] = (),
    ) -> OperationBlocked | ConfirmationRequired | None:
        """Guard the prune half of a manual sync; call after ``check_trigger`` passed."""
        if self._settings.disable_destructive:
            return OperationBlocked(
                operation="sync_with_prune",
                reason="Destructive operations are disabled",
                setting="MCP_DISABLE_DESTRUCTIVE",
                application=application,
            )

        if not confirmed or confirm_name != application:
            return ConfirmationRequired("sync_with_prune", application, sorted(orphans))

        logger.info("Prune confirmed", application=application, orphans=len(orphans))
        return None

    def mask(self, text: str) -> str:
        return mask_text(text) if self._settings.mask_secrets else text
