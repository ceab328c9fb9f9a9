# ABOUTME: Error taxonomy for the GitOps reconciler
# ABOUTME: Separates retryable boundary failures from declaration errors that wait for a fix

"""
Reconciler exceptions.

Every failure the engine can surface maps onto one of five families:

    SourceError       fetch / revision failures            retried with backoff
    CompositionError  bad overlay or manifest              fatal until the source changes
    GraphError        cycle / duplicate application        fatal for the whole resolution
    ConflictError     resource owned by another app        surfaced, never auto-resolved
    ApplyError        cluster rejected a write             retried, then surfaced as Failed

The ``retryable`` class attribute is what the reconciliation loop consults
when deciding between a backoff retry and waiting for the next regular tick.
"""

from __future__ import annotations

from typing import Any


class ReconcilerError(Exception):
    """
    Base class for reconciler failures.

    Carries the application and resource the failure is attributed to so the
    status surface can show the most recent error per affected resource.

    USAGE:
    ------
    try:
        await builder.build(spec)
    except ReconcilerError as e:
        print(f"{e.app}: {e.message}")
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        app: str | None = None,
        resource: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.app = app
        self.resource = resource
        self.details = details or {}
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.resource:
            base = f"{self.resource}: {base}"
        if self.app:
            base = f"[{self.app}] {base}"
        return base


# -----------------------------------------------------------------------------
# Manifest source
# -----------------------------------------------------------------------------


class SourceError(ReconcilerError):
    """Fetching the declared source failed."""

    retryable = True


class SourceUnavailable(SourceError):
    """Repository unreachable, timed out, or answered with a server error."""


class RevisionNotFound(SourceError):
    """Repository reachable but the requested revision does not exist."""


# -----------------------------------------------------------------------------
# Composition
# -----------------------------------------------------------------------------


class CompositionError(ReconcilerError):
    """The declared manifests or overlay cannot be composed."""


class TargetNotFoundError(CompositionError):
    """A transformation targets an identity absent from base and prior additions."""


class ManifestParseError(CompositionError):
    """A source document is not valid YAML/JSON or not a Kubernetes object."""


class DestinationError(CompositionError):
    """The application targets a cluster that is not configured."""


# -----------------------------------------------------------------------------
# Application graph
# -----------------------------------------------------------------------------


class GraphError(ReconcilerError):
    """The application hierarchy cannot be resolved."""


class CycleError(GraphError):
    """An application is reachable from itself."""

    def __init__(self, path: list[str]) -> None:
        self.path = list(path)
        super().__init__(
            "Application cycle detected: " + " -> ".join(self.path),
            app=self.path[0] if self.path else None,
        )


class DuplicateIdentityError(GraphError):
    """The same application name is declared with different source or destination."""


# -----------------------------------------------------------------------------
# Cluster
# -----------------------------------------------------------------------------


class ConflictError(ReconcilerError):
    """A resource identity is claimed by more than one application."""


class ObserverError(ReconcilerError):
    """Reading live state failed."""

    retryable = True


class ApplyError(ReconcilerError):
    """The cluster rejected or did not acknowledge a write."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        reason: str = "",
        code: int | None = None,
        app: str | None = None,
        resource: str | None = None,
    ) -> None:
        self.reason = reason or message
        self.code = code
        super().__init__(message, app=app, resource=resource, details={"reason": self.reason})
