# ABOUTME: Diff/drift detector comparing desired and live resources by content hash
# ABOUTME: Classifies each identity and aggregates an application status

"""
Diff/Drift Detector.

Per identity:

    desired + live, same hash        InSync
    desired + live, different hash   OutOfSync
    desired only                     Missing   (create)
    live only, owned by this app     Orphaned  (prune candidate)
    owned by / declared by another   Conflict  (never auto-resolved)

Aggregate: Degraded if any Conflict, Synced iff everything is InSync,
OutOfSync otherwise.

COMPARING AGAINST A REAL API SERVER
-----------------------------------
Live objects carry fields nobody declared: status, uid, resourceVersion,
defaulted spec fields. Hashing them raw would report drift forever. The live
side is therefore normalised (server-managed fields dropped) and projected
onto the field paths the desired manifest declares before hashing. A human
editing any declared field still changes the hash; a server default does not.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from gitops_reconciler.graph import Claims
from gitops_reconciler.models import (
    IN_CLUSTER,
    AppStatus,
    Resource,
    ResourceKey,
    ResourceStatus,
    content_hash,
)

SERVER_MANAGED_METADATA = (
    "creationTimestamp",
    "deletionGracePeriodSeconds",
    "deletionTimestamp",
    "generation",
    "managedFields",
    "resourceVersion",
    "selfLink",
    "uid",
)
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


def normalize_live(manifest: dict[str, Any]) -> dict[str, Any]:
    """Copy of a live object without status and server-managed metadata."""
    result = copy.deepcopy(manifest)
    result.pop("status", None)
    metadata = result.get("metadata") or {}
    for name in SERVER_MANAGED_METADATA:
        metadata.pop(name, None)
    annotations = metadata.get("annotations")
    if annotations:
        annotations.pop(LAST_APPLIED_ANNOTATION, None)
        if not annotations:
            metadata.pop("annotations")
    return result


def project(live: Any, desired: Any) -> Any:
    """Restrict ``live`` to the field paths present in ``desired``."""
    if isinstance(desired, dict) and isinstance(live, dict):
        return {key: project(live[key], value) for key, value in desired.items() if key in live}
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        return [project(item, wanted) for item, wanted in zip(live, desired, strict=True)]
    return live


def live_hash(live: Resource, desired: Resource | None = None) -> str:
    normalized = normalize_live(live.manifest)
    if desired is None:
        return content_hash(normalized)
    return content_hash(project(normalized, desired.manifest))


@dataclass(frozen=True)
class ResourceDiff:
    key: ResourceKey
    status: ResourceStatus
    desired: Resource | None = None
    live: Resource | None = None
    live_hash: str | None = None
    message: str = ""


@dataclass(frozen=True)
class DiffResult:
    application: str
    items: dict[ResourceKey, ResourceDiff]

    @property
    def status(self) -> AppStatus:
        statuses = {item.status for item in self.items.values()}
        if ResourceStatus.CONFLICT in statuses:
            return AppStatus.DEGRADED
        if statuses <= {ResourceStatus.IN_SYNC}:
            return AppStatus.SYNCED
        return AppStatus.OUT_OF_SYNC

    def with_status(self, *statuses: ResourceStatus) -> list[ResourceDiff]:
        return [item for item in self.items.values() if item.status in statuses]

    @property
    def in_sync(self) -> bool:
        return self.status is AppStatus.SYNCED


def _classify(
    application: str,
    key: ResourceKey,
    desired: Resource | None,
    live: Resource | None,
    claimants: frozenset[str],
) -> ResourceDiff:
    others = sorted(claimants - {application})
    if desired is not None and others:
        return ResourceDiff(key, ResourceStatus.CONFLICT, desired, live,
                            message=f"Also declared by {', '.join(others)}")

    if desired is not None and live is not None and live.owner not in (None, application):
        return ResourceDiff(key, ResourceStatus.CONFLICT, desired, live,
                            message=f"Live resource is owned by {live.owner}")

    if desired is None:
        if live is None:
            raise ValueError(f"{key} is neither desired nor live")
        return ResourceDiff(key, ResourceStatus.ORPHANED, None, live, live_hash(live),
                            message="No longer declared")
    if live is None:
        return ResourceDiff(key, ResourceStatus.MISSING, desired, None, message="Not present in cluster")

    observed = live_hash(live, desired)
    if observed == desired.content_hash:
        return ResourceDiff(key, ResourceStatus.IN_SYNC, desired, live, observed)
    return ResourceDiff(key, ResourceStatus.OUT_OF_SYNC, desired, live, observed,
                        message="Live state differs from desired")


def detect_drift(
    application: str,
    desired: Mapping[ResourceKey, Resource],
    live: Mapping[ResourceKey, Resource],
    *,
    cluster: str = IN_CLUSTER,
    claims: Claims | None = None,
) -> DiffResult:
    """
    Compare ``desired`` and ``live`` for one application.

    ``claims`` maps (cluster, key) to every application declaring that key in
    the current graph; a key with more than one claimant is a Conflict for
    each of them.
    """
    claims = claims or {}
    items: dict[ResourceKey, ResourceDiff] = {}
    for key in sorted(set(desired) | set(live)):
        wanted, observed = desired.get(key), live.get(key)
        if wanted is None and observed is not None and observed.owner not in (None, application):
            continue
        items[key] = _classify(application, key, wanted, observed, claims.get((cluster, key), frozenset()))
    return DiffResult(application=application, items=items)
