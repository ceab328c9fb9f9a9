# ABOUTME: Live cluster boundary used by the observer and the sync executor
# ABOUTME: ClusterClient protocol plus an in-memory cluster for tests and dry runs

"""Live cluster boundary: read, apply, delete and list objects by ownership label."""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Iterable
from typing import Any, Protocol

import structlog

from gitops_reconciler.errors import ApplyError, ObserverError
from gitops_reconciler.models import ResourceKey
from gitops_reconciler.overlay import strategic_merge

logger = structlog.get_logger(__name__)

# (apiVersion, kind) pairs, used to scope label-selector listings
KindRef = tuple[str, str]


class ClusterClient(Protocol):
    """Operations the engine needs from a target cluster."""

    name: str

    async def read(self, key: ResourceKey) -> dict[str, Any] | None:
        """Current object, or None when it does not exist."""
        ...

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create or update. Raises ApplyError when the cluster rejects the write."""
        ...

    async def delete(self, key: ResourceKey) -> bool:
        """Delete. Returns False when the object was already gone."""
        ...

    async def list_managed(self, label: str, value: str, kinds: Iterable[KindRef]) -> list[dict[str, Any]]:
        """Every object of the given kinds whose ``label`` equals ``value``."""
        ...


class InMemoryCluster:
    """
    Cluster held in a dict.

    Server behaviour that matters to drift detection is imitated: applied
    objects gain a uid and resourceVersion, and a NotFound delete is not an
    error. Faults can be injected per resource:

    - ``rejections[key] = reason``: every apply is rejected
    - ``transient_failures[key] = n``: the next n applies fail
    - ``unavailable = True``: reads and listings fail
    - ``latency``: seconds every call sleeps (exercises timeouts)
    """

    def __init__(self, name: str = "in-cluster") -> None:
        self.name = name
        self.objects: dict[ResourceKey, dict[str, Any]] = {}
        self.rejections: dict[ResourceKey, str] = {}
        self.transient_failures: dict[ResourceKey, int] = {}
        self.unavailable = False
        self.latency = 0.0
        self.writes: list[tuple[str, ResourceKey]] = []
        self._version = 0

    async def _pause(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    async def read(self, key: ResourceKey) -> dict[str, Any] | None:
        await self._pause()
        if self.unavailable:
            raise ObserverError(f"Cluster {self.name} is unavailable", resource=str(key))
        obj = self.objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        await self._pause()
        key = ResourceKey.from_manifest(manifest)
        if key in self.rejections:
            raise ApplyError(f"admission webhook denied the request: {self.rejections[key]}",
                             reason=self.rejections[key], code=422, resource=str(key))
        if self.transient_failures.get(key, 0) > 0:
            self.transient_failures[key] -= 1
            raise ApplyError("the server is currently unable to handle the request", code=503, resource=str(key))

        previous = self.objects.get(key)
        stored = copy.deepcopy(manifest)
        metadata = stored.setdefault("metadata", {})
        self._version += 1
        metadata["uid"] = previous["metadata"]["uid"] if previous else str(uuid.uuid4())
        metadata["resourceVersion"] = str(self._version)
        self.objects[key] = stored
        self.writes.append(("apply", key))
        return copy.deepcopy(stored)

    async def delete(self, key: ResourceKey) -> bool:
        await self._pause()
        self.writes.append(("delete", key))
        return self.objects.pop(key, None) is not None

    async def list_managed(self, label: str, value: str, kinds: Iterable[KindRef]) -> list[dict[str, Any]]:
        await self._pause()
        if self.unavailable:
            raise ObserverError(f"Cluster {self.name} is unavailable")
        wanted = {kind for _, kind in kinds}
        return [
            copy.deepcopy(obj)
            for key, obj in sorted(self.objects.items())
            if key.kind in wanted and ((obj.get("metadata") or {}).get("labels") or {}).get(label) == value
        ]

    def edit(self, key: ResourceKey, patch: dict[str, Any]) -> None:
        """Out-of-band change to a live object, as a human with kubectl would make."""
        self.objects[key] = strategic_merge(self.objects[key], patch)
        self._version += 1
        self.objects[key]["metadata"]["resourceVersion"] = str(self._version)
