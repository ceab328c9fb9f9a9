# ABOUTME: Live-state observer reading every resource an application owns from its cluster
# ABOUTME: Reads desired identities directly and lists tracking-labelled objects to find orphans

"""Live-State Observer."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

import structlog

from gitops_reconciler.errors import ObserverError
from gitops_reconciler.models import DEFAULT_TRACKING_LABEL, Resource, ResourceKey
from gitops_reconciler.utils.cluster import ClusterClient, KindRef

logger = structlog.get_logger(__name__)


def encode_kind(ref: KindRef) -> str:
    api_version, kind = ref
    return f"{kind}|{api_version}"


def decode_kind(value: str) -> KindRef:
    kind, _, api_version = value.partition("|")
    return api_version, kind


class LiveStateObserver:
    """
    Collects the live counterpart of an application's resources.

    Two sources are merged: a direct read of every desired identity (finds
    objects another application or a human created under that name), and a
    label-selector listing of every kind the application has ever owned
    (finds objects no longer declared, i.e. prune candidates).
    """

    def __init__(self, *, tracking_label: str = DEFAULT_TRACKING_LABEL, timeout: float = 30.0) -> None:
        self._tracking_label = tracking_label
        self._timeout = timeout

    async def observe(
        self,
        application: str,
        desired: Sequence[Resource],
        cluster: ClusterClient,
        *,
        known_kinds: Iterable[KindRef] = (),
    ) -> dict[ResourceKey, Resource]:
        """
        Live resources keyed by identity.

        Raises:
            ObserverError: a read or listing failed or timed out.
        """
        kinds = {(r.key.api_version, r.key.kind) for r in desired} | set(known_kinds)
        try:
            reads = await asyncio.wait_for(
                asyncio.gather(*(cluster.read(r.key) for r in desired)),
                timeout=self._timeout,
            )
            managed = await asyncio.wait_for(
                cluster.list_managed(self._tracking_label, application, kinds),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            raise ObserverError(f"Reading live state from {cluster.name} timed out", app=application) from e
        except ObserverError as e:
            if e.app is None:
                e.app = application
            raise

        live: dict[ResourceKey, Resource] = {}
        for manifest in [*(m for m in reads if m is not None), *managed]:
            resource = Resource.from_manifest(manifest, tracking_label=self._tracking_label)
            live[resource.key] = resource

        logger.debug("Observed live state", application=application, cluster=cluster.name, live=len(live))
        return live
