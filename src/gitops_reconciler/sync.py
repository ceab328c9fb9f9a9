# ABOUTME: Sync executor converging live state to desired state for one application
# ABOUTME: Dependency-ordered waves, bounded fan-out and tenacity retries per cluster write

"""
Sync Executor.

Plans create (Missing), update (OutOfSync) and delete (Orphaned, only when
prune is allowed) actions from a DiffResult and runs them against the
application's destination cluster.

ORDERING
--------
Applies are grouped by (sync wave, kind rank) and groups run in ascending
order: namespaces and CRDs before the objects that live in them, config
before the workloads that mount it. Actions inside one group are independent
and run concurrently, bounded by ``concurrency``. Prunes run after every
apply, in reverse order.

FAILURES
--------
Each action is retried on ApplyError with exponential backoff up to
``attempts`` times. A failure is recorded against that resource only; the
remaining actions of the run proceed. There is no rollback: the next run
resumes from whatever state the cluster is in.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.diff import DiffResult, ResourceDiff
from gitops_reconciler.errors import ApplyError
from gitops_reconciler.models import (
    SYNC_WAVE_ANNOTATION,
    ActionOutcome,
    ActionResult,
    ActionType,
    Resource,
    ResourceKey,
    ResourceStatus,
    RunOutcome,
    SyncAction,
)
from gitops_reconciler.utils.cluster import ClusterClient
from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

KIND_ORDER = (
    "Namespace",
    "CustomResourceDefinition",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)
_KIND_RANK = {kind: rank for rank, kind in enumerate(KIND_ORDER)}


def kind_rank(kind: str) -> int:
    """Position in the apply order; custom resources go last."""
    return _KIND_RANK.get(kind, len(KIND_ORDER))


def sync_wave(resource: Resource | None) -> int:
    if resource is None:
        return 0
    annotations = (resource.manifest.get("metadata") or {}).get("annotations") or {}
    try:
        return int(annotations.get(SYNC_WAVE_ANNOTATION, 0))
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid sync wave", resource=str(resource.key),
                       value=annotations.get(SYNC_WAVE_ANNOTATION))
        return 0


def plan_actions(diff: DiffResult, *, prune: bool) -> tuple[list[SyncAction], list[ResourceDiff]]:
    """
    Actions needed to converge ``diff``, plus the items deliberately left alone.

    InSync items need nothing. Conflicts are never acted on. Orphans are
    deleted only when ``prune`` is true.
    """
    actions: list[SyncAction] = []
    skipped: list[ResourceDiff] = []
    for item in diff.items.values():
        if item.status is ResourceStatus.MISSING:
            action_type = ActionType.CREATE
        elif item.status is ResourceStatus.OUT_OF_SYNC:
            action_type = ActionType.UPDATE
        elif item.status is ResourceStatus.ORPHANED and prune:
            action_type = ActionType.DELETE
        elif item.status in (ResourceStatus.ORPHANED, ResourceStatus.CONFLICT):
            skipped.append(item)
            continue
        else:
            continue
        resource = item.desired if action_type is not ActionType.DELETE else item.live
        actions.append(
            SyncAction(
                type=action_type,
                key=item.key,
                resource=resource,
                wave=sync_wave(resource),
                rank=kind_rank(item.key.kind),
            )
        )
    return actions, skipped


@dataclass
class SyncResult:
    application: str
    results: list[ActionResult] = field(default_factory=list)
    skipped: list[ResourceDiff] = field(default_factory=list)

    @property
    def failed(self) -> list[ActionResult]:
        return [r for r in self.results if r.outcome is ActionOutcome.FAILED]

    @property
    def succeeded(self) -> list[ActionResult]:
        return [r for r in self.results if r.outcome is ActionOutcome.SUCCEEDED]

    @property
    def outcome(self) -> RunOutcome:
        return RunOutcome.FAILED if self.failed else RunOutcome.SUCCEEDED

    def result_for(self, key: ResourceKey) -> ActionResult | None:
        return next((r for r in self.results if r.action.key == key), None)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ApplyError) and error.retryable


class SyncExecutor:
    def __init__(
        self,
        *,
        attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        timeout: float = 30.0,
        concurrency: int = 8,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._attempts = attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._timeout = timeout
        self._concurrency = concurrency
        self._audit = audit_logger or AuditLogger()

    async def execute(
        self,
        application: str,
        diff: DiffResult,
        cluster: ClusterClient,
        *,
        prune: bool,
    ) -> SyncResult:
        """Converge ``cluster`` towards ``diff``'s desired side."""
        actions, skipped = plan_actions(diff, prune=prune)
        result = SyncResult(application=application, skipped=skipped)

        for item in skipped:
            if item.status is ResourceStatus.ORPHANED:
                logger.info("Prune disabled, leaving orphaned resource", resource=str(item.key))
            else:
                logger.warning("Skipping conflicting resource", resource=str(item.key), reason=item.message)

        if not actions:
            return result

        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(action: SyncAction) -> ActionResult:
            async with semaphore:
                return await self._run(application, action, cluster)

        applies = sorted((a for a in actions if a.type is not ActionType.DELETE), key=lambda a: (a.wave, a.rank))
        deletes = sorted((a for a in actions if a.type is ActionType.DELETE), key=lambda a: (a.wave, a.rank),
                         reverse=True)

        for ordered in (applies, deletes):
            for _, group in itertools.groupby(ordered, key=lambda a: (a.wave, a.rank)):
                result.results.extend(await asyncio.gather(*(bounded(a) for a in group)))

        logger.info(
            "Sync finished",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(skipped),
        )
        return result

    async def _run(self, application: str, action: SyncAction, cluster: ClusterClient) -> ActionResult:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(multiplier=self._backoff_base, max=self._backoff_max),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._perform(action, cluster)
        except ApplyError as e:
            logger.warning("Sync action failed", action=str(action.type), resource=str(action.key),
                           attempts=attempts, reason=e.reason)
            self._audit.log_mutation(application, str(action.type), str(action.key), "failed",
                                     {"error": e.reason, "attempts": attempts})
            return ActionResult(action, ActionOutcome.FAILED, e.reason, attempts)

        logger.info("Sync action applied", action=str(action.type), resource=str(action.key))
        self._audit.log_mutation(application, str(action.type), str(action.key), "success", {"attempts": attempts})
        return ActionResult(action, ActionOutcome.SUCCEEDED, "", attempts)

    async def _perform(self, action: SyncAction, cluster: ClusterClient) -> None:
        try:
            if action.type is ActionType.DELETE:
                await asyncio.wait_for(cluster.delete(action.key), timeout=self._timeout)
            elif action.resource is None:
                raise ValueError(f"{action.type} of {action.key} has no manifest")
            else:
                await asyncio.wait_for(cluster.apply(action.resource.manifest), timeout=self._timeout)
        except TimeoutError as e:
            raise ApplyError(f"{action.type} of {action.key} timed out", reason="timeout",
                             resource=str(action.key)) from e
