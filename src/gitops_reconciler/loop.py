# ABOUTME: Reconciliation loop scheduling every application of the resolved graph
# ABOUTME: Worker pool with one active run per application, backoff retries, self-heal and cancellation

"""
Reconciliation Loop.

=============================================================================
WHAT HAPPENS ON A TICK
=============================================================================

1. RESOLVE the application graph from the root. A GraphError keeps the
   previous graph, schedules nothing and marks the root Degraded.
2. SWAP the new graph in atomically; applications that disappeared are
   retired (in-flight run cancelled, retries dropped, optional cascade
   delete of everything they own).
3. DISPATCH the graph depth by depth: the root's own resources converge
   before its children run, each level waiting for the previous one.

=============================================================================
ONE RUN (per application)
=============================================================================

    Pending -> Resolving -> Diffing -> Syncing -> Settled
                  ^                                  |
                  +------ next tick / self-heal -----+

Each phase change is published as a new SyncState. Syncing is skipped when
there is nothing to do or the policy does not allow automatic sync.

=============================================================================
TRIGGERS AND WORKERS
=============================================================================

Scheduled ticks, manual syncs, self-heal and backoff retries all enter the
same queue as ``Trigger`` objects. ``workers`` tasks drain it. At most one
run per application is active; a trigger for a busy application is deferred
and coalesced with any other trigger waiting for it, then runs when the
active one finishes.

Retryable failures (source, observer, exhausted apply retries) schedule a
retry after ``min(backoff_base * 2**(failures-1), backoff_max)`` seconds.
Declaration errors wait for the next regular tick.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

import structlog

from gitops_reconciler.builder import DesiredState, DesiredStateBuilder
from gitops_reconciler.config import ReconcilerSettings
from gitops_reconciler.diff import DiffResult, detect_drift
from gitops_reconciler.errors import (
    ApplyError,
    ConflictError,
    DestinationError,
    GraphError,
    ObserverError,
    ReconcilerError,
)
from gitops_reconciler.graph import AppNode, Claims, GraphResolver, ResolvedGraph
from gitops_reconciler.models import (
    ActionOutcome,
    ApplicationSpec,
    AppStatus,
    ReconciliationRun,
    ResourceKey,
    ResourceState,
    ResourceStatus,
    RunOutcome,
    SyncPhase,
    SyncState,
    TriggerReason,
)
from gitops_reconciler.observer import LiveStateObserver, decode_kind, encode_kind
from gitops_reconciler.overlay import MergeFunction, strategic_merge
from gitops_reconciler.state import StateStore
from gitops_reconciler.sync import SyncExecutor, SyncResult, kind_rank
from gitops_reconciler.utils.cluster import ClusterClient
from gitops_reconciler.utils.logging import AuditLogger, reconciliation_context
from gitops_reconciler.utils.source import ManifestSource

logger = structlog.get_logger(__name__)

_PRIORITY = {
    TriggerReason.SCHEDULED: 0,
    TriggerReason.RETRY: 1,
    TriggerReason.SELF_HEAL: 2,
    TriggerReason.MANUAL: 3,
}
_DRIFT = (ResourceStatus.MISSING, ResourceStatus.OUT_OF_SYNC, ResourceStatus.ORPHANED)


@dataclass(frozen=True)
class Trigger:
    """
    A request to reconcile one application.

    ``force`` makes the run sync even when the policy has autoSync off
    (manual sync) and ``prune`` asks for deletions regardless of the policy.
    ``automatic`` is False only for a manual sync on its own; once merged with
    a policy-driven trigger the run also prunes when the policy says so.
    """

    application: str
    reason: TriggerReason = TriggerReason.SCHEDULED
    force: bool = False
    prune: bool = False
    automatic: bool = True

    def merged(self, other: Trigger) -> Trigger:
        reason = max(self.reason, other.reason, key=_PRIORITY.__getitem__)
        return replace(
            self,
            reason=reason,
            force=self.force or other.force,
            prune=self.prune or other.prune,
            automatic=self.automatic or other.automatic,
        )


@dataclass
class _Entry:
    trigger: Trigger
    waiters: list[asyncio.Future[ReconciliationRun | None]] = field(default_factory=list)

    def absorb(self, other: _Entry) -> None:
        self.trigger = self.trigger.merged(other.trigger)
        self.waiters.extend(other.waiters)

    def resolve(self, run: ReconciliationRun | None) -> None:
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_result(run)


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    return min(base * 2 ** max(failures - 1, 0), maximum)


class Reconciler:
    """
    Process-wide scheduler for the application hierarchy under one root.

    USAGE:
    ------
        async with Reconciler(root, source, {"in-cluster": cluster}, settings=settings) as reconciler:
            await reconciler.tick()
            reconciler.store.get("guestbook-prod")
    """

    def __init__(
        self,
        root: ApplicationSpec,
        source: ManifestSource,
        clusters: Mapping[str, ClusterClient],
        *,
        settings: ReconcilerSettings | None = None,
        store: StateStore | None = None,
        audit_logger: AuditLogger | None = None,
        merge: MergeFunction = strategic_merge,
    ) -> None:
        self._settings = settings or ReconcilerSettings()
        self._root = root
        self._clusters = dict(clusters)
        self.store = store or StateStore(self._settings.state_snapshot)
        self._audit = audit_logger or AuditLogger(self._settings.security.audit_log)

        s = self._settings
        self._builder = DesiredStateBuilder(source, tracking_label=s.tracking_label, timeout=s.call_timeout,
                                            merge=merge)
        self._resolver = GraphResolver(self._builder)
        self._observer = LiveStateObserver(tracking_label=s.tracking_label, timeout=s.call_timeout)
        self._executor = SyncExecutor(
            attempts=s.apply_attempts,
            backoff_base=s.backoff_base,
            backoff_max=s.backoff_max,
            timeout=s.call_timeout,
            concurrency=s.sync_concurrency,
            audit_logger=self._audit,
        )

        self._graph: ResolvedGraph | None = None
        self._graph_error: GraphError | None = None
        self._claims: Claims = {}
        self._held: dict[str, AppNode] = {}

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: dict[str, _Entry] = {}
        self._deferred: dict[str, _Entry] = {}
        self._active: dict[str, asyncio.Task[ReconciliationRun]] = {}
        self._retries: dict[str, asyncio.TimerHandle] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    @property
    def graph(self) -> ResolvedGraph | None:
        return self._graph

    @property
    def graph_error(self) -> GraphError | None:
        return self._graph_error

    @property
    def root(self) -> ApplicationSpec:
        return self._root

    async def __aenter__(self) -> Reconciler:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Restore the snapshot and start the workers and the self-heal probe."""
        if self._tasks:
            return
        self.store.load()
        self._shutdown.clear()
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"reconcile-worker-{i}")
            for i in range(self._settings.workers)
        ]
        self._tasks.append(asyncio.create_task(self._self_heal_loop(), name="self-heal-probe"))
        logger.info("Reconciler started", root=self._root.name, workers=self._settings.workers)

    async def stop(self) -> None:
        self._shutdown.set()
        for handle in self._retries.values():
            handle.cancel()
        self._retries.clear()
        running = [*self._tasks, *self._active.values()]
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        self._tasks = []
        for entry in [*self._pending.values(), *self._deferred.values()]:
            entry.resolve(None)
        self._pending.clear()
        self._deferred.clear()
        logger.info("Reconciler stopped", root=self._root.name)

    async def run_forever(self) -> None:
        """Tick every ``resync_interval`` seconds (or sooner on refresh) until stopped."""
        await self.start()
        while not self._shutdown.is_set():
            # cleared first so a refresh during the tick starts the next one
            self._wake.clear()
            try:
                await self.tick()
            except Exception:
                logger.exception("Reconciliation tick failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._settings.resync_interval)

    def refresh(self) -> None:
        """Start the next tick now instead of waiting for the interval."""
        self._wake.set()

    # -------------------------------------------------------------------------
    # TICK
    # -------------------------------------------------------------------------

    async def tick(self) -> ResolvedGraph | None:
        """
        Resolve the graph and reconcile every application, parents first.

        Returns the new graph, or None when resolution failed.
        """
        try:
            graph = await self._resolver.resolve(self._root)
        except GraphError as e:
            self._on_graph_error(e)
            return None

        previous = self._graph
        self._graph, self._graph_error, self._claims = graph, None, graph.claims()
        known = {**self._held, **({node.name: node for node in previous.nodes} if previous else {})}
        held = self._held_back(graph, known)
        self._held = {name: known[name] for name in held if name in known}
        for node in known.values():
            if node.name not in graph and node.name not in held:
                await self._retire(node)
        for stale in set(self.store.names()) - set(graph.names()) - held:
            # restored from a snapshot but no longer declared
            self.store.remove(stale)

        for level in graph.levels():
            waiters = [self.enqueue(Trigger(node.name)) for node in level]
            await asyncio.gather(*waiters)
        return graph

    def _held_back(self, graph: ResolvedGraph, known: Mapping[str, AppNode]) -> set[str]:
        """Applications missing from ``graph`` only because an ancestor failed to build."""
        failed = {node.name for node in graph.nodes if node.error is not None}
        if not failed:
            return set()
        parents = {name: state.parent for name, state in self.store.all().items()}
        parents.update({name: node.parent for name, node in known.items()})
        held = set()
        for name in parents.keys() - set(graph.names()):
            seen = {name}
            parent = parents.get(name)
            while parent is not None and parent not in seen:
                if parent in failed:
                    held.add(name)
                    break
                seen.add(parent)
                parent = parents.get(parent)
        if held:
            logger.warning("Keeping applications whose parent failed to build", applications=sorted(held))
        return held

    def _on_graph_error(self, error: GraphError) -> None:
        self._graph_error = error
        logger.error("Application graph resolution failed", error=str(error))
        for handle in self._retries.values():
            handle.cancel()
        self._retries.clear()
        root = self._root.name
        state = self.store.get(root) or SyncState(application=root)
        self._publish(
            state,
            phase=SyncPhase.SETTLED,
            status=AppStatus.DEGRADED,
            last_outcome=RunOutcome.ERROR,
            last_reconciled_at=datetime.now(UTC),
            errors=[str(error)],
            next_retry_at=None,
        )

    async def _retire(self, node: AppNode) -> None:
        name = node.name
        logger.info("Application removed from graph", application=name)
        handle = self._retries.pop(name, None)
        if handle is not None:
            handle.cancel()
        for entries in (self._pending, self._deferred):
            entry = entries.pop(name, None)
            if entry is not None:
                entry.resolve(None)
        task = self._active.get(name)
        if task is not None:
            task.cancel()
            await asyncio.wait({task})

        state = self.store.remove(name)
        if node.spec.sync_policy.prune and self._settings.cascade_delete:
            await self._cascade_delete(node, state)

    async def _cascade_delete(self, node: AppNode, state: SyncState | None) -> None:
        name = node.name
        cluster = self._clusters.get(node.spec.destination.cluster)
        if cluster is None:
            return
        kinds = {decode_kind(k) for k in state.live_kinds} if state else set()
        if node.desired is not None:
            kinds |= {(r.key.api_version, r.key.kind) for r in node.desired.resources}
        timeout = self._settings.call_timeout
        try:
            managed = await asyncio.wait_for(
                cluster.list_managed(self._settings.tracking_label, name, kinds), timeout=timeout
            )
        except (ObserverError, TimeoutError) as e:
            logger.warning("Cascade delete skipped, live state unreadable", application=name, error=str(e))
            return

        keys = sorted((ResourceKey.from_manifest(m) for m in managed), key=lambda k: kind_rank(k.kind), reverse=True)
        for key in keys:
            try:
                await asyncio.wait_for(cluster.delete(key), timeout=timeout)
            except (ApplyError, TimeoutError) as e:
                logger.warning("Cascade delete failed", application=name, resource=str(key), error=str(e))
                self._audit.log_mutation(name, "delete", str(key), "failed", {"cascade": True, "error": str(e)})
                continue
            self._audit.log_mutation(name, "delete", str(key), "success", {"cascade": True})

    # -------------------------------------------------------------------------
    # TRIGGERS
    # -------------------------------------------------------------------------

    def enqueue(self, trigger: Trigger) -> asyncio.Future[ReconciliationRun | None]:
        """
        Queue a run. Triggers for an application already waiting are coalesced.

        The returned future resolves with the run that served the trigger, or
        None when the application was removed or the loop stopped first.
        """
        waiter: asyncio.Future[ReconciliationRun | None] = asyncio.get_running_loop().create_future()
        name = trigger.application
        entry = _Entry(trigger, [waiter])
        if name in self._pending:
            self._pending[name].absorb(entry)
            return waiter

        if self.store.get(name) is None:
            node = self._graph.get(name) if self._graph else None
            self.store.publish(SyncState(application=name, parent=node.parent if node else None))
        self._pending[name] = entry
        self._queue.put_nowait(name)
        return waiter

    def request_sync(self, name: str, *, prune: bool = False) -> asyncio.Future[ReconciliationRun | None]:
        """
        Manual sync: converge ``name`` now, even with autoSync off.

        Raises:
            GraphError: the current graph could not be resolved.
            ReconcilerError: no such application.
        """
        self._require(name)
        self._audit.log_trigger("sync_application", name, {"prune": prune})
        return self.enqueue(Trigger(name, TriggerReason.MANUAL, force=True, prune=prune, automatic=False))

    def request_refresh(self, name: str) -> asyncio.Future[ReconciliationRun | None]:
        """Re-run resolution and diff for ``name`` now; syncs only if the policy would."""
        self._require(name)
        self._audit.log_trigger("refresh_application", name)
        return self.enqueue(Trigger(name, TriggerReason.MANUAL))

    def notify_drift(self, name: str) -> bool:
        """
        Report out-of-band drift for ``name``.

        Enqueues an immediate self-heal run when the application's policy has
        selfHeal (and autoSync); otherwise the drift waits for the next tick.
        """
        node = self._graph.get(name) if self._graph else None
        if node is None or self._graph_error is not None:
            return False
        policy = node.spec.sync_policy
        if not (policy.auto_sync and policy.self_heal):
            logger.debug("Drift noted, self-heal disabled", application=name)
            return False
        logger.info("Drift detected, triggering self-heal", application=name)
        self.enqueue(Trigger(name, TriggerReason.SELF_HEAL))
        return True

    def _require(self, name: str) -> AppNode:
        if self._graph_error is not None:
            raise self._graph_error
        node = self._graph.get(name) if self._graph else None
        if node is None:
            raise ReconcilerError(f"Unknown application '{name}'", app=name)
        return node

    def _busy(self, name: str) -> bool:
        return name in self._active or name in self._pending or name in self._retries

    # -------------------------------------------------------------------------
    # WORKERS
    # -------------------------------------------------------------------------

    async def _worker(self) -> None:
        while True:
            name = await self._queue.get()
            try:
                entry = self._pending.pop(name, None)
                if entry is None:
                    continue
                if name in self._active:
                    logger.debug("Application busy, deferring trigger", application=name)
                    if name in self._deferred:
                        self._deferred[name].absorb(entry)
                    else:
                        self._deferred[name] = entry
                    continue
                await self._process(name, entry)
            finally:
                self._queue.task_done()

    async def _process(self, name: str, entry: _Entry) -> None:
        handle = self._retries.pop(name, None)
        if handle is not None:
            handle.cancel()

        task = asyncio.create_task(self.reconcile(name, entry.trigger), name=f"reconcile:{name}")
        self._active[name] = task
        run: ReconciliationRun | None = None
        try:
            await asyncio.wait({task})
            if task.cancelled():
                logger.info("Reconciliation cancelled", application=name)
            else:
                run = task.result()
        finally:
            self._active.pop(name, None)
            entry.resolve(run)
            deferred = self._deferred.pop(name, None)
            if deferred is not None:
                self._requeue(name, deferred)

    def _requeue(self, name: str, entry: _Entry) -> None:
        if self._shutdown.is_set() or self._graph is None or name not in self._graph:
            entry.resolve(None)
            return
        if name in self._pending:
            self._pending[name].absorb(entry)
            return
        self._pending[name] = entry
        self._queue.put_nowait(name)

    # -------------------------------------------------------------------------
    # RETRIES AND SELF-HEAL
    # -------------------------------------------------------------------------

    def _schedule_retry(self, name: str, failures: int) -> datetime:
        delay = backoff_delay(failures, self._settings.backoff_base, self._settings.backoff_max)
        previous = self._retries.pop(name, None)
        if previous is not None:
            previous.cancel()
        self._retries[name] = asyncio.get_running_loop().call_later(delay, self._fire_retry, name)
        logger.info("Retry scheduled", application=name, delay=delay, failures=failures)
        return datetime.now(UTC) + timedelta(seconds=delay)

    def _fire_retry(self, name: str) -> None:
        self._retries.pop(name, None)
        if self._shutdown.is_set() or self._graph_error is not None:
            return
        if self._graph is None or name not in self._graph:
            return
        self.enqueue(Trigger(name, TriggerReason.RETRY))

    async def _self_heal_loop(self) -> None:
        while not self._shutdown.is_set():
            await asyncio.sleep(self._settings.self_heal_interval)
            await self.probe_drift()

    async def probe_drift(self) -> list[str]:
        """
        Compare live state of every self-healing application with its desired state.

        Catches edits made between ticks. Applications that are running,
        queued or waiting for a retry are skipped. Returns the names for which
        a self-heal run was enqueued.
        """
        graph = self._graph
        if graph is None or self._graph_error is not None:
            return []
        triggered = []
        for node in graph.nodes:
            policy = node.spec.sync_policy
            if not (policy.auto_sync and policy.self_heal) or node.desired is None or self._busy(node.name):
                continue
            cluster = self._clusters.get(node.spec.destination.cluster)
            if cluster is None:
                continue
            try:
                diff = await self._diff(node.name, node.spec, node.desired, cluster)
            except ObserverError as e:
                logger.debug("Self-heal probe could not read live state", application=node.name, error=str(e))
                continue
            drifted = diff.with_status(ResourceStatus.MISSING, ResourceStatus.OUT_OF_SYNC)
            if policy.prune:
                drifted += diff.with_status(ResourceStatus.ORPHANED)
            if drifted and self.notify_drift(node.name):
                triggered.append(node.name)
        return triggered

    # -------------------------------------------------------------------------
    # ONE RUN
    # -------------------------------------------------------------------------

    async def reconcile(self, name: str, trigger: Trigger) -> ReconciliationRun:
        """
        Run the pipeline once for ``name``.

        Never raises for reconciler failures: they are recorded on the run and
        in the published SyncState.
        """
        run = ReconciliationRun(application=name, trigger=trigger.reason, started_at=datetime.now(UTC))
        node = self._graph.get(name) if self._graph else None
        if node is None:
            run.outcome = RunOutcome.CANCELLED
            run.errors.append(f"Application '{name}' is not in the resolved graph")
            run.finished_at = datetime.now(UTC)
            return run

        spec = node.spec
        run.revision = spec.source.target_revision
        with reconciliation_context(name, str(trigger.reason)):
            state = self.store.get(name) or SyncState(application=name)
            state = self._publish(state, phase=SyncPhase.RESOLVING, parent=spec.parent)
            try:
                state = await self._pipeline(node, trigger, run, state)
            except ReconcilerError as e:
                state = self._record_error(state, run, e)
            except Exception as e:
                logger.exception("Unexpected reconciliation failure")
                state = self._record_error(state, run, ReconcilerError(f"Unexpected error: {e!r}", app=name))
            run.finished_at = datetime.now(UTC)
            run.state = state
            logger.info("Reconciliation finished", outcome=str(run.outcome), status=str(state.status),
                        mutations=len(run.mutations))
        return run

    async def _pipeline(self, node: AppNode, trigger: Trigger, run: ReconciliationRun, state: SyncState) -> SyncState:
        spec = node.spec
        name = spec.name
        policy = spec.sync_policy

        desired = await self._desired_state(node, trigger)
        cluster = self._cluster_for(spec)

        state = self._publish(state, phase=SyncPhase.DIFFING, revision=desired.revision)
        known = [decode_kind(k) for k in state.live_kinds]
        diff = await self._diff(name, spec, desired, cluster, known)
        actionable = diff.with_status(*_DRIFT)

        result: SyncResult | None = None
        if actionable and (policy.auto_sync or trigger.force):
            prune = trigger.prune or (trigger.automatic and policy.auto_sync and policy.prune)
            state = self._publish(state, phase=SyncPhase.SYNCING)
            result = await self._executor.execute(name, diff, cluster, prune=prune)
            run.actions = result.results
            if result.succeeded:
                diff = await self._diff(name, spec, desired, cluster, known)
            run.outcome = result.outcome
        elif actionable:
            logger.info("Drift recorded, auto-sync disabled", drifted=len(actionable))
            run.outcome = RunOutcome.RECORDED
        else:
            run.outcome = RunOutcome.SUCCEEDED

        conflicts = diff.with_status(ResourceStatus.CONFLICT)
        run.errors = [str(ConflictError(item.message, app=name, resource=str(item.key))) for item in conflicts]
        if result is not None:
            run.errors += [f"{r.action.key}: {r.action.type} failed: {r.message}" for r in result.failed]

        status = diff.status
        if result is not None and result.failed and not conflicts:
            status = AppStatus.FAILED

        failures = state.consecutive_failures + 1 if run.outcome is RunOutcome.FAILED else 0
        next_retry = self._schedule_retry(name, failures) if failures else None

        return self._publish(
            state,
            phase=SyncPhase.SETTLED,
            status=status,
            desired={str(r.key): r.content_hash for r in desired.resources},
            live={str(item.key): item.live_hash for item in diff.items.values() if item.live_hash},
            resources=self._resource_states(diff, result),
            last_outcome=run.outcome,
            last_reconciled_at=datetime.now(UTC),
            errors=run.errors,
            consecutive_failures=failures,
            next_retry_at=next_retry,
            live_kinds=sorted(
                {encode_kind((item.key.api_version, item.key.kind)) for item in diff.items.values()}
            ),
        )

    async def _desired_state(self, node: AppNode, trigger: Trigger) -> DesiredState:
        # scheduled runs use what this tick's resolution built; others re-fetch
        if trigger.reason is TriggerReason.SCHEDULED:
            if node.error is not None:
                raise node.error
            if node.desired is not None:
                return node.desired
        return await self._builder.build(node.spec)

    def _cluster_for(self, spec: ApplicationSpec) -> ClusterClient:
        cluster = self._clusters.get(spec.destination.cluster)
        if cluster is None:
            raise DestinationError(f"Destination cluster '{spec.destination.cluster}' is not configured",
                                   app=spec.name)
        return cluster

    async def _diff(
        self,
        name: str,
        spec: ApplicationSpec,
        desired: DesiredState,
        cluster: ClusterClient,
        known: list[tuple[str, str]] | None = None,
    ) -> DiffResult:
        live = await self._observer.observe(name, desired.resources, cluster, known_kinds=known or ())
        return detect_drift(name, desired.by_key(), live, cluster=spec.destination.cluster, claims=self._claims)

    @staticmethod
    def _resource_states(diff: DiffResult, result: SyncResult | None) -> dict[str, ResourceState]:
        states = {}
        for key, item in diff.items.items():
            action = result.result_for(key) if result else None
            failed = action is not None and action.outcome is ActionOutcome.FAILED
            states[str(key)] = ResourceState(
                kind=key.kind,
                namespace=key.namespace,
                name=key.name,
                status=item.status,
                outcome=action.outcome if action else None,
                message=action.message if failed else item.message,
                desired_hash=item.desired.content_hash if item.desired else None,
                live_hash=item.live_hash,
            )
        return states

    def _record_error(self, state: SyncState, run: ReconciliationRun, error: ReconcilerError) -> SyncState:
        run.outcome = RunOutcome.ERROR
        run.errors = [str(error)]
        failures = state.consecutive_failures + 1
        if error.retryable:
            logger.warning("Reconciliation failed, will retry", error=str(error))
            next_retry = self._schedule_retry(run.application, failures)
        else:
            logger.error("Reconciliation failed, waiting for a declaration change", error=str(error))
            next_retry = None
        return self._publish(
            state,
            phase=SyncPhase.SETTLED,
            status=AppStatus.DEGRADED,
            last_outcome=RunOutcome.ERROR,
            last_reconciled_at=datetime.now(UTC),
            errors=[str(error)],
            consecutive_failures=failures,
            next_retry_at=next_retry,
        )

    def _publish(self, state: SyncState, **update: object) -> SyncState:
        return self.store.publish(state.model_copy(update=update))
