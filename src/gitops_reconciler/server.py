# ABOUTME: FastMCP server hosting the reconciliation loop and its status surface
# ABOUTME: Exposes application status, graph, manual sync and refresh tools with safety guards

"""GitOps reconciler MCP server: status surface and manual triggers."""

from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ReconcilerSettings, load_settings
from gitops_reconciler.errors import ReconcilerError
from gitops_reconciler.loop import Reconciler
from gitops_reconciler.models import AppStatus, ReconciliationRun, ResourceStatus, SyncState
from gitops_reconciler.utils.client import KubernetesClient
from gitops_reconciler.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_reconciler.utils.safety import ConfirmationRequired, SafetyGuard
from gitops_reconciler.utils.source import ArchiveSource, LocalSource, SourceRouter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ReconcilerSettings | None = None
_reconciler: Reconciler | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, connect sources and clusters, run the loop; tear down on shutdown."""
    global _settings, _reconciler, _safety_guard, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting GitOps reconciler", server=_settings.server_name)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    archive = ArchiveSource(token=_settings.source_token.get_secret_value() or None, timeout=_settings.call_timeout)
    await archive.__aenter__()
    clusters: dict[str, KubernetesClient] = {}
    for instance in _settings.all_clusters:
        client = KubernetesClient(instance, field_manager=_settings.field_manager, timeout=_settings.call_timeout)
        await client.__aenter__()
        clusters[instance.name] = client
        logger.info("Connected to cluster", cluster=instance.name, url=instance.url)

    _reconciler = Reconciler(
        _settings.root_application(),
        SourceRouter(local=LocalSource(), remote=archive),
        clusters,
        settings=_settings,
        audit_logger=_audit_logger,
    )
    loop_task = asyncio.create_task(_reconciler.run_forever(), name="reconciliation-loop")

    try:
        yield {"settings": _settings, "reconciler": _reconciler}
    finally:
        await _reconciler.stop()
        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)
        for name, client in clusters.items():
            await client.__aexit__(None, None, None)
            logger.info("Disconnected from cluster", cluster=name)
        await archive.__aexit__(None, None, None)
        logger.info("GitOps reconciler stopped")


mcp = FastMCP("gitops-reconciler", lifespan=lifespan)


def get_settings() -> ReconcilerSettings:
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_reconciler() -> Reconciler:
    if not _reconciler:
        raise RuntimeError("Server not initialized")
    return _reconciler


def get_safety_guard() -> SafetyGuard:
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _marker(status: AppStatus) -> str:
    return "[OK]" if status is AppStatus.SYNCED else "[!]"


def format_state(state: SyncState, mask: Any = str) -> str:
    """Render one SyncState for agent consumption."""
    lines = [
        f"Application: {state.application}",
        f"Parent: {state.parent or '-'}",
        f"Phase: {state.phase}",
        f"Status: {state.status} {_marker(state.status)}",
        f"Revision: {state.revision or 'unknown'}",
        f"Last outcome: {state.last_outcome or 'never reconciled'}",
        f"Last reconciled: {state.last_reconciled_at.isoformat() if state.last_reconciled_at else 'never'}",
    ]
    if state.consecutive_failures:
        lines.append(f"Consecutive failures: {state.consecutive_failures}")
    if state.next_retry_at:
        lines.append(f"Next retry: {state.next_retry_at.isoformat()}")

    if state.resources:
        lines.extend(["", f"Resources ({len(state.resources)}):"])
        for key, resource in sorted(state.resources.items()):
            line = f"  - {key}: {resource.status}"
            if resource.outcome:
                line += f" (last action {resource.outcome})"
            if resource.message and resource.status != "InSync":
                line += f" - {mask(resource.message)}"
            lines.append(line)

    if state.errors:
        lines.extend(["", "Errors:"])
        lines.extend(f"  - {mask(error)}" for error in state.errors)
    return "\n".join(lines)


def _format_run(run: ReconciliationRun | None, mask: Any) -> str:
    if run is None:
        return "Run did not complete (application removed or reconciler stopped)."
    lines = [f"Run outcome: {run.outcome}", f"Mutations: {len(run.mutations)}"]
    for result in run.actions:
        lines.append(f"  - {result.action.type} {result.action.key}: {result.outcome}")
    if run.errors:
        lines.append("Errors:")
        lines.extend(f"  - {mask(error)}" for error in run.errors)
    return "\n".join(lines)


# =============================================================================
# READ OPERATIONS
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    status: str | None = Field(
        default=None,
        description="Filter by status (Synced, OutOfSync, Degraded, Failed, Unknown)",
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List every application the reconciler manages with its current status.

    Use this to find out-of-sync, degraded or failed applications.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    states = list(get_reconciler().store.all().values())
    if params.status:
        states = [s for s in states if s.status == params.status]
    get_audit_logger().log_read("list_applications", f"status={params.status}")

    if not states:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(states)} application(s):", ""]
    for state in sorted(states, key=lambda s: s.application):
        lines.append(
            f"- {state.application} status={state.status} {_marker(state.status)} "
            f"phase={state.phase} outcome={state.last_outcome or '-'} parent={state.parent or '-'}"
        )
    return "\n".join(lines)


class GetApplicationStatusParams(BaseModel):
    """Parameters for get_application_status tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: GetApplicationStatusParams, ctx: MCPContext) -> str:
    """
    Get the status of one application.

    Shows the per-resource status map, last revision, last outcome and
    timestamp, and the most recent errors.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    guard = get_safety_guard()
    blocked = guard.check_read("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    state = get_reconciler().store.get(params.name)
    if state is None:
        return f"Application '{params.name}' not found."
    get_audit_logger().log_read("get_application_status", params.name)
    return format_state(state, guard.mask)


@mcp.tool()
async def get_application_graph(ctx: MCPContext) -> str:
    """
    Show the resolved App-of-Apps hierarchy.

    Each application is listed under its parent with its destination and
    automation policy.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    guard = get_safety_guard()
    blocked = guard.check_read("get_application_graph")
    if blocked:
        get_audit_logger().log_blocked("get_application_graph", "all", blocked.reason)
        return blocked.format_message()

    reconciler = get_reconciler()
    graph = reconciler.graph
    lines = []
    if reconciler.graph_error is not None:
        lines.extend([f"RESOLUTION FAILED: {guard.mask(str(reconciler.graph_error))}",
                      "Showing the last resolved graph; it is not being reconciled.", ""])
    if graph is None:
        lines.append("No application graph resolved yet.")
        return "\n".join(lines)

    get_audit_logger().log_read("get_application_graph", graph.root)
    lines.append(f"Application graph ({len(graph)} application(s)):")

    def render(name: str) -> None:
        node = graph.get(name)
        if node is None:
            return
        spec = node.spec
        policy = spec.sync_policy
        flags = ",".join(f for f, on in (("auto", policy.auto_sync), ("selfHeal", policy.self_heal),
                                          ("prune", policy.prune)) if on) or "manual"
        line = f"{'  ' * (node.depth + 1)}- {name} -> {spec.destination.namespace}@{spec.destination.cluster} [{flags}]"
        if node.error is not None:
            line += f" ERROR: {guard.mask(str(node.error))}"
        lines.append(line)
        for child in node.children:
            render(child)

    render(graph.root)
    return "\n".join(lines)


# =============================================================================
# WRITE OPERATIONS (manual triggers)
# =============================================================================


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    prune: bool = Field(
        default=False,
        description="Delete live resources no longer declared in Git (destructive, requires confirmation)",
    )
    confirm: bool = Field(default=False, description="Must be true to sync with prune")
    confirm_name: str | None = Field(default=None, description="Type application name to confirm prune")
    wait: bool = Field(default=False, description="Wait for the run to finish and report its result")
    timeout: float = Field(default=60.0, gt=0, description="Seconds to wait when wait=true")


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Converge an application to its declared state now.

    Runs even when the application's policy has autoSync disabled. With
    prune=true, live resources no longer declared are deleted; this requires
    confirm=true and confirm_name matching the application name.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    guard = get_safety_guard()
    blocked = guard.check_trigger("sync_application", params.name, _destination(params.name))
    if blocked is None and params.prune:
        blocked = guard.check_prune(
            params.name, confirmed=params.confirm, confirm_name=params.confirm_name, orphans=_orphans(params.name)
        )
    if blocked:
        reason = "confirmation required" if isinstance(blocked, ConfirmationRequired) else blocked.reason
        get_audit_logger().log_blocked("sync_application", params.name, reason)
        return blocked.format_message()

    return await _trigger(params.name, "sync_application", ctx, params.wait, params.timeout, prune=params.prune)


class RefreshApplicationParams(BaseModel):
    """Parameters for refresh_application tool."""

    name: str = Field(description="Application name")
    wait: bool = Field(default=False, description="Wait for the run to finish and report its result")
    timeout: float = Field(default=60.0, gt=0, description="Seconds to wait when wait=true")


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Re-fetch an application's source and recompute its diff now.

    Syncs only if the application's own policy would (autoSync).
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_trigger("refresh_application", params.name, _destination(params.name))
    if blocked:
        get_audit_logger().log_blocked("refresh_application", params.name, blocked.reason)
        return blocked.format_message()

    return await _trigger(params.name, "refresh_application", ctx, params.wait, params.timeout)


def _destination(name: str) -> str | None:
    graph = get_reconciler().graph
    node = graph.get(name) if graph else None
    return node.spec.destination.cluster if node else None


def _orphans(name: str) -> list[str]:
    state = get_reconciler().store.get(name)
    if state is None:
        return []
    return [key for key, resource in state.resources.items() if resource.status is ResourceStatus.ORPHANED]


async def _trigger(name: str, operation: str, ctx: MCPContext, wait: bool, timeout: float, *,
                   prune: bool | None = None) -> str:
    guard = get_safety_guard()
    reconciler = get_reconciler()

    try:
        if prune is None:
            future = reconciler.request_refresh(name)
        else:
            future = reconciler.request_sync(name, prune=prune)
    except ReconcilerError as e:
        get_audit_logger().log_error(operation, name, str(e))
        return guard.mask(str(e))

    if not wait:
        return (
            f"{operation} queued for '{name}'"
            + (f"\nPrune: {prune}" if prune is not None else "")
            + "\n\nUse get_application_status to monitor progress."
        )

    await ctx.report_progress(0, 1, f"Waiting for {name}")
    try:
        run = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
    except TimeoutError:
        return f"{operation} for '{name}' still running after {timeout}s. Use get_application_status to follow up."
    await ctx.report_progress(1, 1, "Run finished")
    return _format_run(run, guard.mask)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("reconciler://settings")
async def get_settings_resource() -> str:
    """Loop tuning, root application and configured clusters (no secrets)."""
    settings = get_settings()
    clusters = settings.all_clusters
    lines = [
        "Reconciler Settings:",
        f"  Root manifest: {settings.root_manifest or '-'}",
        f"  Root repository: {settings.root_repo_url or '-'} @ {settings.root_revision}:{settings.root_path}",
        f"  Workers: {settings.workers}",
        f"  Resync interval: {settings.resync_interval}s",
        f"  Self-heal interval: {settings.self_heal_interval}s",
        f"  Call timeout: {settings.call_timeout}s",
        f"  Backoff: {settings.backoff_base}s .. {settings.backoff_max}s",
        f"  Apply attempts: {settings.apply_attempts}",
        f"  Tracking label: {settings.tracking_label}",
        f"  Cascade delete: {settings.cascade_delete}",
        f"  State snapshot: {settings.state_snapshot or 'memory only'}",
        "",
        "Clusters:" if clusters else "No clusters configured",
    ]
    lines.extend(f"  - {c.name}: {c.url}" for c in clusters)
    return "\n".join(lines)


@mcp.resource("reconciler://security")
async def get_security_resource() -> str:
    """Current guards on manual triggers."""
    sec = get_settings().security
    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Single cluster mode: {sec.single_cluster}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps reconciler MCP server."""
    configure_logging(level="INFO")
    logger.info("GitOps reconciler starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
