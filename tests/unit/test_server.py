# ABOUTME: Unit tests for the MCP server tools and resources
# ABOUTME: Tests status queries, graph rendering, manual triggers and safety guard integration

"""Unit tests for server.py covering every MCP tool against a running reconciler."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from gitops_reconciler import server
from gitops_reconciler.config import ReconcilerSettings, SecuritySettings
from gitops_reconciler.loop import Reconciler
from gitops_reconciler.models import AppStatus, ResourceState, ResourceStatus, SyncState
from gitops_reconciler.server import (
    GetApplicationStatusParams,
    ListApplicationsParams,
    RefreshApplicationParams,
    SyncApplicationParams,
)
from gitops_reconciler.utils.logging import AuditLogger
from gitops_reconciler.utils.safety import SafetyGuard


@pytest.fixture
def mock_ctx():
    """Create a mock MCP context with async report_progress."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


@pytest.fixture
def live_server(
    monkeypatch,
    reconciler: Reconciler,
    settings: ReconcilerSettings,
    safety_guard: SafetyGuard,
    audit_logger: AuditLogger,
) -> Reconciler:
    """Point the server globals at a started reconciler."""
    monkeypatch.setattr(server, "_settings", settings)
    monkeypatch.setattr(server, "_reconciler", reconciler)
    monkeypatch.setattr(server, "_safety_guard", safety_guard)
    monkeypatch.setattr(server, "_audit_logger", audit_logger)
    return reconciler


@pytest.mark.unit
class TestGetters:
    """Tests for the global accessors."""

    @pytest.mark.parametrize(
        "getter,attribute",
        [
            (server.get_settings, "_settings"),
            (server.get_reconciler, "_reconciler"),
            (server.get_safety_guard, "_safety_guard"),
            (server.get_audit_logger, "_audit_logger"),
        ],
    )
    def test_raise_if_not_initialized(self, monkeypatch, getter, attribute):
        """Test that every accessor refuses to run before the lifespan has started."""
        monkeypatch.setattr(server, attribute, None)
        with pytest.raises(RuntimeError, match="Server not initialized"):
            getter()

    def test_return_initialized(self, live_server, settings):
        """Test that accessors return what the lifespan installed."""
        assert server.get_reconciler() is live_server
        assert server.get_settings() is settings


@pytest.mark.unit
class TestFormatState:
    """Tests for state rendering."""

    def test_never_reconciled(self):
        """Test a fresh Pending state."""
        text = server.format_state(SyncState(application="dev"))

        assert "Application: dev" in text
        assert "Phase: Pending" in text
        assert "Status: Unknown [!]" in text
        assert "Last reconciled: never" in text

    def test_resources_and_masked_errors(self):
        """Test that resource messages and errors pass through the mask."""
        state = SyncState(
            application="dev",
            status=AppStatus.FAILED,
            consecutive_failures=2,
            resources={
                "Deployment/dev/web": ResourceState(
                    kind="Deployment", namespace="dev", name="web", status=ResourceStatus.MISSING, message="denied"
                ),
                "Service/dev/web": ResourceState(
                    kind="Service", namespace="dev", name="web", status=ResourceStatus.IN_SYNC, message="ignored"
                ),
            },
            errors=["token=abc"],
        )

        text = server.format_state(state, mask=lambda s: "<masked>")

        assert "Consecutive failures: 2" in text
        assert "  - Deployment/dev/web: Missing - <masked>" in text
        assert "  - Service/dev/web: InSync" in text
        assert "ignored" not in text
        assert "Errors:\n  - <masked>" in text


@pytest.mark.unit
class TestReadTools:
    """Tests for list_applications, get_application_status and get_application_graph."""

    async def test_list_applications(self, live_server, mock_ctx):
        """Test the listing after one tick."""
        await live_server.tick()

        result = await server.list_applications(ListApplicationsParams(), mock_ctx)

        assert result.startswith("Found 4 application(s):")
        assert "- dev status=Synced [OK] phase=Settled outcome=Succeeded parent=root" in result
        assert "- root status=Synced" in result

    async def test_list_applications_status_filter(self, live_server, mock_ctx):
        """Test filtering by status."""
        await live_server.tick()

        synced = await server.list_applications(ListApplicationsParams(status="Synced"), mock_ctx)
        degraded = await server.list_applications(ListApplicationsParams(status="Degraded"), mock_ctx)

        assert "Found 4" in synced
        assert degraded == "No applications found matching the specified filters."

    async def test_list_rate_limited(self, live_server, mock_ctx, monkeypatch):
        """Test that reads are refused once the rate limit is hit."""
        monkeypatch.setattr(server, "_safety_guard", SafetyGuard(SecuritySettings(rate_limit_calls=1)))

        await server.list_applications(ListApplicationsParams(), mock_ctx)
        result = await server.list_applications(ListApplicationsParams(), mock_ctx)

        assert "OPERATION BLOCKED" in result

    async def test_get_application_status(self, live_server, mock_ctx):
        """Test the per-application status view."""
        await live_server.tick()

        result = await server.get_application_status(GetApplicationStatusParams(name="prod"), mock_ctx)

        assert "Application: prod" in result
        assert "Parent: root" in result
        assert "Status: Synced [OK]" in result
        assert "Revision: main" in result
        assert "Resources (2):" in result
        assert "  - Deployment/prod/web: InSync" in result

    async def test_get_application_status_not_found(self, live_server, mock_ctx):
        """Test an unknown application."""
        result = await server.get_application_status(GetApplicationStatusParams(name="nope"), mock_ctx)
        assert result == "Application 'nope' not found."

    async def test_graph_before_first_tick(self, live_server, mock_ctx):
        """Test the graph view before anything resolved."""
        assert await server.get_application_graph(mock_ctx) == "No application graph resolved yet."

    async def test_graph(self, live_server, mock_ctx):
        """Test the rendered hierarchy with policies."""
        await live_server.tick()

        result = await server.get_application_graph(mock_ctx)

        assert result.startswith("Application graph (4 application(s)):")
        assert "  - root -> argocd@in-cluster [auto,prune]" in result
        assert "    - prod -> prod@in-cluster [auto,selfHeal,prune]" in result
        assert "    - staging -> staging@in-cluster [auto]" in result

    async def test_graph_shows_resolution_failure(self, live_server, mock_ctx, source, repo_url, app_of_apps_files,
                                                  dump, application):
        """Test that a failed resolution is reported above the last good graph."""
        await live_server.tick()
        loop_back = application("root", "apps", namespace="argocd")
        source.publish(repo_url, "main", {**app_of_apps_files, "apps/zz-loop.yaml": dump(loop_back)})
        await live_server.tick()

        result = await server.get_application_graph(mock_ctx)

        assert result.startswith("RESOLUTION FAILED: [root] Application cycle detected: root -> root")
        assert "Application graph (4 application(s)):" in result


@pytest.mark.unit
class TestSyncApplication:
    """Tests for the sync_application tool."""

    async def test_blocked_in_read_only(self, live_server, mock_ctx, monkeypatch, read_only_safety_guard):
        """Test that read-only mode refuses manual sync."""
        monkeypatch.setattr(server, "_safety_guard", read_only_safety_guard)
        await live_server.tick()

        result = await server.sync_application(SyncApplicationParams(name="dev"), mock_ctx)

        assert "OPERATION BLOCKED: sync_application" in result

    async def test_prune_requires_confirmation(self, live_server, mock_ctx):
        """Test that prune without confirmation asks for it and queues nothing."""
        await live_server.tick()

        result = await server.sync_application(SyncApplicationParams(name="dev", prune=True), mock_ctx)

        assert "CONFIRMATION REQUIRED: sync_with_prune" in result

    async def test_queued(self, live_server, mock_ctx):
        """Test a sync without waiting."""
        await live_server.tick()

        result = await server.sync_application(SyncApplicationParams(name="dev"), mock_ctx)

        assert result.startswith("sync_application queued for 'dev'\nPrune: False")

    async def test_wait_reports_run(self, live_server, mock_ctx, cluster):
        """Test a sync that waits for its run and reports the mutations."""
        await live_server.tick()
        cluster.objects.pop(next(k for k in cluster.objects if str(k) == "Service/dev/web"))

        result = await server.sync_application(
            SyncApplicationParams(name="dev", prune=True, confirm=True, confirm_name="dev", wait=True), mock_ctx
        )

        assert "Run outcome: Succeeded" in result
        assert "Mutations: 1" in result
        assert "  - create Service/dev/web: Succeeded" in result
        assert mock_ctx.report_progress.await_count == 2

    async def test_wait_timeout(self, live_server, mock_ctx, cluster):
        """Test that a slow run returns before it finishes."""
        await live_server.tick()
        cluster.latency = 0.5

        result = await server.sync_application(
            SyncApplicationParams(name="dev", wait=True, timeout=0.01), mock_ctx
        )

        assert "still running after 0.01s" in result

    async def test_unknown_application(self, live_server, mock_ctx, audit_log_path):
        """Test that an unknown name is reported and audited as an error."""
        await live_server.tick()

        result = await server.sync_application(SyncApplicationParams(name="nope"), mock_ctx)

        assert result == "[nope] Unknown application 'nope'"
        assert '"result": "error"' in audit_log_path.read_text()

    async def test_single_cluster_blocks_remote_destination(self, live_server, mock_ctx, monkeypatch, source,
                                                            repo_url, app_of_apps_files, dump, application):
        """Test that single-cluster mode refuses triggers for remote destinations."""
        remote = application("remote", "base", namespace="remote", cluster="prod-eu")
        source.publish(repo_url, "main", {**app_of_apps_files, "apps/remote.yaml": dump(remote)})
        await live_server.tick()
        guard = SafetyGuard(SecuritySettings(read_only=False, disable_destructive=False, single_cluster=True))
        monkeypatch.setattr(server, "_safety_guard", guard)

        result = await server.sync_application(SyncApplicationParams(name="remote"), mock_ctx)

        assert "OPERATION BLOCKED" in result
        assert "prod-eu" in result


@pytest.mark.unit
class TestRefreshApplication:
    """Tests for the refresh_application tool."""

    async def test_refresh_wait(self, live_server, mock_ctx):
        """Test a refresh that waits for its run."""
        await live_server.tick()

        result = await server.refresh_application(RefreshApplicationParams(name="staging", wait=True), mock_ctx)

        assert "Run outcome: Succeeded" in result
        assert "Mutations: 0" in result

    async def test_refresh_queued(self, live_server, mock_ctx):
        """Test a refresh without waiting."""
        await live_server.tick()

        result = await server.refresh_application(RefreshApplicationParams(name="staging"), mock_ctx)

        assert result.startswith("refresh_application queued for 'staging'\n\n")

    async def test_refresh_blocked_in_read_only(self, live_server, mock_ctx, monkeypatch, read_only_safety_guard):
        """Test that refresh is a write-class trigger."""
        monkeypatch.setattr(server, "_safety_guard", read_only_safety_guard)

        result = await server.refresh_application(RefreshApplicationParams(name="staging"), mock_ctx)

        assert "OPERATION BLOCKED" in result


@pytest.mark.unit
class TestResources:
    """Tests for the MCP resources."""

    async def test_settings_resource(self, live_server):
        """Test the settings resource."""
        result = await server.get_settings_resource()

        assert "Workers: 4" in result
        assert "State snapshot: memory only" in result

    async def test_security_resource(self, live_server):
        """Test the security resource."""
        result = await server.get_security_resource()

        assert "Read-only mode: False" in result
        assert "Rate limit: 100 calls per 60s" in result
