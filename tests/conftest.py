# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides manifest factories, an App-of-Apps repository and in-memory adapters

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from gitops_reconciler.config import ReconcilerSettings, SecuritySettings
from gitops_reconciler.loop import Reconciler
from gitops_reconciler.models import ApplicationSpec, Destination, SourceRef, SyncPolicy
from gitops_reconciler.state import StateStore
from gitops_reconciler.utils.cluster import InMemoryCluster
from gitops_reconciler.utils.logging import AuditLogger
from gitops_reconciler.utils.safety import SafetyGuard
from gitops_reconciler.utils.source import InMemorySource

REPO_URL = "https://git.example.com/org/apps"


def _deployment(name: str = "web", replicas: int = 2, image: str = "nginx:1.25", **metadata: Any) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": {"app": name}, **metadata},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }


def _service(name: str = "web", port: int = 80, **metadata: Any) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, **metadata},
        "spec": {"selector": {"app": name}, "ports": [{"name": "http", "port": port}]},
    }


def _config_map(name: str, data: dict[str, str] | None = None, **metadata: Any) -> dict[str, Any]:
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name, **metadata}, "data": data or {}}


def _application(
    name: str,
    path: str,
    *,
    namespace: str = "",
    overlay: list[dict[str, Any]] | None = None,
    automated: bool = True,
    prune: bool = False,
    self_heal: bool = False,
    repo_url: str = REPO_URL,
    cluster: str = "in-cluster",
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "source": {"repoURL": repo_url, "targetRevision": "main", "path": path},
        "destination": {"name": cluster, "namespace": namespace},
    }
    if automated:
        spec["syncPolicy"] = {"automated": {"prune": prune, "selfHeal": self_heal}}
    if overlay:
        spec["overlay"] = overlay
    return {"apiVersion": "argoproj.io/v1alpha1", "kind": "Application", "metadata": {"name": name}, "spec": spec}


def _dump(*documents: dict[str, Any]) -> str:
    return yaml.safe_dump_all(list(documents), sort_keys=True)


@pytest.fixture
def repo_url() -> str:
    return REPO_URL


@pytest.fixture
def deployment() -> Callable[..., dict[str, Any]]:
    """Factory for Deployment manifests."""
    return _deployment


@pytest.fixture
def service() -> Callable[..., dict[str, Any]]:
    """Factory for Service manifests."""
    return _service


@pytest.fixture
def config_map() -> Callable[..., dict[str, Any]]:
    """Factory for ConfigMap manifests."""
    return _config_map


@pytest.fixture
def application() -> Callable[..., dict[str, Any]]:
    """Factory for Application documents."""
    return _application


@pytest.fixture
def dump() -> Callable[..., str]:
    """Render documents as one multi-document YAML file."""
    return _dump


@pytest.fixture
def app_of_apps_files() -> dict[str, str]:
    """
    Repository with a shared base and three environment applications.

    apps/ holds the child Application documents (the root's source); each
    child points at base/ and derives its namespace from its own overlay.
    prod additionally patches the Deployment to 4 replicas.
    """
    return {
        "base/deployment.yaml": _dump(_deployment()),
        "base/service.yaml": _dump(_service()),
        "apps/dev.yaml": _dump(
            _application("dev", "base", overlay=[{"namespace": "dev"}, {"labels": {"env": "dev"}}], prune=True)
        ),
        "apps/staging.yaml": _dump(
            _application("staging", "base", overlay=[{"namespace": "staging"}, {"labels": {"env": "staging"}}])
        ),
        "apps/prod.yaml": _dump(
            _application(
                "prod",
                "base",
                overlay=[
                    {"namespace": "prod"},
                    {"labels": {"env": "prod"}},
                    {"patch": {"target": {"kind": "Deployment", "name": "web"}, "patch": {"spec": {"replicas": 4}}}},
                ],
                prune=True,
                self_heal=True,
            )
        ),
    }


@pytest.fixture
def source(app_of_apps_files: dict[str, str]) -> InMemorySource:
    """In-memory source with the App-of-Apps repository published at 'main'."""
    src = InMemorySource()
    src.publish(REPO_URL, "main", app_of_apps_files)
    return src


@pytest.fixture
def root_spec() -> ApplicationSpec:
    """Root application whose source is the apps/ directory."""
    return ApplicationSpec(
        name="root",
        source=SourceRef(repo_url=REPO_URL, target_revision="main", path="apps"),
        destination=Destination(namespace="argocd"),
        sync_policy=SyncPolicy(auto_sync=True, prune=True),
    )


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def security_settings() -> SecuritySettings:
    """Permissive security settings for testing manual triggers."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        single_cluster=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        single_cluster=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def settings(security_settings: SecuritySettings) -> ReconcilerSettings:
    """Fast loop settings: tiny backoff, no background ticks or probes during a test."""
    return ReconcilerSettings(
        workers=4,
        resync_interval=3600,
        self_heal_interval=3600,
        call_timeout=2.0,
        backoff_base=0.01,
        backoff_max=0.05,
        apply_attempts=3,
        security=security_settings,
    )


@pytest.fixture
def audit_log_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.jsonl"


@pytest.fixture
def audit_logger(audit_log_path: Path) -> AuditLogger:
    return AuditLogger(audit_log_path)


@pytest.fixture
def safety_guard(security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
async def reconciler(
    root_spec: ApplicationSpec,
    source: InMemorySource,
    cluster: InMemoryCluster,
    settings: ReconcilerSettings,
    audit_logger: AuditLogger,
) -> AsyncIterator[Reconciler]:
    """Started reconciler over the App-of-Apps repository and one in-memory cluster."""
    async with Reconciler(
        root_spec,
        source,
        {"in-cluster": cluster},
        settings=settings,
        store=StateStore(),
        audit_logger=audit_logger,
    ) as running:
        yield running
