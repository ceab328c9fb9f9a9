# ABOUTME: Configuration management for the GitOps reconciler
# ABOUTME: Handles environment variables, target clusters, loop tuning and operator guards

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds every tunable of the reconciler. It:

1. READS environment variables (RECONCILER_WORKERS, KUBERNETES_URL, ...)
2. VALIDATES them (positive intervals, known log levels, URL shape)
3. PROVIDES typed access to settings for the loop, adapters and server

=============================================================================
ARCHITECTURE: THREE CONFIGURATION CLASSES
=============================================================================

1. ClusterInstance: one target cluster (name, API server URL, token, TLS)
   - Application destinations refer to clusters by name
   - "in-cluster" is built from KUBERNETES_URL / KUBERNETES_TOKEN

2. SecuritySettings: guards on operator-initiated actions (MCP_ prefix)
   - Read-only mode, destructive switch (manual prune), rate limiting
   - Never affects the automation policy declared in Git

3. ReconcilerSettings: main container (RECONCILER_ prefix)
   - Root application, worker pool size, intervals, backoff, timeouts
   - Ownership tracking label, state snapshot path, logging

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Root application (one of):
    RECONCILER_ROOT_MANIFEST   -> YAML file holding the root Application
    RECONCILER_ROOT_NAME / _REPO_URL / _REVISION / _PATH

Loop tuning:
    RECONCILER_WORKERS             -> concurrent application runs (default: 4)
    RECONCILER_RESYNC_INTERVAL     -> seconds between regular ticks (default: 180)
    RECONCILER_SELF_HEAL_INTERVAL  -> seconds between self-heal probes (default: 5)
    RECONCILER_CALL_TIMEOUT        -> per fetch/read/write timeout (default: 30)
    RECONCILER_BACKOFF_BASE / _MAX -> retry backoff bounds (default: 5 / 300)
    RECONCILER_APPLY_ATTEMPTS      -> attempts per cluster write (default: 3)

Primary cluster:
    KUBERNETES_URL / KUBERNETES_TOKEN / KUBERNETES_INSECURE
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_reconciler.models import (
    DEFAULT_TRACKING_LABEL,
    IN_CLUSTER,
    ApplicationSpec,
    Destination,
    SourceRef,
    SyncPolicy,
)

# =============================================================================
# CLUSTER INSTANCE
# =============================================================================


class ClusterInstance(BaseModel):
    """
    Connection settings for one target cluster.

    WHY BaseModel NOT BaseSettings?
    -------------------------------
    Additional clusters are given as a JSON list in
    RECONCILER_CLUSTERS; only the in-cluster instance is read from its own
    environment variables, through ReconcilerSettings.
    """

    model_config = {"extra": "ignore"}

    name: str = Field(default=IN_CLUSTER, description="Name used by Application destinations")
    url: str = Field(description="Kubernetes API server URL")
    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Default to https and strip trailing slashes so paths join cleanly."""
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guards on actions an operator (or an AI assistant) triggers by hand.

    The declared automation policy (autoSync / selfHeal / prune) lives in
    Git and is not overridden here. These settings only decide whether
    sync_application / refresh_application requests arriving through the
    MCP surface are accepted:

    Layer 1: MCP_READ_ONLY=true (default) - status queries only
    Layer 2: MCP_DISABLE_DESTRUCTIVE=true (default) - no manual prune
    Layer 3: MCP_RATE_LIMIT_* - bound manual trigger volume
    Layer 4: confirm + confirm_name for prune requests
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Reject manual sync and refresh requests when true",
    )

    disable_destructive: bool = Field(
        default=True,
        description="Reject manual sync requests that prune when true",
    )

    single_cluster: bool = Field(
        default=False,
        description="Reject manual requests for applications outside the in-cluster destination",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file (JSON lines); stdout when unset",
    )

    mask_secrets: bool = Field(
        default=True,
        description="Mask secret-looking values in error messages shown on the status surface",
    )

    rate_limit_calls: int = Field(default=100, description="Maximum manual requests per window")

    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# MAIN SETTINGS
# =============================================================================


class ReconcilerSettings(BaseSettings):
    """
    Main reconciler configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.resync_interval        # seconds between regular ticks
        settings.get_cluster("prod")    # ClusterInstance or None
        settings.root_application()     # ApplicationSpec of the root
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # ROOT APPLICATION
    # -------------------------------------------------------------------------

    root_manifest: Path | None = Field(
        default=None,
        description="YAML file holding the root Application document",
    )
    root_name: str = Field(default="root", description="Root application name")
    root_repo_url: str = Field(default="", description="Root application repository URL")
    root_revision: str = Field(default="HEAD", description="Root application revision")
    root_path: str = Field(default=".", description="Root application path in the repository")
    root_namespace: str = Field(default="default", description="Root application destination namespace")

    # -------------------------------------------------------------------------
    # TARGET CLUSTERS
    # -------------------------------------------------------------------------

    kubernetes_url: str = Field(
        default="",
        validation_alias="KUBERNETES_URL",
        description="API server URL of the in-cluster destination",
    )
    kubernetes_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBERNETES_TOKEN",
        description="Bearer token for the in-cluster destination",
    )
    kubernetes_insecure: bool = Field(
        default=False,
        validation_alias="KUBERNETES_INSECURE",
        description="Skip TLS verification for the in-cluster destination",
    )
    clusters: list[ClusterInstance] = Field(
        default_factory=list,
        description="Additional destination clusters",
    )
    source_token: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token for fetching source archives",
    )

    # -------------------------------------------------------------------------
    # LOOP TUNING
    # -------------------------------------------------------------------------

    workers: int = Field(default=4, ge=1, description="Concurrent application reconciliations")
    resync_interval: float = Field(default=180.0, gt=0, description="Seconds between regular ticks")
    self_heal_interval: float = Field(default=5.0, gt=0, description="Seconds between self-heal probes")
    call_timeout: float = Field(default=30.0, gt=0, description="Timeout of one fetch, read or write")
    backoff_base: float = Field(default=5.0, gt=0, description="First retry delay in seconds")
    backoff_max: float = Field(default=300.0, gt=0, description="Retry delay cap in seconds")
    apply_attempts: int = Field(default=3, ge=1, description="Attempts per cluster write")
    sync_concurrency: int = Field(default=8, ge=1, description="Concurrent writes within one application")

    # -------------------------------------------------------------------------
    # OWNERSHIP AND STATE
    # -------------------------------------------------------------------------

    tracking_label: str = Field(
        default=DEFAULT_TRACKING_LABEL,
        description="Label recording which application owns a live resource",
    )
    field_manager: str = Field(default="gitops-reconciler", description="Server-side apply field manager")
    cascade_delete: bool = Field(
        default=True,
        description="Delete a removed application's resources when its policy prunes",
    )
    state_snapshot: Path | None = Field(
        default=None,
        description="JSON file the SyncState map is written to after every publish",
    )

    # -------------------------------------------------------------------------
    # SERVER METADATA AND LOGGING
    # -------------------------------------------------------------------------

    server_name: str = Field(default="gitops-reconciler", description="MCP server name")
    server_version: str = Field(default="0.1.0", description="MCP server version")
    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @model_validator(mode="after")
    def check_backoff(self) -> ReconcilerSettings:
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must not be smaller than backoff_base")
        return self

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def in_cluster(self) -> ClusterInstance | None:
        """The in-cluster destination, or None when KUBERNETES_URL is unset."""
        if not self.kubernetes_url:
            return None
        return ClusterInstance(
            name=IN_CLUSTER,
            url=self.kubernetes_url,
            token=self.kubernetes_token,
            insecure=self.kubernetes_insecure,
        )

    @property
    def all_clusters(self) -> list[ClusterInstance]:
        instances = []
        if self.in_cluster:
            instances.append(self.in_cluster)
        instances.extend(self.clusters)
        return instances

    def get_cluster(self, name: str = IN_CLUSTER) -> ClusterInstance | None:
        for instance in self.all_clusters:
            if instance.name == name:
                return instance
        return None

    def root_application(self) -> ApplicationSpec:
        """
        Root Application declaration.

        Read from ``root_manifest`` when set, otherwise assembled from the
        ``root_*`` fields. The root always auto-syncs its own children set.
        """
        if self.root_manifest:
            with self.root_manifest.open(encoding="utf-8") as f:
                return ApplicationSpec.from_manifest(yaml.safe_load(f))
        if not self.root_repo_url:
            raise ValueError("Set RECONCILER_ROOT_MANIFEST or RECONCILER_ROOT_REPO_URL")
        return ApplicationSpec(
            name=self.root_name,
            source=SourceRef(repo_url=self.root_repo_url, target_revision=self.root_revision, path=self.root_path),
            destination=Destination(cluster=IN_CLUSTER, namespace=self.root_namespace),
            sync_policy=SyncPolicy(auto_sync=True),
        )


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ReconcilerSettings:
    """
    Load settings from the environment.

    If RECONCILER_ENV_FILE is set, variables are also read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ReconcilerSettings(
        _env_file=os.environ.get("RECONCILER_ENV_FILE"),
    )
