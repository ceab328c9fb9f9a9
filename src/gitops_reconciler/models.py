# ABOUTME: Data model for the GitOps reconciler
# ABOUTME: Application declarations, overlay transformations, resource identity and sync state

"""
Data model shared by every stage of the reconciliation pipeline.

=============================================================================
TWO KINDS OF MODELS
=============================================================================

1. DECLARED models (pydantic): parsed from manifests in Git.
   - ApplicationSpec, SourceRef, Destination, SyncPolicy
   - Overlay transformations (SetNamespace, Patch, AddResources, ...)
   Validation errors here are declaration errors and surface as
   ManifestParseError.

2. RUNTIME models:
   - ResourceKey / Resource (frozen dataclasses): identity and content hash
     of one desired or live object
   - SyncAction / ActionResult / ReconciliationRun (dataclasses): one pass
   - ResourceState / SyncState (frozen pydantic): the published status
     snapshot, serialisable to JSON for restart recovery

=============================================================================
RESOURCE IDENTITY
=============================================================================

A resource is identified by (kind, namespace, name). Cluster-scoped kinds
carry an empty namespace. The apiVersion travels with the key because the
cluster API needs it, but two keys that differ only by apiVersion are the
same resource.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from gitops_reconciler.errors import ManifestParseError

# =============================================================================
# CONSTANTS
# =============================================================================

APPLICATION_API_VERSION = "argoproj.io/v1alpha1"
APPLICATION_KIND = "Application"

DEFAULT_TRACKING_LABEL = "app.kubernetes.io/instance"
SYNC_WAVE_ANNOTATION = "argocd.argoproj.io/sync-wave"

IN_CLUSTER = "in-cluster"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "APIService",
        "ClusterIssuer",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "Namespace",
        "Node",
        "PersistentVolume",
        "PriorityClass",
        "StorageClass",
        "ValidatingWebhookConfiguration",
    }
)


def is_cluster_scoped(kind: str) -> bool:
    return kind in CLUSTER_SCOPED_KINDS


def canonical_json(obj: Any) -> str:
    """Serialise with sorted keys and no whitespace so equal objects give equal text."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(obj: Any) -> str:
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


# =============================================================================
# STATUS ENUMS
# =============================================================================


class ResourceStatus(StrEnum):
    """Per-resource drift classification."""

    IN_SYNC = "InSync"
    OUT_OF_SYNC = "OutOfSync"
    MISSING = "Missing"
    ORPHANED = "Orphaned"
    CONFLICT = "Conflict"
    UNKNOWN = "Unknown"


class AppStatus(StrEnum):
    """Aggregate application status exposed on the status surface."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class SyncPhase(StrEnum):
    """Reconciliation state machine. Settled is re-entered, never terminal."""

    PENDING = "Pending"
    RESOLVING = "Resolving"
    DIFFING = "Diffing"
    SYNCING = "Syncing"
    SETTLED = "Settled"


class ActionType(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ActionOutcome(StrEnum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class RunOutcome(StrEnum):
    """Outcome of one reconciliation run."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    RECORDED = "Recorded"  # drift recorded, auto-sync disabled
    ERROR = "Error"  # run aborted before or during diff
    CANCELLED = "Cancelled"


class TriggerReason(StrEnum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    SELF_HEAL = "self-heal"
    RETRY = "retry"


# =============================================================================
# RESOURCE IDENTITY
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of one Kubernetes object: (kind, namespace, name)."""

    kind: str
    namespace: str
    name: str
    api_version: str = field(default="", compare=False, hash=False)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], default_namespace: str = "") -> ResourceKey:
        kind = manifest.get("kind")
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        if not kind or not name:
            raise ManifestParseError(f"Document is missing kind or metadata.name: {canonical_json(manifest)[:120]}")
        namespace = "" if is_cluster_scoped(kind) else (metadata.get("namespace") or default_namespace)
        return cls(
            kind=kind,
            namespace=namespace,
            name=name,
            api_version=manifest.get("apiVersion", ""),
        )


@dataclass(frozen=True)
class Resource:
    """
    A desired or live object with its identity and content hash.

    ``owner`` is the value of the tracking label, i.e. the application that
    declared the object. Manifests are treated as immutable once wrapped.
    """

    key: ResourceKey
    manifest: dict[str, Any] = field(compare=False)
    content_hash: str
    owner: str | None = None

    @classmethod
    def from_manifest(
        cls,
        manifest: dict[str, Any],
        *,
        tracking_label: str = DEFAULT_TRACKING_LABEL,
        default_namespace: str = "",
    ) -> Resource:
        key = ResourceKey.from_manifest(manifest, default_namespace)
        labels = (manifest.get("metadata") or {}).get("labels") or {}
        return cls(
            key=key,
            manifest=manifest,
            content_hash=content_hash(manifest),
            owner=labels.get(tracking_label),
        )


# =============================================================================
# OVERLAY TRANSFORMATIONS
# =============================================================================


class TargetSelector(BaseModel):
    """Selects the resource a transformation applies to."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str | None = None
    name: str
    namespace: str | None = None

    def matches(self, key: ResourceKey) -> bool:
        if key.name != self.name:
            return False
        if self.kind and key.kind != self.kind:
            return False
        return self.namespace is None or key.namespace == self.namespace

    def __str__(self) -> str:
        parts = [self.kind or "*", self.namespace or "*", self.name]
        return "/".join(parts)


class _Transformation(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class SetNamespace(_Transformation):
    op: Literal["namespace"] = "namespace"
    value: str


class AddLabels(_Transformation):
    op: Literal["labels"] = "labels"
    value: dict[str, str]


class AddAnnotations(_Transformation):
    op: Literal["annotations"] = "annotations"
    value: dict[str, str]


class NamePrefix(_Transformation):
    op: Literal["namePrefix"] = "namePrefix"
    value: str


class NameSuffix(_Transformation):
    op: Literal["nameSuffix"] = "nameSuffix"
    value: str


class Patch(_Transformation):
    op: Literal["patch"] = "patch"
    target: TargetSelector | None = None
    patch: dict[str, Any]


class AddResources(_Transformation):
    op: Literal["add"] = "add"
    value: list[dict[str, Any]]


class RemoveResource(_Transformation):
    op: Literal["remove"] = "remove"
    target: TargetSelector


class SetReplicas(_Transformation):
    op: Literal["replicas"] = "replicas"
    target: TargetSelector
    count: int = Field(ge=0)


class SetImage(_Transformation):
    op: Literal["images"] = "images"
    name: str
    new_name: str | None = Field(default=None, alias="newName")
    new_tag: str | None = Field(default=None, alias="newTag")
    digest: str | None = None


_SCALAR_OPS = {"namespace", "labels", "annotations", "namePrefix", "nameSuffix"}


def normalize_transformation(raw: Any) -> Any:
    """
    Accept the single-key manifest form of a transformation.

    ``{"namespace": "dev"}`` becomes ``{"op": "namespace", "value": "dev"}``;
    already-normalised mappings and model instances pass through.
    """
    if not isinstance(raw, dict) or "op" in raw:
        return raw
    if len(raw) != 1:
        raise ValueError(f"Transformation must have exactly one key, got {sorted(raw)}")
    op, value = next(iter(raw.items()))
    if op in _SCALAR_OPS:
        return {"op": op, "value": value}
    if op == "add":
        return {"op": "add", "value": value if isinstance(value, list) else [value]}
    if op == "remove":
        return {"op": "remove", "target": value}
    if op == "replicas":
        value = dict(value or {})
        count = value.pop("count", None)
        return {"op": "replicas", "target": value, "count": count}
    if op in ("patch", "images"):
        return {"op": op, **(value or {})}
    raise ValueError(f"Unknown transformation '{op}'")


Transformation = Annotated[
    SetNamespace
    | AddLabels
    | AddAnnotations
    | NamePrefix
    | NameSuffix
    | Patch
    | AddResources
    | RemoveResource
    | SetReplicas
    | SetImage,
    Field(discriminator="op"),
]

OverlayItem = Annotated[Transformation, BeforeValidator(normalize_transformation)]


class OverlayFile(BaseModel):
    """Overlay declaration found in a source directory (kustomization.yaml)."""

    model_config = ConfigDict(extra="ignore")

    bases: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)
    transformations: list[OverlayItem] = Field(default_factory=list)


# =============================================================================
# APPLICATION DECLARATION
# =============================================================================


class SourceRef(BaseModel):
    """Where an application's manifests live."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    repo_url: str = Field(alias="repoURL")
    target_revision: str = Field(default="HEAD", alias="targetRevision")
    path: str = "."


class Destination(BaseModel):
    """Target cluster and namespace, threaded explicitly through every call."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    cluster: str = Field(
        default=IN_CLUSTER,
        validation_alias=AliasChoices("cluster", "name", "server"),
    )
    namespace: str = ""

    @field_validator("cluster")
    @classmethod
    def normalize_cluster(cls, v: str) -> str:
        if v.rstrip("/") == IN_CLUSTER_SERVER:
            return IN_CLUSTER
        return v


class SyncPolicy(BaseModel):
    """Automation policy: autoSync, selfHeal, prune."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    auto_sync: bool = Field(default=False, alias="autoSync")
    self_heal: bool = Field(default=False, alias="selfHeal")
    prune: bool = False

    @model_validator(mode="before")
    @classmethod
    def expand_automated(cls, data: Any) -> Any:
        # ArgoCD form: `automated: {prune, selfHeal}`; presence enables auto-sync
        if not isinstance(data, dict) or "automated" not in data:
            return data
        data = dict(data)
        automated = data.pop("automated")
        if automated is None:
            data.setdefault("autoSync", False)
            return data
        data["autoSync"] = True
        data.setdefault("prune", bool(automated.get("prune", False)))
        data.setdefault("selfHeal", bool(automated.get("selfHeal", False)))
        return data


class ApplicationSpec(BaseModel):
    """
    One declared Application.

    ``parent`` is filled in by the graph resolver; it is never read from the
    manifest so a child cannot claim a different owner than the tree says.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
    source: SourceRef
    destination: Destination = Field(default_factory=Destination)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy, alias="syncPolicy")
    overlay: list[OverlayItem] = Field(default_factory=list)
    parent: str | None = None

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> ApplicationSpec:
        if manifest.get("kind") != APPLICATION_KIND:
            raise ManifestParseError(f"Expected kind {APPLICATION_KIND}, got {manifest.get('kind')!r}")
        metadata = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        try:
            return cls.model_validate(
                {
                    "name": metadata.get("name"),
                    "source": spec.get("source"),
                    "destination": spec.get("destination") or {},
                    "syncPolicy": spec.get("syncPolicy") or {},
                    "overlay": spec.get("overlay") or [],
                }
            )
        except ValidationError as e:
            raise ManifestParseError(
                f"Invalid Application declaration: {e.error_count()} error(s)",
                app=metadata.get("name"),
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from e

    def effective_namespace(self) -> str:
        """Destination namespace, else the overlay's last namespace transformation, else default."""
        if self.destination.namespace:
            return self.destination.namespace
        for item in reversed(self.overlay):
            if isinstance(item, SetNamespace):
                return item.value
        return "default"

    def resolved(self, parent: str | None) -> ApplicationSpec:
        """Fully specified copy: explicit namespace and owning parent."""
        return self.model_copy(
            update={
                "destination": self.destination.model_copy(update={"namespace": self.effective_namespace()}),
                "parent": parent,
            }
        )

    def identity_fingerprint(self) -> str:
        """Hash of the identity-defining fields: source and destination."""
        return content_hash(
            {
                "source": self.source.model_dump(mode="json"),
                "destination": {"cluster": self.destination.cluster, "namespace": self.effective_namespace()},
            }
        )


# =============================================================================
# SYNC ACTIONS AND RUNS
# =============================================================================


@dataclass(frozen=True)
class SyncAction:
    type: ActionType
    key: ResourceKey
    resource: Resource | None = None
    wave: int = 0
    rank: int = 0


@dataclass
class ActionResult:
    action: SyncAction
    outcome: ActionOutcome
    message: str = ""
    attempts: int = 0


@dataclass
class ReconciliationRun:
    """One pass over one application. Transient: only its SyncState outlives it."""

    application: str
    trigger: TriggerReason
    revision: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    actions: list[ActionResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    outcome: RunOutcome | None = None
    state: SyncState | None = None

    @property
    def mutations(self) -> list[ActionResult]:
        return [r for r in self.actions if r.outcome is ActionOutcome.SUCCEEDED]


# =============================================================================
# PUBLISHED STATE
# =============================================================================


class ResourceState(BaseModel):
    """Status of one resource as shown on the status surface."""

    model_config = ConfigDict(frozen=True)

    kind: str
    namespace: str
    name: str
    status: ResourceStatus
    outcome: ActionOutcome | None = None
    message: str = ""
    desired_hash: str | None = None
    live_hash: str | None = None


class SyncState(BaseModel):
    """
    Per-application snapshot.

    Immutable: the loop builds a new instance with ``model_copy(update=...)``
    and publishes it in one assignment, so readers never see a half-written
    state.
    """

    model_config = ConfigDict(frozen=True)

    application: str
    parent: str | None = None
    phase: SyncPhase = SyncPhase.PENDING
    status: AppStatus = AppStatus.UNKNOWN
    desired: dict[str, str] = Field(default_factory=dict)
    live: dict[str, str] = Field(default_factory=dict)
    resources: dict[str, ResourceState] = Field(default_factory=dict)
    revision: str | None = None
    last_outcome: RunOutcome | None = None
    last_reconciled_at: datetime | None = None
    errors: list[str] = Field(default_factory=list)
    consecutive_failures: int = 0
    next_retry_at: datetime | None = None
    live_kinds: list[str] = Field(default_factory=list)
