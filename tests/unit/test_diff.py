# ABOUTME: Unit tests for the diff/drift detector
# ABOUTME: Tests per-resource classification, conflict detection, aggregation and live normalisation

import copy

import pytest

from gitops_reconciler.diff import detect_drift, live_hash, normalize_live, project
from gitops_reconciler.models import AppStatus, Resource, ResourceKey, ResourceStatus

LABEL = "app.kubernetes.io/instance"


def _desired(manifest, owner="dev"):
    manifest = copy.deepcopy(manifest)
    manifest["metadata"]["namespace"] = "dev"
    manifest["metadata"].setdefault("labels", {})[LABEL] = owner
    return Resource.from_manifest(manifest)


def _live(resource: Resource, **changes):
    manifest = copy.deepcopy(resource.manifest)
    manifest["metadata"].update({"uid": "abc-123", "resourceVersion": "42", "creationTimestamp": "2026-01-01T00:00:00Z"})
    manifest["status"] = {"readyReplicas": 1}
    for path, value in changes.items():
        node = manifest
        *parents, leaf = path.split("__")
        for part in parents:
            node = node[part]
        node[leaf] = value
    return Resource.from_manifest(manifest)


def _by_key(*resources):
    return {r.key: r for r in resources}


@pytest.mark.unit
class TestDetectDrift:
    """Tests for detect_drift()."""

    def test_in_sync_ignores_server_fields(self, deployment):
        """Test that uid, resourceVersion and status do not count as drift."""
        desired = _desired(deployment())

        result = detect_drift("dev", _by_key(desired), _by_key(_live(desired)))

        assert result.items[desired.key].status is ResourceStatus.IN_SYNC
        assert result.status is AppStatus.SYNCED
        assert result.in_sync

    def test_server_defaults_ignored(self, deployment):
        """Test that fields the server added are not drift."""
        desired = _desired(deployment())
        live = _live(desired, spec__revisionHistoryLimit=10)

        assert detect_drift("dev", _by_key(desired), _by_key(live)).in_sync

    def test_declared_field_edit_is_drift(self, deployment):
        """Test that a changed declared field is OutOfSync."""
        desired = _desired(deployment())
        live = _live(desired, spec__replicas=9)

        result = detect_drift("dev", _by_key(desired), _by_key(live))

        assert result.items[desired.key].status is ResourceStatus.OUT_OF_SYNC
        assert result.status is AppStatus.OUT_OF_SYNC

    def test_missing(self, deployment):
        """Test that desired-only resources are Missing."""
        desired = _desired(deployment())

        result = detect_drift("dev", _by_key(desired), {})

        assert result.items[desired.key].status is ResourceStatus.MISSING
        assert result.status is AppStatus.OUT_OF_SYNC

    def test_orphaned(self, config_map):
        """Test that owned live-only resources are Orphaned with a live hash."""
        orphan = _live(_desired(config_map("old")))

        result = detect_drift("dev", {}, _by_key(orphan))
        item = result.items[orphan.key]

        assert item.status is ResourceStatus.ORPHANED
        assert item.live_hash is not None
        assert result.with_status(ResourceStatus.ORPHANED) == [item]

    def test_live_only_owned_elsewhere_ignored(self, config_map):
        """Test that another application's live objects are not this app's orphans."""
        foreign = _live(_desired(config_map("theirs"), owner="staging"))

        result = detect_drift("dev", {}, _by_key(foreign))

        assert result.items == {}
        assert result.status is AppStatus.SYNCED

    def test_conflict_from_claims(self, config_map):
        """Test that a resource declared by two applications is a Conflict."""
        desired = _desired(config_map("shared"))
        claims = {("in-cluster", desired.key): frozenset({"dev", "staging"})}

        result = detect_drift("dev", _by_key(desired), {}, claims=claims)
        item = result.items[desired.key]

        assert item.status is ResourceStatus.CONFLICT
        assert "staging" in item.message
        assert result.status is AppStatus.DEGRADED

    def test_claims_are_per_cluster(self, config_map):
        """Test that the same identity on a different cluster is not a conflict."""
        desired = _desired(config_map("shared"))
        claims = {("prod-eu", desired.key): frozenset({"dev", "staging"})}

        result = detect_drift("dev", _by_key(desired), {}, claims=claims)

        assert result.items[desired.key].status is ResourceStatus.MISSING

    def test_conflict_from_live_owner(self, config_map):
        """Test that a live object labelled for another app is a Conflict."""
        desired = _desired(config_map("shared"))
        live = _live(_desired(config_map("shared"), owner="staging"))

        item = detect_drift("dev", _by_key(desired), _by_key(live)).items[desired.key]

        assert item.status is ResourceStatus.CONFLICT
        assert "owned by staging" in item.message

    def test_unlabelled_live_object_is_adopted(self, config_map):
        """Test that a same-named object without an owner label is plain drift."""
        desired = _desired(config_map("c", {"a": "1"}))
        manifest = copy.deepcopy(desired.manifest)
        del manifest["metadata"]["labels"]
        live = Resource.from_manifest(manifest)

        item = detect_drift("dev", _by_key(desired), _by_key(live)).items[desired.key]

        assert item.status is ResourceStatus.OUT_OF_SYNC

    def test_items_sorted(self, config_map):
        """Test that diff items are ordered by identity."""
        b, a = _desired(config_map("b")), _desired(config_map("a"))

        result = detect_drift("dev", _by_key(b, a), {})

        assert [key.name for key in result.items] == ["a", "b"]

    def test_empty_is_synced(self):
        """Test that an application with nothing desired or live is Synced."""
        assert detect_drift("dev", {}, {}).status is AppStatus.SYNCED


@pytest.mark.unit
class TestNormalisation:
    """Tests for live normalisation and projection."""

    def test_normalize_live_drops_server_fields(self):
        """Test that status, server metadata and last-applied are removed."""
        live = {
            "kind": "ConfigMap",
            "metadata": {
                "name": "c",
                "uid": "u",
                "resourceVersion": "1",
                "managedFields": [],
                "annotations": {"kubectl.kubernetes.io/last-applied-configuration": "{}"},
            },
            "status": {},
        }

        assert normalize_live(live) == {"kind": "ConfigMap", "metadata": {"name": "c"}}
        assert "uid" in live["metadata"]

    def test_project_restricts_to_desired_paths(self):
        """Test that projection keeps only declared paths, recursing into lists."""
        live = {"spec": {"replicas": 2, "strategy": {}, "ports": [{"port": 80, "protocol": "TCP"}]}}
        desired = {"spec": {"replicas": 2, "ports": [{"port": 80}]}}

        assert project(live, desired) == {"spec": {"replicas": 2, "ports": [{"port": 80}]}}

    def test_project_keeps_lists_of_different_length(self):
        """Test that a list with extra live items is compared whole."""
        live = {"args": ["a", "b"]}
        assert project(live, {"args": ["a"]}) == {"args": ["a", "b"]}

    def test_live_hash_matches_desired_after_apply(self, config_map):
        """Test that the hash of an applied object equals the desired hash."""
        desired = _desired(config_map("c", {"k": "v"}))
        assert live_hash(_live(desired), desired) == desired.content_hash

    def test_key_type(self):
        """Test that diffs are keyed by ResourceKey."""
        desired = Resource.from_manifest({"kind": "ConfigMap", "metadata": {"name": "c", "namespace": "dev"}})
        result = detect_drift("dev", _by_key(desired), {})
        assert ResourceKey("ConfigMap", "dev", "c") in result.items
