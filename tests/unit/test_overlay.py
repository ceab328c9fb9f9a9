# ABOUTME: Unit tests for the overlay composer
# ABOUTME: Tests ordered transformations, determinism, target errors and the default merge

import copy

import pytest
from pydantic import TypeAdapter

from gitops_reconciler.errors import CompositionError, TargetNotFoundError
from gitops_reconciler.models import OverlayItem, ResourceKey
from gitops_reconciler.overlay import compose, render_documents, strategic_merge

OVERLAY = TypeAdapter(list[OverlayItem])


def _overlay(*items):
    return OVERLAY.validate_python(list(items))


def _by_key(documents):
    return {str(ResourceKey.from_manifest(doc)): doc for doc in documents}


@pytest.mark.unit
class TestCompose:
    """Tests for compose()."""

    def test_empty_overlay_is_identity(self, deployment, service):
        """Test that no transformations leave the base unchanged."""
        base = [deployment(), service()]
        assert compose(base, []) == base

    def test_inputs_not_mutated(self, deployment):
        """Test that compose works on a copy of the base."""
        base = [deployment()]
        snapshot = copy.deepcopy(base)

        compose(base, _overlay({"namespace": "dev"}, {"labels": {"env": "dev"}}))

        assert base == snapshot

    def test_deterministic_output(self, deployment, service):
        """Test that the same inputs render byte-identical output."""
        base = [deployment(), service()]
        overlay = _overlay({"namespace": "prod"}, {"labels": {"env": "prod"}})

        first = render_documents(compose(base, overlay))
        second = render_documents(compose(copy.deepcopy(base), overlay))

        assert first == second

    def test_environment_overlays_differ_only_where_declared(self, deployment, service):
        """Test that prod's replica patch does not leak into dev."""
        base = [deployment(), service()]
        dev = compose(base, _overlay({"namespace": "dev"}))
        prod = compose(
            base,
            _overlay(
                {"namespace": "prod"},
                {"patch": {"target": {"kind": "Deployment", "name": "web"}, "patch": {"spec": {"replicas": 4}}}},
            ),
        )

        assert _by_key(dev)["Deployment/dev/web"]["spec"]["replicas"] == 2
        assert _by_key(prod)["Deployment/prod/web"]["spec"]["replicas"] == 4

    def test_namespace_skips_cluster_scoped(self, deployment):
        """Test that namespace transformations leave cluster-scoped kinds alone."""
        ns = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "team"}}

        result = _by_key(compose([deployment(), ns], _overlay({"namespace": "team"})))

        assert "namespace" not in result["Namespace/team"]["metadata"]
        assert result["Deployment/team/web"]["metadata"]["namespace"] == "team"

    def test_labels_reach_pod_template(self, deployment):
        """Test that labels are added to the object and its pod template."""
        [doc] = compose([deployment()], _overlay({"labels": {"env": "dev"}}))

        assert doc["metadata"]["labels"] == {"app": "web", "env": "dev"}
        assert doc["spec"]["template"]["metadata"]["labels"]["env"] == "dev"

    def test_last_write_wins(self, deployment):
        """Test that later transformations override earlier ones on the same field."""
        [doc] = compose(
            [deployment()],
            _overlay(
                {"labels": {"tier": "a"}},
                {"replicas": {"kind": "Deployment", "name": "web", "count": 3}},
                {"labels": {"tier": "b"}},
                {"replicas": {"kind": "Deployment", "name": "web", "count": 5}},
            ),
        )

        assert doc["metadata"]["labels"]["tier"] == "b"
        assert doc["spec"]["replicas"] == 5

    def test_name_prefix_and_suffix(self, config_map):
        """Test renaming transformations rekey the set."""
        result = compose([config_map("settings")], _overlay({"namePrefix": "dev-"}, {"nameSuffix": "-v1"}))

        assert list(_by_key(result)) == ["ConfigMap/dev-settings-v1"]

    def test_add_then_patch_added_resource(self, deployment, config_map):
        """Test that a patch may target a resource added earlier in the overlay."""
        result = compose(
            [deployment()],
            _overlay(
                {"add": config_map("extra", {"a": "1"})},
                {"patch": {"target": {"kind": "ConfigMap", "name": "extra"}, "patch": {"data": {"b": "2"}}}},
            ),
        )

        assert _by_key(result)["ConfigMap/extra"]["data"] == {"a": "1", "b": "2"}

    def test_patch_before_add_fails(self, deployment, config_map):
        """Test that a patch cannot target a resource added later."""
        with pytest.raises(TargetNotFoundError):
            compose(
                [deployment()],
                _overlay(
                    {"patch": {"target": {"kind": "ConfigMap", "name": "extra"}, "patch": {"data": {"b": "2"}}}},
                    {"add": config_map("extra")},
                ),
            )

    def test_patch_target_inferred_from_metadata(self, deployment):
        """Test that a patch without a target uses its own kind and name."""
        [doc] = compose(
            [deployment()],
            _overlay({"patch": {"patch": {"kind": "Deployment", "metadata": {"name": "web"}, "spec": {"replicas": 7}}}}),
        )
        assert doc["spec"]["replicas"] == 7

    def test_patch_without_any_target_rejected(self, deployment):
        """Test that an untargeted patch without metadata.name is a composition error."""
        with pytest.raises(CompositionError, match="no target"):
            compose([deployment()], _overlay({"patch": {"patch": {"spec": {"replicas": 1}}}}))

    def test_missing_target_names_it(self, deployment):
        """Test that TargetNotFoundError carries the selector."""
        with pytest.raises(TargetNotFoundError) as exc_info:
            compose([deployment()], _overlay({"replicas": {"kind": "StatefulSet", "name": "db", "count": 1}}))

        assert exc_info.value.resource == "StatefulSet/*/db"

    def test_remove(self, deployment, service):
        """Test that remove drops the targeted resource."""
        result = compose([deployment(), service()], _overlay({"remove": {"kind": "Service", "name": "web"}}))
        assert list(_by_key(result)) == ["Deployment/web"]

    def test_duplicate_add_rejected(self, deployment):
        """Test that adding an identity already in the set fails."""
        with pytest.raises(CompositionError, match="more than once"):
            compose([deployment()], _overlay({"add": deployment(replicas=9)}))

    def test_duplicate_base_rejected(self, config_map):
        """Test that a base with the same identity twice fails."""
        with pytest.raises(CompositionError):
            compose([config_map("a"), config_map("a")], [])

    def test_rename_collision_rejected(self, config_map):
        """Test that a rename that merges two identities fails."""
        base = [config_map("a", namespace="x"), config_map("a", namespace="y")]
        with pytest.raises(CompositionError, match="collide"):
            compose(base, _overlay({"namespace": "z"}))

    def test_images(self, deployment):
        """Test that image overrides rewrite matching containers only."""
        base = [deployment(image="nginx:1.25"), deployment(name="api", image="ghcr.io/org/api:2.0")]

        result = _by_key(compose(base, _overlay({"images": {"name": "nginx", "newTag": "1.27"}})))

        assert result["Deployment/web"]["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:1.27"
        assert result["Deployment/api"]["spec"]["template"]["spec"]["containers"][0]["image"] == "ghcr.io/org/api:2.0"

    def test_images_new_name_and_digest(self, deployment):
        """Test renaming an image and pinning a digest."""
        [doc] = compose(
            [deployment(image="nginx:1.25")],
            _overlay({"images": {"name": "nginx", "newName": "mirror.local/nginx", "digest": "sha256:abc"}}),
        )
        assert doc["spec"]["template"]["spec"]["containers"][0]["image"] == "mirror.local/nginx@sha256:abc"

    def test_custom_merge_function(self, deployment):
        """Test that the patch merge is injectable."""
        calls = []

        def replace(document, patch):
            calls.append(patch)
            return {**document, **patch}

        [doc] = compose(
            [deployment()],
            _overlay({"patch": {"target": {"name": "web"}, "patch": {"spec": {"replicas": 1}}}}),
            merge=replace,
        )

        assert calls == [{"spec": {"replicas": 1}}]
        assert doc["spec"] == {"replicas": 1}


@pytest.mark.unit
class TestStrategicMerge:
    """Tests for the default document merge."""

    def test_nested_maps_merge(self):
        """Test recursive map merge."""
        assert strategic_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}}) == {"a": {"b": 1, "c": 3}}

    def test_none_deletes(self):
        """Test that a null value removes the key."""
        assert strategic_merge({"a": 1, "b": 2}, {"b": None}) == {"a": 1}

    def test_named_lists_merge_by_name(self):
        """Test that container-like lists merge item by name."""
        doc = {"containers": [{"name": "app", "image": "a:1"}, {"name": "sidecar", "image": "s:1"}]}

        result = strategic_merge(doc, {"containers": [{"name": "app", "image": "a:2"}, {"name": "new", "image": "n"}]})

        assert result["containers"] == [
            {"name": "app", "image": "a:2"},
            {"name": "sidecar", "image": "s:1"},
            {"name": "new", "image": "n"},
        ]

    @pytest.mark.parametrize("old, new", [(2, 4), (1.5, 2.5), (False, True), ("a", "b")])
    def test_scalars_replace(self, old, new):
        """Test that scalar values are replaced."""
        assert strategic_merge({"spec": {"replicas": old}}, {"spec": {"replicas": new}}) == {"spec": {"replicas": new}}

    def test_scalar_replaces_list(self):
        """Test that a scalar patch over a named list replaces it."""
        assert strategic_merge({"ports": [{"name": "http"}]}, {"ports": 0}) == {"ports": 0}

    def test_plain_lists_replace(self):
        """Test that lists without names are replaced wholesale."""
        assert strategic_merge({"args": ["a", "b"]}, {"args": ["c"]}) == {"args": ["c"]}

    def test_does_not_mutate_document(self):
        """Test that the merge returns a new document."""
        doc = {"a": {"b": 1}}
        strategic_merge(doc, {"a": {"b": 2}})
        assert doc == {"a": {"b": 1}}


@pytest.mark.unit
class TestRenderDocuments:
    """Tests for canonical rendering."""

    def test_key_order_does_not_matter(self):
        """Test that dict insertion order does not change the rendering."""
        a = {"kind": "ConfigMap", "metadata": {"name": "x"}, "data": {"k": "v"}}
        b = {"data": {"k": "v"}, "metadata": {"name": "x"}, "kind": "ConfigMap"}

        assert render_documents([a]) == render_documents([b])
