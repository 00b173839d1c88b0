# ABOUTME: Unit tests for the desired-state differ
# ABOUTME: Tests create/update/delete decisions, prune, normalization and phase ordering

import itertools
import random

import pytest

from conftest import make_resource
from gitops_reconciler.differ import (
    APPLIED_FIELDS_ANNOTATION,
    applied_fields,
    applied_fields_of,
    diff,
    normalize,
    order_operations,
    resources_equal,
    with_applied_fields,
)
from gitops_reconciler.models import OperationType, ResourceKey, SyncOperation


def _live(resource, **extra_metadata):
    """Return ``resource`` as the API server would echo it back."""
    manifest = resource.to_manifest()
    manifest["metadata"].update(
        {"resourceVersion": "42", "uid": "0b1c", "creationTimestamp": "2026-01-01T00:00:00Z"}
    )
    manifest["metadata"].update(extra_metadata)
    manifest["status"] = {"readyReplicas": 1}
    return type(resource).from_manifest(manifest)


@pytest.mark.unit
class TestNormalization:
    """Tests for semantic equality."""

    def test_normalize_strips_server_fields(self):
        manifest = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": "c",
                "resourceVersion": "1",
                "uid": "u",
                "managedFields": [{"manager": "kubectl"}],
                "annotations": {
                    "kubectl.kubernetes.io/last-applied-configuration": "{}",
                },
                "labels": {},
            },
            "data": {"a": "1"},
            "status": {"phase": "Active"},
        }

        assert normalize(manifest) == {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "c"},
            "data": {"a": "1"},
        }

    def test_server_defaults_are_ignored(self):
        """Test that fields only the server set do not count as a change."""
        desired = make_resource("Deployment", "web", "ns", api_version="apps/v1", spec={"replicas": 2})
        live_manifest = _live(desired).to_manifest()
        live_manifest["spec"]["revisionHistoryLimit"] = 10
        live = type(desired).from_manifest(live_manifest)

        assert resources_equal(desired, live)

    def test_changed_field_is_detected(self):
        desired = make_resource("Deployment", "web", "ns", api_version="apps/v1", spec={"replicas": 3})
        live = _live(make_resource("Deployment", "web", "ns", api_version="apps/v1", spec={"replicas": 2}))

        assert not resources_equal(desired, live)

    def test_list_length_matters(self):
        desired = make_resource("ConfigMap", "c", "ns", items=[{"a": 1}])
        live = _live(make_resource("ConfigMap", "c", "ns", items=[{"a": 1}, {"b": 2}]))

        assert not resources_equal(desired, live)


@pytest.mark.unit
class TestAppliedFields:
    """Tests for detecting fields removed from Git."""

    def test_applied_fields_are_keys_only(self):
        resource = make_resource("ConfigMap", "cfg", "ns", data={"a": "1"}, binaryData={})

        assert applied_fields(resource.payload) == {
            "apiVersion": None,
            "kind": None,
            "metadata": {"name": None, "namespace": None},
            "data": {"a": None},
        }

    def test_key_removed_from_git_is_update(self):
        applied = with_applied_fields(make_resource("ConfigMap", "cfg", "ns", data={"a": "1", "b": "2"}))
        desired = with_applied_fields(make_resource("ConfigMap", "cfg", "ns", data={"a": "1"}))

        result = diff([desired], [_live(applied)], prune=True)

        assert [(op.type, op.resource.key) for op in result.operations] == [
            (OperationType.UPDATE, ResourceKey("ConfigMap", "ns", "cfg"))
        ]

    def test_label_removed_from_git_is_update(self):
        applied = with_applied_fields(
            make_resource(
                "Deployment", "web", "ns", api_version="apps/v1", labels={"app": "web", "tier": "front"}
            )
        )
        desired = with_applied_fields(
            make_resource("Deployment", "web", "ns", api_version="apps/v1", labels={"app": "web"})
        )

        assert not resources_equal(desired, _live(applied))

    def test_removed_key_already_gone_live_is_in_sync(self):
        applied = with_applied_fields(make_resource("ConfigMap", "cfg", "ns", data={"a": "1", "b": "2"}))
        desired = with_applied_fields(make_resource("ConfigMap", "cfg", "ns", data={"a": "1"}))
        live_manifest = _live(applied).to_manifest()
        del live_manifest["data"]["b"]
        live_manifest["metadata"]["annotations"] = desired.payload["metadata"]["annotations"]

        assert resources_equal(desired, type(desired).from_manifest(live_manifest))

    def test_server_defaults_still_ignored(self):
        desired = with_applied_fields(
            make_resource("Deployment", "web", "ns", api_version="apps/v1", spec={"replicas": 2})
        )
        live_manifest = _live(desired).to_manifest()
        live_manifest["spec"]["revisionHistoryLimit"] = 10

        assert resources_equal(desired, type(desired).from_manifest(live_manifest))

    def test_unreadable_annotation_falls_back_to_containment(self):
        desired = make_resource("ConfigMap", "cfg", "ns", data={"a": "1"})
        live = _live(
            make_resource("ConfigMap", "cfg", "ns", data={"a": "1", "b": "2"}),
            annotations={APPLIED_FIELDS_ANNOTATION: "not json"},
        )

        assert applied_fields_of(live) is None
        assert resources_equal(desired, live)

    def test_apply_then_diff_is_empty_with_annotation(self):
        desired = [
            with_applied_fields(make_resource("ConfigMap", "cfg", "ns", data={"a": "1"})),
            with_applied_fields(make_resource("Namespace", "ns")),
        ]

        assert diff(desired, [_live(r) for r in desired], prune=True).in_sync


@pytest.mark.unit
class TestSecretStringData:
    """Tests for Secrets written with stringData."""

    def test_string_data_matches_encoded_data(self):
        desired = make_resource("Secret", "creds", "ns", stringData={"password": "x"})
        live = _live(make_resource("Secret", "creds", "ns", data={"password": "eA=="}))

        assert resources_equal(desired, live)

    def test_changed_string_data_is_detected(self):
        desired = make_resource("Secret", "creds", "ns", stringData={"password": "y"})
        live = _live(make_resource("Secret", "creds", "ns", data={"password": "eA=="}))

        assert not resources_equal(desired, live)

    def test_string_data_overrides_data(self):
        secret = make_resource(
            "Secret", "creds", "ns", data={"user": "YQ==", "password": "eA=="}, stringData={"password": "y"}
        )

        assert normalize(secret.payload)["data"] == {"user": "YQ==", "password": "eQ=="}
        assert "stringData" not in normalize(secret.payload)


@pytest.mark.unit
class TestDiff:
    """Tests for diff()."""

    def test_identical_sets_yield_nothing(self):
        """Test that diffing equal desired and live state gives no operations."""
        desired = [
            make_resource("ConfigMap", "a", "ns", data={"k": "v"}),
            make_resource("Service", "web", "ns", spec={"ports": [{"port": 80}]}),
        ]
        live = [_live(r) for r in desired]

        result = diff(desired, live, prune=True)

        assert result.operations == []
        assert result.drift == []
        assert result.in_sync

    def test_create_update_delete(self):
        desired = [
            make_resource("ConfigMap", "new", "ns"),
            make_resource("ConfigMap", "changed", "ns", data={"k": "2"}),
            make_resource("ConfigMap", "same", "ns", data={"k": "1"}),
        ]
        live = [
            _live(make_resource("ConfigMap", "changed", "ns", data={"k": "1"})),
            _live(make_resource("ConfigMap", "same", "ns", data={"k": "1"})),
            _live(make_resource("ConfigMap", "orphan", "ns")),
        ]

        result = diff(desired, live, prune=True)

        assert [(op.type, op.resource.name) for op in result.operations] == [
            (OperationType.UPDATE, "changed"),
            (OperationType.CREATE, "new"),
            (OperationType.DELETE, "orphan"),
        ]

    def test_orphan_without_prune_is_drift(self):
        """Test that prune=false leaves live-only resources and flags them."""
        desired = [make_resource("Deployment", "web", "ns", api_version="apps/v1")]
        live = [_live(r) for r in desired] + [_live(make_resource("ConfigMap", "legacy", "ns"))]

        result = diff(desired, live, prune=False)

        assert result.operations == []
        assert result.drift == [ResourceKey("ConfigMap", "ns", "legacy")]
        assert not result.in_sync

    def test_namespace_before_deployment(self):
        """Test that a new Namespace is created before workloads inside it."""
        desired = [
            make_resource("Deployment", "web", "web", api_version="apps/v1"),
            make_resource("Namespace", "web"),
        ]

        result = diff(desired, [])

        assert [op.resource.kind for op in result.operations] == ["Namespace", "Deployment"]
        assert all(op.type == OperationType.CREATE for op in result.operations)

    def test_image_bump_is_single_update(self):
        """Test that changing one container image yields exactly one Update."""
        old = make_resource(
            "Deployment", "web", "ns", api_version="apps/v1",
            spec={"template": {"spec": {"containers": [{"name": "web", "image": "nginx:1.24"}]}}},
        )
        new = make_resource(
            "Deployment", "web", "ns", api_version="apps/v1",
            spec={"template": {"spec": {"containers": [{"name": "web", "image": "nginx:1.25"}]}}},
        )

        result = diff([new], [_live(old)])

        assert len(result.operations) == 1
        assert result.operations[0].type == OperationType.UPDATE
        assert result.operations[0].resource is new

    def test_duplicate_identity_raises(self):
        a = make_resource("ConfigMap", "a", "ns")
        with pytest.raises(ValueError, match="duplicate desired"):
            diff([a, a], [])

    def test_apply_then_diff_is_empty(self):
        """Test that applying the operations and diffing again yields nothing."""
        desired = [
            make_resource("Namespace", "web"),
            make_resource("ConfigMap", "c", "web", data={"k": "v"}),
        ]
        first = diff(desired, [])
        applied = [_live(op.resource) for op in first.operations]

        assert diff(desired, applied).operations == []


@pytest.mark.unit
class TestOrdering:
    """Tests for phase ordering."""

    RESOURCES = [
        make_resource("Ingress", "web", "ns", api_version="networking.k8s.io/v1"),
        make_resource("NetworkPolicy", "deny", "ns", api_version="networking.k8s.io/v1"),
        make_resource("Deployment", "web", "ns", api_version="apps/v1"),
        make_resource("Service", "web", "ns"),
        make_resource("Widget", "w", "ns", api_version="example.com/v1"),
        make_resource("ConfigMap", "b", "ns"),
        make_resource("ConfigMap", "a", "ns"),
        make_resource("Secret", "s", "ns"),
        make_resource(
            "CustomResourceDefinition", "widgets.example.com",
            api_version="apiextensions.k8s.io/v1",
        ),
        make_resource("Namespace", "ns"),
    ]

    EXPECTED = [
        "Namespace ns",
        "CustomResourceDefinition widgets.example.com",
        "ConfigMap ns/a",
        "ConfigMap ns/b",
        "Secret ns/s",
        "Deployment ns/web",
        "Service ns/web",
        "Widget ns/w",
        "NetworkPolicy ns/deny",
        "Ingress ns/web",
    ]

    def test_phase_table_order(self):
        ops = [SyncOperation(OperationType.CREATE, r) for r in self.RESOURCES]

        assert [str(op.resource.key) for op in order_operations(ops)] == self.EXPECTED

    def test_order_is_independent_of_input_order(self):
        """Test that every input permutation produces the same sequence."""
        rng = random.Random(7)
        for _ in range(25):
            shuffled = list(self.RESOURCES)
            rng.shuffle(shuffled)
            result = diff(shuffled, [])
            assert [str(op.resource.key) for op in result.operations] == self.EXPECTED

    def test_small_permutations(self):
        resources = self.RESOURCES[:4]
        orders = {
            tuple(str(op.resource.key) for op in diff(list(p), []).operations)
            for p in itertools.permutations(resources)
        }
        assert len(orders) == 1
