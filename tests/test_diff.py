"""Tests for the diff engine."""

import pytest

from groundwork.core.config_parser import Lifecycle, ResourceDeclaration
from groundwork.core.diff import (
    Action,
    AttributeDiff,
    DiffEngine,
    apply_ignore_changes,
    classify,
    diff_attributes,
    state_dependents,
)
from groundwork.core.expressions import UNKNOWN
from groundwork.core.graph import GraphBuilder
from groundwork.core.state import StateEntry
from groundwork.errors import ConfigError
from groundwork.providers.base import ResourceSchema


SCHEMA = ResourceSchema(immutable=frozenset({"ami"}), computed=frozenset({"public_ip"}))


def _graph(registry, *declarations):
    return GraphBuilder(registry).build({d.address: d for d in declarations}, {})


def _key(name="deploy-key", **kwargs):
    return ResourceDeclaration(type="fake_key", name="k1", arguments={"name": name}, **kwargs)


def _instance(key_ref="${fake_key.k1.name}", **arguments):
    return ResourceDeclaration(
        type="fake_instance",
        name="i1",
        arguments={"name": "web", "ami": "ami-1", "key_name": key_ref, **arguments},
    )


def _entry(address, resource_id, arguments, dependencies=(), **computed):
    res_type = address.split(".")[0]
    return StateEntry(
        address=address,
        type=res_type,
        id=resource_id,
        outputs={**arguments, **computed, "id": resource_id},
        arguments=dict(arguments),
        dependencies=list(dependencies),
    )


def _applied_state():
    return {
        "fake_key.k1": _entry("fake_key.k1", "key-1", {"name": "deploy-key"}, fingerprint="fp-1"),
        "fake_instance.i1": _entry(
            "fake_instance.i1", "i-2",
            {"name": "web", "ami": "ami-1", "key_name": "deploy-key"},
            dependencies=["fake_key.k1"], public_ip="10.0.0.1",
        ),
    }


# ---------------------------------------------------------------------------
# Attribute diffs
# ---------------------------------------------------------------------------

def test_diff_attributes_reports_only_changes():
    diffs = diff_attributes({"ami": "a", "size": 1}, {"ami": "a", "size": 2}, SCHEMA)

    assert list(diffs) == ["size"]
    assert diffs["size"].before == 1
    assert diffs["size"].after == 2
    assert not diffs["size"].forces_replacement


def test_diff_attributes_marks_immutable():
    diffs = diff_attributes({"ami": "a"}, {"ami": "b"}, SCHEMA)

    assert diffs["ami"].forces_replacement


def test_diff_attributes_added_and_removed():
    diffs = diff_attributes({"old": 1}, {"new": 2}, SCHEMA)

    assert diffs["old"].after is None
    assert diffs["new"].before is None


def test_unknown_is_always_a_diff():
    diffs = diff_attributes({"size": 1}, {"size": UNKNOWN}, SCHEMA)

    assert diffs["size"].after is UNKNOWN
    assert not diffs["size"].known


def test_classify():
    assert classify({}) == Action.NO_OP
    assert classify({"size": AttributeDiff("size", 1, 2)}) == Action.UPDATE
    assert classify({
        "size": AttributeDiff("size", 1, 2),
        "ami": AttributeDiff("ami", "a", "b", forces_replacement=True),
    }) == Action.REPLACE


def test_apply_ignore_changes():
    after = {"tags": {"env": "new"}, "size": 2, "extra": 1}
    before = {"tags": {"env": "old"}, "size": 1}

    effective = apply_ignore_changes(after, before, ["tags", "extra"])

    assert effective == {"tags": {"env": "old"}, "size": 2}
    assert apply_ignore_changes(after, None, ["tags"]) is after


def test_state_dependents_is_transitive():
    state = {
        "a.x": _entry("a.x", "1", {}),
        "b.x": _entry("b.x", "2", {}, dependencies=["a.x"]),
        "c.x": _entry("c.x", "3", {}, dependencies=["b.x"]),
        "d.x": _entry("d.x", "4", {}),
    }

    assert state_dependents(state, ["a.x"]) == {"a.x", "b.x", "c.x"}


# ---------------------------------------------------------------------------
# Plan-level classification
# ---------------------------------------------------------------------------

class TestDiffEngine:

    def test_everything_created_from_empty_state(self, registry):
        graph = _graph(registry, _key(), _instance())

        changes = DiffEngine(registry).diff(graph, {})

        assert [(c.address, c.action) for c in changes] == [
            ("fake_key.k1", Action.CREATE),
            ("fake_instance.i1", Action.CREATE),
        ]

    def test_known_argument_of_new_dependency_is_not_deferred(self, registry):
        changes = DiffEngine(registry).diff(_graph(registry, _key(), _instance()), {})

        instance = changes[1]
        assert instance.after["key_name"] == "deploy-key"
        assert not instance.deferred

    def test_computed_attribute_of_new_dependency_is_deferred(self, registry):
        graph = _graph(registry, _key(), _instance(fingerprint="${fake_key.k1.fingerprint}"))

        instance = DiffEngine(registry).diff(graph, {})[1]

        assert instance.after["fingerprint"] is UNKNOWN
        assert instance.deferred

    def test_matching_state_is_no_op(self, registry):
        graph = _graph(registry, _key(), _instance())

        changes = DiffEngine(registry).diff(graph, _applied_state())

        assert {c.action for c in changes} == {Action.NO_OP}
        assert not any(c.deferred for c in changes)

    def test_mutable_change_is_update(self, registry):
        graph = _graph(registry, _key(), _instance(instance_type="t3.small"))

        changes = {c.address: c for c in DiffEngine(registry).diff(graph, _applied_state())}

        assert changes["fake_instance.i1"].action == Action.UPDATE
        assert changes["fake_instance.i1"].prior_id == "i-2"
        assert changes["fake_key.k1"].action == Action.NO_OP

    def test_immutable_change_is_replace(self, registry):
        declaration = _instance()
        declaration.arguments["ami"] = "ami-2"
        graph = _graph(registry, _key(), declaration)

        change = DiffEngine(registry).diff(graph, _applied_state())[1]

        assert change.action == Action.REPLACE
        assert change.diffs["ami"].forces_replacement
        assert change.create_before_destroy is False

    def test_replacing_dependency_propagates_to_dependents(self, registry):
        graph = _graph(registry, _key("rotated-key"), _instance())

        changes = {c.address: c for c in DiffEngine(registry).diff(graph, _applied_state())}

        assert changes["fake_key.k1"].action == Action.REPLACE
        # key_name is an argument of the key, so it is known at plan time
        assert changes["fake_instance.i1"].action == Action.REPLACE
        assert changes["fake_instance.i1"].after["key_name"] == "rotated-key"

    def test_lifecycle_create_before_destroy(self, registry):
        declaration = _key("rotated-key", lifecycle=Lifecycle(create_before_destroy=True))
        graph = _graph(registry, declaration)

        change = DiffEngine(registry).diff(graph, {"fake_key.k1": _applied_state()["fake_key.k1"]})[0]

        assert change.action == Action.REPLACE
        assert change.create_before_destroy is True

    def test_ignore_changes_suppresses_diff(self, registry):
        declaration = _instance(instance_type="t3.large")
        declaration.lifecycle = Lifecycle(ignore_changes=["instance_type"])
        state = _applied_state()
        state["fake_instance.i1"].arguments["instance_type"] = "t3.micro"
        graph = _graph(registry, _key(), declaration)

        change = DiffEngine(registry).diff(graph, state)[1]

        assert change.action == Action.NO_OP

    def test_orphans_are_destroyed_after_other_changes(self, registry):
        graph = _graph(registry, _key())

        changes = DiffEngine(registry).diff(graph, _applied_state())

        assert [(c.address, c.action) for c in changes] == [
            ("fake_key.k1", Action.NO_OP),
            ("fake_instance.i1", Action.DESTROY),
        ]
        assert changes[1].prior_id == "i-2"

    def test_destroy_plan_reverses_dependencies(self, registry):
        graph = _graph(registry, _key(), _instance())

        changes = DiffEngine(registry).diff(graph, _applied_state(), destroy=True)

        assert [c.address for c in changes] == ["fake_instance.i1", "fake_key.k1"]
        assert {c.action for c in changes} == {Action.DESTROY}

    def test_targeted_destroy_includes_dependents(self, registry):
        graph = _graph(registry, _key(), _instance())

        changes = DiffEngine(registry).diff(graph, _applied_state(), destroy=True, targets=["fake_key.k1"])

        assert [c.address for c in changes] == ["fake_instance.i1", "fake_key.k1"]

    def test_targeted_apply_includes_dependencies_only(self, registry):
        group = ResourceDeclaration(type="fake_group", name="g", arguments={"name": "unrelated"})
        graph = _graph(registry, _key(), _instance(), group)

        changes = DiffEngine(registry).diff(graph, {}, targets=["fake_instance.i1"])

        assert sorted(c.address for c in changes) == ["fake_instance.i1", "fake_key.k1"]

    def test_prevent_destroy(self, registry):
        declaration = _key("rotated-key", lifecycle=Lifecycle(prevent_destroy=True))
        graph = _graph(registry, declaration)

        with pytest.raises(ConfigError, match="prevent_destroy"):
            DiffEngine(registry).diff(graph, {"fake_key.k1": _applied_state()["fake_key.k1"]})

    def test_normalization_avoids_spurious_diffs(self, registry):
        group = ResourceDeclaration(type="fake_group", name="g", arguments={"name": "g", "ports": [443, 80]})
        state = {"fake_group.g": _entry("fake_group.g", "sg-1", {"name": "g", "ports": [80, 443]})}

        change = DiffEngine(registry).diff(_graph(registry, group), state)[0]

        assert change.action == Action.NO_OP
