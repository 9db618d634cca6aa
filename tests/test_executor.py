"""Tests for the PlanExecutor: ordering, isolation, retries, timeouts, cancellation."""

import threading

import pytest

from groundwork.core.config_parser import Lifecycle, ResourceDeclaration
from groundwork.core.diff import Action
from groundwork.core.engine import OPERATIONS
from groundwork.core.executor import NodeState, PlanExecutor
from groundwork.core.graph import GraphBuilder
from groundwork.core.plan import Planner
from groundwork.core.state import StateEntry, StateStore
from groundwork.errors import (
    CycleError,
    DependencyFailedError,
    ProviderError,
    ProviderTimeoutError,
)
from groundwork.utils.retry import RetryPolicy


def _declare(type_, res_name, depends_on=(), lifecycle=None, **arguments):
    return ResourceDeclaration(
        type=type_,
        name=res_name,
        arguments=arguments,
        depends_on=list(depends_on),
        lifecycle=lifecycle or Lifecycle(),
    )


def _graph(registry, *declarations):
    return GraphBuilder(registry).build({d.address: d for d in declarations}, {})


def _execute(graph, store, registry, destroy=False, **kwargs):
    state = store.load()
    plan = Planner(registry, RetryPolicy(attempts=1, delay=0.0)).plan(
        graph, state, store.lineage, store.serial, destroy=destroy
    )
    kwargs.setdefault("retry_policies", {op: RetryPolicy(attempts=3, delay=0.0) for op in OPERATIONS})
    kwargs.setdefault("poll_interval", 0.01)
    return plan, PlanExecutor(graph, plan, store, registry, **kwargs).execute()


def _key_and_instance(registry, key_name="deploy-key", **instance_arguments):
    return _graph(
        registry,
        _declare("fake_key", "k1", name=key_name),
        _declare("fake_instance", "i1", name="web", ami="ami-1",
                 key_name="${fake_key.k1.name}", **instance_arguments),
    )


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state.json"))


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

class TestOrdering:

    def test_dependency_finishes_before_dependent_starts(self, registry, cloud, store):
        _, result = _execute(_key_and_instance(registry), store, registry)

        assert result.success
        assert cloud.log.index(("end", "create", "deploy-key")) < cloud.log.index(("start", "create", "web"))

    def test_destroy_runs_dependents_first(self, registry, cloud, store):
        graph = _key_and_instance(registry)
        _execute(graph, store, registry)

        _, result = _execute(graph, store, registry, destroy=True)

        assert result.success
        assert cloud.calls_for("delete") == ["web", "deploy-key"]
        assert store.load() == {}

    def test_parallelism_bounds_concurrent_operations(self, registry, cloud, store):
        names = [f"g{i}" for i in range(6)]
        for name in names:
            cloud.delay(name, 0.05)
        graph = _graph(registry, *[_declare("fake_group", name, name=name) for name in names])

        _, result = _execute(graph, store, registry, parallelism=2)

        assert result.success
        assert cloud.max_active <= 2
        assert sorted(cloud.calls_for("create")) == names

    def test_cyclic_recorded_dependencies_are_rejected(self, registry, cloud, store):
        graph = _graph(registry)
        cloud.objects["sg-1"] = {"name": "a"}
        cloud.objects["sg-2"] = {"name": "b"}
        store.commit("fake_group.a", StateEntry("fake_group.a", "fake_group", "sg-1",
                                                dependencies=["fake_group.b"]))
        store.commit("fake_group.b", StateEntry("fake_group.b", "fake_group", "sg-2",
                                                dependencies=["fake_group.a"]))

        with pytest.raises(CycleError):
            _execute(graph, store, registry, destroy=True)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    def test_failure_skips_dependents_but_not_siblings(self, registry, cloud, store):
        cloud.fail_on("create", "deploy-key", ProviderError("quota exceeded"))
        graph = _graph(
            registry,
            _declare("fake_key", "k1", name="deploy-key"),
            _declare("fake_instance", "i1", name="web", ami="ami-1", key_name="${fake_key.k1.name}"),
            _declare("fake_group", "g", name="sibling"),
        )

        _, result = _execute(graph, store, registry)

        assert not result.success
        assert result.states["fake_key.k1"] == NodeState.FAILED
        assert result.states["fake_instance.i1"] == NodeState.FAILED
        assert isinstance(result.failures["fake_instance.i1"], DependencyFailedError)
        assert result.failures["fake_instance.i1"].dependency == "fake_key.k1"
        assert result.states["fake_group.g"] == NodeState.DONE
        assert "web" not in cloud.calls_for("create")
        # completed work is kept
        assert sorted(store.load()) == ["fake_group.g"]

    def test_failure_is_attributed_to_resource(self, registry, cloud, store):
        cloud.fail_on("create", "deploy-key", ProviderError("quota exceeded"))
        graph = _graph(registry, _declare("fake_key", "k1", name="deploy-key"))

        _, result = _execute(graph, store, registry)

        assert result.failures["fake_key.k1"].address == "fake_key.k1"

    def test_best_effort_attempts_dependents(self, registry, cloud, store):
        cloud.fail_on("create", "base", ProviderError("boom"))
        graph = _graph(
            registry,
            _declare("fake_group", "base", name="base"),
            _declare("fake_group", "after", depends_on=["fake_group.base"], name="after"),
        )

        _, result = _execute(graph, store, registry, best_effort=True)

        assert result.states["fake_group.base"] == NodeState.FAILED
        assert result.states["fake_group.after"] == NodeState.DONE
        assert "after" in cloud.calls_for("create")

    def test_retryable_error_is_retried(self, registry, cloud, store):
        cloud.fail_on("create", "deploy-key", ProviderError("throttled", retryable=True), times=2)
        graph = _graph(registry, _declare("fake_key", "k1", name="deploy-key"))

        _, result = _execute(graph, store, registry)

        assert result.success
        assert cloud.calls_for("create") == ["deploy-key"] * 3

    def test_non_retryable_error_is_not_retried(self, registry, cloud, store):
        cloud.fail_on("create", "deploy-key", ProviderError("invalid key"))
        graph = _graph(registry, _declare("fake_key", "k1", name="deploy-key"))

        _, result = _execute(graph, store, registry)

        assert result.states["fake_key.k1"] == NodeState.FAILED
        assert cloud.calls_for("create") == ["deploy-key"]

    def test_timeout_fails_node_and_late_result_is_committed(self, registry, cloud, store):
        cloud.delay("slow", 0.3)
        graph = _graph(
            registry,
            _declare("fake_group", "slow", name="slow"),
            _declare("fake_group", "after", depends_on=["fake_group.slow"], name="after"),
        )

        _, result = _execute(graph, store, registry, operation_timeout=0.05)

        assert result.states["fake_group.slow"] == NodeState.FAILED
        assert isinstance(result.failures["fake_group.slow"], ProviderTimeoutError)
        assert result.states["fake_group.after"] == NodeState.FAILED
        assert "fake_group.slow" in store.entries()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:

    def test_cancel_before_start_runs_nothing(self, registry, cloud, store):
        event = threading.Event()
        event.set()

        _, result = _execute(_key_and_instance(registry), store, registry, cancel_event=event)

        assert cloud.calls_for("create") == []
        assert set(result.states.values()) == {NodeState.CANCELLED}

    def test_cancel_lets_running_work_finish(self, registry, cloud, store):
        event = threading.Event()

        def _on_event(address, state, detail):
            if state == NodeState.IN_PROGRESS:
                event.set()

        graph = _graph(registry, *[_declare("fake_group", n, name=n) for n in ("a", "b", "c")])
        _, result = _execute(graph, store, registry, parallelism=1, cancel_event=event, on_event=_on_event)

        assert result.states["fake_group.a"] == NodeState.DONE
        assert result.states["fake_group.b"] == NodeState.CANCELLED
        assert result.states["fake_group.c"] == NodeState.CANCELLED
        assert sorted(store.load()) == ["fake_group.a"]


# ---------------------------------------------------------------------------
# Replacement and deferred changes
# ---------------------------------------------------------------------------

class TestReconcile:

    def test_create_adopts_existing_object(self, registry, cloud, store):
        cloud.objects["key-99"] = {"name": "deploy-key", "fingerprint": "fp-existing"}
        graph = _graph(registry, _declare("fake_key", "k1", name="deploy-key"))

        _, result = _execute(graph, store, registry)

        assert result.success
        assert cloud.calls_for("create") == []
        entry = store.load()["fake_key.k1"]
        assert entry.id == "key-99"
        assert entry.outputs["fingerprint"] == "fp-existing"

    def test_replace_destroys_before_creating(self, registry, cloud, store):
        _execute(_graph(registry, _declare("fake_group", "g", name="one")), store, registry)

        plan, result = _execute(_graph(registry, _declare("fake_group", "g", name="two")), store, registry)

        assert plan.change("fake_group.g").action == Action.REPLACE
        assert result.actions["fake_group.g"] == Action.REPLACE
        assert cloud.log.index(("end", "delete", "one")) < cloud.log.index(("start", "create", "two"))
        assert cloud.names() == ["two"]

    def test_create_before_destroy(self, registry, cloud, store):
        lifecycle = Lifecycle(create_before_destroy=True)
        _execute(_graph(registry, _declare("fake_group", "g", lifecycle=lifecycle, name="one")), store, registry)

        _, result = _execute(
            _graph(registry, _declare("fake_group", "g", lifecycle=lifecycle, name="two")), store, registry
        )

        assert result.success
        assert cloud.log.index(("end", "create", "two")) < cloud.log.index(("start", "delete", "one"))
        assert cloud.names() == ["two"]

    def _replace_with_failed_delete(self, registry, cloud, store):
        lifecycle = Lifecycle(create_before_destroy=True)
        _execute(_graph(registry, _declare("fake_group", "g", lifecycle=lifecycle, name="one")), store, registry)
        old_id = store.load()["fake_group.g"].id
        cloud.fail_on("delete", "one", ProviderError("group in use"))

        graph = _graph(registry, _declare("fake_group", "g", lifecycle=lifecycle, name="two"))
        _, result = _execute(graph, store, registry)
        return graph, old_id, result

    def test_failed_delete_keeps_old_object_as_deposed(self, registry, cloud, store):
        _, old_id, result = self._replace_with_failed_delete(registry, cloud, store)

        assert result.states["fake_group.g"] == NodeState.FAILED
        entry = store.load()["fake_group.g"]
        assert entry.arguments["name"] == "two"
        assert entry.deposed == [old_id]
        assert cloud.names() == ["one", "two"]

    def test_next_apply_deletes_deposed_object(self, registry, cloud, store):
        graph, old_id, _ = self._replace_with_failed_delete(registry, cloud, store)

        plan, result = _execute(graph, store, registry)

        assert plan.change("fake_group.g").deposed == [old_id]
        assert plan.has_changes
        assert result.success
        assert cloud.names() == ["two"]
        assert store.load()["fake_group.g"].deposed == []

    def test_destroy_deletes_deposed_object(self, registry, cloud, store):
        graph, _, _ = self._replace_with_failed_delete(registry, cloud, store)

        _, result = _execute(graph, store, registry, destroy=True)

        assert result.success
        assert cloud.names() == []
        assert store.load() == {}

    def test_deferred_change_is_rediffed_with_applied_values(self, registry, cloud, store):
        def _declarations(key_name):
            return _graph(
                registry,
                _declare("fake_key", "k1", name=key_name),
                _declare("fake_instance", "i1", name="web", ami="ami-1",
                         fingerprint="${fake_key.k1.fingerprint}"),
            )

        _execute(_declarations("old-key"), store, registry)
        plan, result = _execute(_declarations("new-key"), store, registry)

        assert plan.change("fake_instance.i1").deferred
        assert result.success
        assert result.actions["fake_instance.i1"] == Action.UPDATE
        new_key_id = store.load()["fake_key.k1"].id
        assert cloud.by_name("web")[1]["fingerprint"] == f"fingerprint-{new_key_id}"

    def test_no_op_nodes_make_no_provider_calls(self, registry, cloud, store):
        graph = _key_and_instance(registry)
        _execute(graph, store, registry)
        mutating = [c for c in cloud.calls if c[0] != "read"]

        _, result = _execute(graph, store, registry)

        assert result.success
        assert set(result.actions.values()) == {Action.NO_OP}
        assert [c for c in cloud.calls if c[0] != "read"] == mutating

    def test_vanished_entries_are_removed_before_recreating(self, registry, cloud, store):
        graph = _graph(registry, _declare("fake_group", "g", name="gone"))
        _execute(graph, store, registry)
        cloud.objects.clear()

        plan, result = _execute(graph, store, registry)

        assert plan.vanished == ["fake_group.g"]
        assert result.success
        assert cloud.names() == ["gone"]
