"""
Plan executor.

Runs a plan's changes on a bounded thread pool. A single coordinator loop
owns every node's state and decides readiness; workers only perform the
provider calls for the node they were handed and commit its result to
the state store.

    pending -> ready -> in_progress -> done | failed
    pending | ready -> cancelled   (cancellation requested)
    pending -> failed              (a dependency failed)

Create, update and replace nodes wait for the nodes they depend on.
A destroy node waits for every node that depended on the resource, so
dependents go first.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import DependencyFailedError, NotFoundError, ProviderError, ProviderTimeoutError
from ..providers.base import ProviderRegistry
from ..utils.retry import RetryPolicy
from .diff import Action, ResourceChange, apply_ignore_changes, classify, diff_attributes, resolve_arguments
from .expressions import is_known
from .graph import ResourceGraph, topological_sort
from .plan import Plan
from .state import StateEntry, StateStore

logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (NodeState.DONE, NodeState.FAILED, NodeState.CANCELLED)


@dataclass
class ApplyResult:
    """
    Outcome of executing a plan.

    Attributes:
        states: Final state of every node
        actions: Action actually performed per address (after re-diffing)
        failures: Root-cause error per failed address
    """
    states: Dict[str, NodeState] = field(default_factory=dict)
    actions: Dict[str, Action] = field(default_factory=dict)
    failures: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(state == NodeState.DONE for state in self.states.values())

    def addresses(self, state: NodeState) -> List[str]:
        return sorted(a for a, s in self.states.items() if s == state)

    def summary(self) -> Dict[Action, int]:
        counts = {action: 0 for action in Action}
        for address, action in self.actions.items():
            if self.states.get(address) == NodeState.DONE:
                counts[action] += 1
        return counts


EventCallback = Callable[[str, NodeState, Any], None]


class PlanExecutor:
    """Executes one plan, committing each finished resource to the state store."""

    def __init__(
        self,
        graph: ResourceGraph,
        plan: Plan,
        store: StateStore,
        registry: ProviderRegistry,
        parallelism: int = 10,
        operation_timeout: Optional[float] = 900,
        best_effort: bool = False,
        retry_policies: Optional[Dict[str, RetryPolicy]] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[EventCallback] = None,
        poll_interval: float = 0.1,
    ):
        self.graph = graph
        self.plan = plan
        self.store = store
        self.registry = registry
        self.parallelism = max(1, int(parallelism))
        self.operation_timeout = operation_timeout
        self.best_effort = best_effort
        self.retry_policies = retry_policies or {}
        self.cancel_event = cancel_event or threading.Event()
        self.on_event = on_event
        self.poll_interval = poll_interval

        self.changes: Dict[str, ResourceChange] = {c.address: c for c in plan.changes}
        self._started: Dict[str, float] = {}
        self._started_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Coordinator
    # ------------------------------------------------------------------

    def execution_edges(self) -> Dict[str, Set[str]]:
        """Node -> nodes that must be done before it may start."""
        entries = self.store.entries()
        edges: Dict[str, Set[str]] = {address: set() for address in self.changes}

        for address, change in self.changes.items():
            if change.action != Action.DESTROY and address in self.graph:
                edges[address] |= self.graph.dependencies(address) & set(self.changes)

        for address, change in self.changes.items():
            if change.action != Action.DESTROY:
                continue
            for other in self.changes:
                entry = entries.get(other)
                if other != address and entry is not None and address in entry.dependencies:
                    edges[address].add(other)

        # Rejects inconsistent recorded dependencies before anything runs
        topological_sort(edges)
        return edges

    def execute(self) -> ApplyResult:
        """
        Run the plan to completion (or cancellation).

        Returns:
            ApplyResult with per-node states and failures; never raises for
            a single resource's failure
        """
        edges = self.execution_edges()
        result = ApplyResult(states={a: NodeState.PENDING for a in self.changes})
        states = result.states

        for address in self.plan.vanished:
            self.store.remove(address)
            logger.info(f"Removed {address} from state: object no longer exists")

        running: Dict[Future, str] = {}
        late: Set[Future] = set()

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="groundwork") as pool:
            while True:
                self._promote(edges, result)
                progressed = False

                for address in sorted(a for a, s in states.items() if s == NodeState.READY):
                    change = self.changes[address]
                    if change.action == Action.NO_OP and not change.deferred and not change.deposed:
                        self._finish_no_op(change, result)
                        progressed = True
                        continue
                    if self.cancel_event.is_set():
                        self._set_state(result, address, NodeState.CANCELLED)
                        continue
                    if len(running) >= self.parallelism:
                        break
                    self._set_state(result, address, NodeState.IN_PROGRESS, change.action)
                    running[pool.submit(self._run, change)] = address

                if not running:
                    if progressed:
                        continue
                    break

                done, _ = wait(list(running), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    self._collect(future, running.pop(future), result)

                for future, address in list(running.items()):
                    if self._timed_out(address):
                        running.pop(future)
                        late.add(future)
                        future.add_done_callback(self._late_completion(address))
                        error = ProviderTimeoutError(
                            f"{address}: {self.changes[address].action.value} did not finish "
                            f"within {self.operation_timeout}s",
                            address=address,
                        )
                        result.failures[address] = error
                        self._set_state(result, address, NodeState.FAILED, error)

            if late:
                logger.warning(f"Waiting for {len(late)} timed-out operation(s) to finish")

        for address, state in list(states.items()):
            if state in (NodeState.PENDING, NodeState.READY):
                self._set_state(result, address, NodeState.CANCELLED)

        return result

    def _promote(self, edges: Dict[str, Set[str]], result: ApplyResult):
        """Move pending nodes to ready, failed or cancelled until nothing changes."""
        states = result.states
        changed = True
        while changed:
            changed = False
            for address in sorted(a for a, s in states.items() if s == NodeState.PENDING):
                deps = sorted(edges[address])
                failed = [d for d in deps if states[d] == NodeState.FAILED]
                cancelled = [d for d in deps if states[d] == NodeState.CANCELLED]

                if cancelled:
                    self._set_state(result, address, NodeState.CANCELLED)
                elif failed and not self.best_effort:
                    error = DependencyFailedError(failed[0], address=address)
                    result.failures[address] = error
                    self._set_state(result, address, NodeState.FAILED, error)
                elif all(states[d] in TERMINAL_STATES for d in deps):
                    if failed:
                        logger.warning(f"{address}: attempting despite failed dependency {failed[0]}")
                    self._set_state(result, address, NodeState.READY)
                else:
                    continue
                changed = True

    def _collect(self, future: Future, address: str, result: ApplyResult):
        try:
            action = future.result()
        except Exception as exc:
            if isinstance(exc, ProviderError) and exc.address is None:
                exc.address = address
            logger.error(f"{address}: {exc}")
            result.failures[address] = exc
            self._set_state(result, address, NodeState.FAILED, exc)
            return
        result.actions[address] = action
        self._set_state(result, address, NodeState.DONE, action)

    def _finish_no_op(self, change: ResourceChange, result: ApplyResult):
        entry = self.store.entries().get(change.address)
        dependencies = sorted(self.graph.dependencies(change.address)) if change.address in self.graph else []
        if entry is not None and entry.dependencies != dependencies:
            entry.dependencies = dependencies
            self.store.commit(change.address, entry)
        result.actions[change.address] = Action.NO_OP
        self._set_state(result, change.address, NodeState.DONE, Action.NO_OP)

    def _set_state(self, result: ApplyResult, address: str, state: NodeState, detail: Any = None):
        result.states[address] = state
        logger.debug(f"{address}: {state.value}")
        if self.on_event is not None:
            self.on_event(address, state, detail)

    def _timed_out(self, address: str) -> bool:
        if not self.operation_timeout:
            return False
        with self._started_lock:
            started = self._started.get(address)
        return started is not None and time.monotonic() - started > self.operation_timeout

    @staticmethod
    def _late_completion(address: str) -> Callable[[Future], None]:
        def _callback(future: Future):
            exc = future.exception()
            if exc is None:
                logger.warning(f"{address}: finished after timing out; its result was committed to state")
            else:
                logger.error(f"{address}: failed after timing out: {exc}")
        return _callback

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _run(self, change: ResourceChange) -> Action:
        with self._started_lock:
            self._started[change.address] = time.monotonic()
        logger.info(f"{change.address}: {change.action.value} started")

        self._delete_deposed(change)
        if change.action == Action.DESTROY:
            self._destroy(change)
            action = Action.DESTROY
        else:
            action = self._reconcile(change)

        logger.info(f"{change.address}: {action.value} complete")
        return action

    def _call(self, operation: str, func: Callable[..., Any], *args: Any, description: str = "") -> Any:
        policy = self.retry_policies.get(operation) or RetryPolicy()
        return policy.call(func, *args, description=description, cancel_event=self.cancel_event)

    def _resolve(self, change: ResourceChange) -> Dict[str, Any]:
        node = self.graph.nodes[change.address]
        entries = self.store.entries()
        values = {}
        for dep in self.graph.dependencies(change.address):
            if dep in entries:
                values[dep] = {**entries[dep].outputs, "id": entries[dep].id}
        arguments = self.registry.normalize(change.type, resolve_arguments(node, values))
        if not is_known(arguments):
            raise ProviderError(f"{change.address}: arguments are still unknown after applying dependencies")
        return arguments

    def _reconcile(self, change: ResourceChange) -> Action:
        """Re-diff with resolved values, then create, update or replace."""
        arguments = self._resolve(change)
        current = self.store.entries().get(change.address)

        if change.action == Action.CREATE or current is None:
            self._create(change, arguments, adopt=True)
            return Action.CREATE

        node = self.graph.nodes[change.address]
        schema = self.registry.schema(change.type)
        before = change.before if change.before is not None else current.arguments
        arguments = apply_ignore_changes(arguments, before, node.lifecycle.ignore_changes)
        diffs = diff_attributes(before, arguments, schema)
        action = classify(diffs)

        if action == Action.NO_OP:
            if change.deferred:
                logger.info(f"{change.address}: no changes once dependencies were applied")
            dependencies = sorted(self.graph.dependencies(change.address))
            if current.dependencies != dependencies:
                current.dependencies = dependencies
                self.store.commit(change.address, current)
            return Action.NO_OP

        handler = self.registry.handler(change.type)
        if action == Action.UPDATE:
            outputs = self._call("update", handler.update, current.id, diffs,
                                 description=f"update {change.address}")
            self.store.commit(change.address, StateEntry(
                address=change.address,
                type=change.type,
                id=current.id,
                outputs={**current.outputs, **arguments, **(outputs or {}), "id": current.id},
                arguments=arguments,
                dependencies=sorted(self.graph.dependencies(change.address)),
            ))
            return Action.UPDATE

        if change.create_before_destroy:
            self._create(change, arguments, adopt=False, deposed=[current.id])
            self._delete(change, current.id)
            self._forget_deposed(change.address, current.id)
        else:
            self._delete(change, current.id)
            self.store.remove(change.address)
            self._create(change, arguments, adopt=False)
        return Action.REPLACE

    def _create(self, change: ResourceChange, arguments: Dict[str, Any], adopt: bool, deposed: Optional[List[str]] = None):
        handler = self.registry.handler(change.type)
        resource_id = None

        if adopt and handler.schema.supports_lookup:
            resource_id = self._call("read", handler.lookup, arguments,
                                     description=f"look up {change.address}")

        if resource_id is not None:
            logger.info(f"{change.address}: adopting existing object {resource_id}")
            outputs = self._call("read", handler.read, resource_id, description=f"read {change.address}")
        else:
            resource_id, outputs = self._call("create", handler.create, arguments,
                                              description=f"create {change.address}")

        resource_id = str(resource_id)
        self.store.commit(change.address, StateEntry(
            address=change.address,
            type=change.type,
            id=resource_id,
            outputs={**arguments, **(outputs or {}), "id": resource_id},
            arguments=arguments,
            dependencies=sorted(self.graph.dependencies(change.address)),
            deposed=list(deposed or []),
        ))

    def _delete(self, change: ResourceChange, resource_id: str):
        handler = self.registry.handler(change.type)
        try:
            self._call("delete", handler.delete, resource_id, description=f"delete {change.address}")
        except NotFoundError:
            logger.info(f"{change.address}: {resource_id} was already gone")

    def _destroy(self, change: ResourceChange):
        entry = self.store.entries().get(change.address)
        resource_id = entry.id if entry is not None else change.prior_id
        if resource_id:
            self._delete(change, resource_id)
        self.store.remove(change.address)

    def _delete_deposed(self, change: ResourceChange):
        """Delete objects left behind by an earlier replace whose delete failed."""
        for resource_id in change.deposed:
            logger.info(f"{change.address}: deleting deposed object {resource_id}")
            self._delete(change, resource_id)
            self._forget_deposed(change.address, resource_id)

    def _forget_deposed(self, address: str, resource_id: str):
        entry = self.store.entries().get(address)
        if entry is None or resource_id not in entry.deposed:
            return
        entry.deposed = [d for d in entry.deposed if d != resource_id]
        self.store.commit(address, entry)
