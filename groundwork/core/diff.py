"""
Diff engine.

Compares the desired graph with the (refreshed) state and classifies every
address as create, update, replace, destroy or no-op. Arguments that
reference resources are evaluated against what is known at plan time:
an unchanged resource contributes its recorded outputs, a resource about
to be created or replaced contributes UNKNOWN for everything the provider
computes. A change that involves an UNKNOWN value is deferred: the
executor diffs it again once its dependencies are applied.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from ..errors import ConfigError
from ..providers.base import ProviderRegistry, ResourceSchema
from .expressions import UNKNOWN, Reference, evaluate, is_known, traverse
from .graph import ResourceGraph, ResourceNode, topological_sort
from .state import StateEntry

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NO_OP = "no-op"


@dataclass
class AttributeDiff:
    """Before/after values of one attribute."""
    name: str
    before: Any
    after: Any
    forces_replacement: bool = False

    @property
    def known(self) -> bool:
        return is_known(self.after)


@dataclass
class ResourceChange:
    """
    Planned action for one resource address.

    Attributes:
        address: Resource address
        type: Resource type
        action: What the executor will do
        before: Arguments recorded in state (None for create)
        after: Planned arguments (None for destroy); may hold UNKNOWN
        diffs: Changed attributes
        prior_id: Provider id from state, if any
        create_before_destroy: Replace ordering
        deferred: Whether the change depends on values known only after apply
        deposed: Ids of objects left over from an interrupted replace, to be deleted
    """
    address: str
    type: str
    action: Action
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    diffs: Dict[str, AttributeDiff] = field(default_factory=dict)
    prior_id: Optional[str] = None
    create_before_destroy: bool = False
    deferred: bool = False
    deposed: List[str] = field(default_factory=list)

    @property
    def is_change(self) -> bool:
        return self.action != Action.NO_OP or bool(self.deposed)


def apply_ignore_changes(
    after: Dict[str, Any],
    before: Optional[Dict[str, Any]],
    ignore_changes: Iterable[str],
) -> Dict[str, Any]:
    """Keep recorded values for attributes whose drift is ignored."""
    if before is None:
        return after
    effective = dict(after)
    for name in ignore_changes:
        if name in before:
            effective[name] = before[name]
        else:
            effective.pop(name, None)
    return effective


def diff_attributes(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    schema: ResourceSchema,
) -> Dict[str, AttributeDiff]:
    """
    Attribute-level differences between two argument maps.

    An UNKNOWN after-value is never compared; it is always reported.
    """
    diffs: Dict[str, AttributeDiff] = {}
    for name in sorted(set(before) | set(after)):
        old = before.get(name)
        new = after.get(name)
        if is_known(new) and old == new:
            continue
        diffs[name] = AttributeDiff(
            name=name,
            before=old,
            after=new,
            forces_replacement=name in schema.immutable,
        )
    return diffs


def classify(diffs: Mapping[str, AttributeDiff]) -> Action:
    if not diffs:
        return Action.NO_OP
    if any(d.forces_replacement for d in diffs.values()):
        return Action.REPLACE
    return Action.UPDATE


def resolve_arguments(
    node: ResourceNode,
    values: Mapping[str, Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    Evaluate a node's resource references.

    Args:
        node: Graph node (variables already substituted)
        values: Address -> attribute values of each dependency; an
            attribute the provider never reported resolves to None
    """

    def _lookup(ref: Reference) -> Any:
        attributes = values.get(ref.address)
        if attributes is None:
            return UNKNOWN
        if ref.attribute not in attributes:
            return None
        return traverse(attributes[ref.attribute], ref.subpath, ref.expression)

    return evaluate(node.arguments, _lookup)


class DiffEngine:
    """Computes ResourceChanges from a graph and a state snapshot."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def replace_ordering(self, node: ResourceNode) -> bool:
        """True if the node is replaced create-before-destroy."""
        if node.lifecycle.create_before_destroy is not None:
            return node.lifecycle.create_before_destroy
        return self.registry.schema(node.type).create_before_destroy

    def diff_node(
        self,
        node: ResourceNode,
        entry: Optional[StateEntry],
        values: Mapping[str, Mapping[str, Any]],
    ) -> ResourceChange:
        """Diff one desired resource against its state entry."""
        schema = self.registry.schema(node.type)
        after = self.registry.normalize(node.type, resolve_arguments(node, values))

        if entry is None:
            return ResourceChange(
                address=node.address,
                type=node.type,
                action=Action.CREATE,
                after=after,
                diffs={
                    name: AttributeDiff(name, None, value)
                    for name, value in sorted(after.items())
                },
                create_before_destroy=self.replace_ordering(node),
                deferred=not is_known(after),
            )

        after = apply_ignore_changes(after, entry.arguments, node.lifecycle.ignore_changes)
        diffs = diff_attributes(entry.arguments, after, schema)
        return ResourceChange(
            address=node.address,
            type=node.type,
            action=classify(diffs),
            before=entry.arguments,
            after=after,
            diffs=diffs,
            prior_id=entry.id,
            create_before_destroy=self.replace_ordering(node),
            deferred=not is_known(after),
            deposed=list(entry.deposed),
        )

    def planned_values(self, change: ResourceChange, entry: Optional[StateEntry]) -> Dict[str, Any]:
        """
        Attribute values dependents may see at plan time.

        Creates and replaces expose only their known arguments; updates
        keep the id but may change any computed attribute.
        """
        schema = self.registry.schema(change.type)
        if change.action == Action.NO_OP and entry is not None:
            values = dict(entry.outputs)
            values["id"] = entry.id
            return values

        values = {}
        if change.action == Action.UPDATE and entry is not None:
            values.update(entry.outputs)
            values["id"] = entry.id
        else:
            values["id"] = UNKNOWN
        values.update(change.after or {})
        for name in schema.computed:
            values[name] = UNKNOWN
        return values

    def diff(
        self,
        graph: ResourceGraph,
        state: Mapping[str, StateEntry],
        destroy: bool = False,
        targets: Optional[List[str]] = None,
    ) -> List[ResourceChange]:
        """
        Plan changes for every address in the graph or the state.

        Args:
            graph: Desired resources
            state: Working state snapshot (refreshed or not)
            destroy: Plan destruction of everything (or of targets and their dependents)
            targets: Restrict the plan to these addresses

        Returns:
            Changes in dependency order for create/update, followed by destroys

        Raises:
            ConfigError: If a prevent_destroy resource would be destroyed or replaced
        """
        if destroy:
            changes = self._destroy_changes(graph, state, targets)
        else:
            changes = self._apply_changes(graph, state, targets)

        for change in changes:
            if change.action in (Action.DESTROY, Action.REPLACE) and change.address in graph:
                if graph.nodes[change.address].lifecycle.prevent_destroy:
                    raise ConfigError(
                        f"{change.address} has lifecycle.prevent_destroy set "
                        f"but the plan would {change.action.value} it"
                    )
        return changes

    def _apply_changes(
        self,
        graph: ResourceGraph,
        state: Mapping[str, StateEntry],
        targets: Optional[List[str]],
    ) -> List[ResourceChange]:
        orphans = sorted(a for a in state if a not in graph)
        if targets:
            orphans = [a for a in orphans if a in targets]
            graph = graph.subgraph([t for t in targets if t in graph])

        values: Dict[str, Dict[str, Any]] = {}
        changes: List[ResourceChange] = []
        for address in graph.topological_order():
            entry = state.get(address)
            change = self.diff_node(graph.nodes[address], entry, values)
            values[address] = self.planned_values(change, entry)
            changes.append(change)
            if change.is_change:
                logger.debug(f"{address}: {change.action.value}{' (deferred)' if change.deferred else ''}")

        for address in self._reverse_dependency_order(orphans, state):
            entry = state[address]
            changes.append(ResourceChange(
                address=address,
                type=entry.type,
                action=Action.DESTROY,
                before=entry.arguments,
                prior_id=entry.id,
                deposed=list(entry.deposed),
            ))
        return changes

    def _destroy_changes(
        self,
        graph: ResourceGraph,
        state: Mapping[str, StateEntry],
        targets: Optional[List[str]],
    ) -> List[ResourceChange]:
        addresses: Set[str] = set(state)
        if targets:
            addresses = state_dependents(state, targets) & set(state)

        return [
            ResourceChange(
                address=address,
                type=state[address].type,
                action=Action.DESTROY,
                before=state[address].arguments,
                prior_id=state[address].id,
                deposed=list(state[address].deposed),
            )
            for address in self._reverse_dependency_order(addresses, state)
        ]

    @staticmethod
    def _reverse_dependency_order(addresses: Iterable[str], state: Mapping[str, StateEntry]) -> List[str]:
        addresses = set(addresses)
        edges = {
            address: {d for d in state[address].dependencies if d in addresses}
            for address in addresses
        }
        return list(reversed(topological_sort(edges)))


def state_dependents(state: Mapping[str, StateEntry], targets: Iterable[str]) -> Set[str]:
    """Targets plus every state entry that (transitively) depends on them."""
    reverse: Dict[str, Set[str]] = {}
    for address, entry in state.items():
        for dep in entry.dependencies:
            reverse.setdefault(dep, set()).add(address)

    seen: Set[str] = set()
    stack = list(targets)
    while stack:
        address = stack.pop()
        if address in seen:
            continue
        seen.add(address)
        stack.extend(reverse.get(address, ()))
    return seen
