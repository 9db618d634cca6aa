"""
Plans: computing, rendering and saving them.

A plan is computed against one state snapshot. When saved to disk it
records the state's lineage and serial, and applying it later against a
state that has moved on is refused.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ConfigError, NotFoundError, StalePlanError
from ..providers.base import ProviderRegistry
from ..security import OutputRedactor
from ..utils.retry import RetryPolicy
from .diff import Action, AttributeDiff, DiffEngine, ResourceChange
from .expressions import UNKNOWN
from .graph import ResourceGraph
from .state import StateEntry

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1

_UNKNOWN_MARKER = {"__unknown__": True}

_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DESTROY: "-",
    Action.NO_OP: " ",
}


def _encode(value: Any) -> Any:
    if value is UNKNOWN:
        return dict(_UNKNOWN_MARKER)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if value == _UNKNOWN_MARKER:
        return UNKNOWN
    if isinstance(value, dict):
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return "(known after apply)"
    if isinstance(value, (dict, list)):
        return json.dumps(_encode(value), sort_keys=True).replace('{"__unknown__": true}', "(known after apply)")
    return json.dumps(value)


@dataclass
class Plan:
    """
    An ordered set of resource changes.

    Attributes:
        changes: One change per address, in execution-compatible order
        lineage: Lineage of the state the plan was computed against
        serial: Serial of that state
        destroy: Whether this is a destroy plan
        targets: Addresses the plan was restricted to
        variables: Resolved variable values the plan was computed with
        vanished: State entries whose objects no longer exist
    """
    changes: List[ResourceChange]
    lineage: Optional[str]
    serial: int
    destroy: bool = False
    targets: List[str] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    vanished: List[str] = field(default_factory=list)
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def has_changes(self) -> bool:
        return bool(self.vanished) or any(change.is_change for change in self.changes)

    def change(self, address: str) -> Optional[ResourceChange]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def summary(self) -> Dict[Action, int]:
        counts = {action: 0 for action in Action}
        for change in self.changes:
            counts[change.action] += 1
        return counts

    def check_current(self, lineage: Optional[str], serial: int):
        """
        Raises:
            StalePlanError: If the state changed since the plan was made
        """
        # a plan made before the first write belongs to whatever history follows
        if self.lineage is not None and lineage != self.lineage:
            raise StalePlanError(
                f"Saved plan was made for a different state (lineage {self.lineage}, state has {lineage})"
            )
        if serial != self.serial:
            raise StalePlanError(
                f"Saved plan is stale: state serial is {serial}, plan was made at {self.serial}"
            )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, redactor: Optional[OutputRedactor] = None) -> str:
        """Human-readable plan, with sensitive values redacted."""
        lines: List[str] = []
        for address in self.vanished:
            lines.append(f"x {address} (no longer exists, will be removed from state)")
        for change in self.changes:
            for deposed_id in change.deposed:
                lines.append(f"- {change.address} (deposed object {deposed_id}, left over from a replace)")
            if change.action == Action.NO_OP:
                continue
            header = f"{_SYMBOLS[change.action]} {change.address} ({change.action.value}"
            if change.action == Action.REPLACE:
                header += ", create before destroy" if change.create_before_destroy else ", destroy then create"
            if change.deferred:
                header += ", deferred"
            lines.append(header + ")")
            lines.extend(self._render_diffs(change))

        counts = self.summary()
        if not self.has_changes:
            lines.append("No changes. Infrastructure matches the configuration.")
        else:
            lines.append("")
            lines.append(
                f"Plan: {counts[Action.CREATE]} to add, {counts[Action.UPDATE]} to change, "
                f"{counts[Action.REPLACE]} to replace, {counts[Action.DESTROY]} to destroy."
            )

        text = "\n".join(lines)
        return redactor.redact(text) if redactor else text

    @staticmethod
    def _render_diffs(change: ResourceChange) -> List[str]:
        lines = []
        if change.action == Action.DESTROY:
            if change.prior_id:
                lines.append(f"      id = {json.dumps(change.prior_id)}")
            return lines
        for diff in change.diffs.values():
            if change.action == Action.CREATE:
                lines.append(f"      {diff.name} = {_format_value(diff.after)}")
            else:
                line = f"      {diff.name}: {_format_value(diff.before)} -> {_format_value(diff.after)}"
                if diff.forces_replacement:
                    line += " (forces replacement)"
                lines.append(line)
        return lines

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "lineage": self.lineage,
            "serial": self.serial,
            "destroy": self.destroy,
            "targets": list(self.targets),
            "variables": _encode(self.variables),
            "vanished": list(self.vanished),
            "created": self.created,
            "changes": [
                {
                    "address": c.address,
                    "type": c.type,
                    "action": c.action.value,
                    "before": _encode(c.before),
                    "after": _encode(c.after),
                    "diffs": [
                        {
                            "name": d.name,
                            "before": _encode(d.before),
                            "after": _encode(d.after),
                            "forces_replacement": d.forces_replacement,
                        }
                        for d in c.diffs.values()
                    ],
                    "prior_id": c.prior_id,
                    "create_before_destroy": c.create_before_destroy,
                    "deferred": c.deferred,
                    "deposed": list(c.deposed),
                }
                for c in self.changes
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        if data.get("format_version") != PLAN_FORMAT_VERSION:
            raise ConfigError(f"Unsupported plan format version {data.get('format_version')!r}")
        changes = []
        for item in data.get("changes", []):
            diffs = {
                d["name"]: AttributeDiff(
                    name=d["name"],
                    before=_decode(d["before"]),
                    after=_decode(d["after"]),
                    forces_replacement=d.get("forces_replacement", False),
                )
                for d in item.get("diffs", [])
            }
            changes.append(ResourceChange(
                address=item["address"],
                type=item["type"],
                action=Action(item["action"]),
                before=_decode(item.get("before")),
                after=_decode(item.get("after")),
                diffs=diffs,
                prior_id=item.get("prior_id"),
                create_before_destroy=item.get("create_before_destroy", False),
                deferred=item.get("deferred", False),
                deposed=item.get("deposed", []),
            ))
        return cls(
            changes=changes,
            lineage=data["lineage"],
            serial=data["serial"],
            destroy=data.get("destroy", False),
            targets=data.get("targets", []),
            variables=_decode(data.get("variables", {})),
            vanished=data.get("vanished", []),
            created=data.get("created", ""),
        )

    def save(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        logger.info(f"Saved plan to {path}")

    @classmethod
    def load(cls, path: str) -> "Plan":
        """
        Raises:
            ConfigError: If the file is missing or not a plan
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigError(f"Plan file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Plan file {path} is not valid JSON: {e}")
        try:
            return cls.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Plan file {path} is malformed: {e}")


class Planner:
    """Refreshes a state snapshot and diffs the graph against it."""

    def __init__(
        self,
        registry: ProviderRegistry,
        read_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.registry = registry
        self.diff_engine = DiffEngine(registry)
        self.read_policy = read_policy or RetryPolicy()
        self.cancel_event = cancel_event

    def refresh(self, state: Mapping[str, StateEntry]) -> Dict[str, StateEntry]:
        """
        Re-read every state entry through its provider.

        Entries whose object no longer exists are dropped; attribute values
        that drifted replace the recorded ones. The store itself is not
        touched.

        Raises:
            ProviderError: If a read fails for any other reason
        """
        refreshed: Dict[str, StateEntry] = {}
        for address, entry in sorted(state.items()):
            handler = self.registry.handler(entry.type)
            try:
                current = self.read_policy.call(
                    handler.read, entry.id,
                    description=f"read {address}",
                    cancel_event=self.cancel_event,
                )
            except NotFoundError:
                logger.warning(f"{address} ({entry.id}) no longer exists; it will be recreated")
                continue

            drifted = {
                name: current[name]
                for name in entry.arguments
                if name in current and current[name] != entry.arguments[name]
            }
            arguments = entry.arguments
            if drifted:
                arguments = self.registry.normalize(entry.type, {**entry.arguments, **drifted})
                changed = sorted(n for n in drifted if arguments.get(n) != entry.arguments.get(n))
                if changed:
                    logger.info(f"{address} drifted: {', '.join(changed)}")

            refreshed[address] = StateEntry(
                address=address,
                type=entry.type,
                id=entry.id,
                outputs={**entry.outputs, **current, "id": entry.id},
                arguments=arguments,
                dependencies=list(entry.dependencies),
                deposed=list(entry.deposed),
            )
        return refreshed

    def plan(
        self,
        graph: ResourceGraph,
        state: Mapping[str, StateEntry],
        lineage: Optional[str],
        serial: int,
        destroy: bool = False,
        targets: Optional[List[str]] = None,
        refresh: bool = True,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Plan:
        """
        Compute a plan.

        Raises:
            ConfigError: For prevent_destroy violations or unknown targets
            ProviderError: If refreshing fails
        """
        snapshot = self.refresh(state) if refresh else dict(state)
        changes = self.diff_engine.diff(graph, snapshot, destroy=destroy, targets=targets)
        vanished = sorted(a for a in state if a not in snapshot)
        self._carry_deposed(changes, state, vanished)
        plan = Plan(
            changes=changes,
            lineage=lineage,
            serial=serial,
            destroy=destroy,
            targets=list(targets or []),
            variables=dict(variables or {}),
            vanished=vanished,
        )
        counts = plan.summary()
        logger.info(
            f"Plan: {counts[Action.CREATE]} to add, {counts[Action.UPDATE]} to change, "
            f"{counts[Action.REPLACE]} to replace, {counts[Action.DESTROY]} to destroy"
        )
        return plan

    @staticmethod
    def _carry_deposed(changes: List[ResourceChange], state: Mapping[str, StateEntry], vanished: List[str]):
        """Keep deposed objects of vanished entries scheduled for deletion."""
        by_address = {change.address: change for change in changes}
        for address in vanished:
            entry = state[address]
            if not entry.deposed:
                continue
            change = by_address.get(address)
            if change is None:
                changes.append(ResourceChange(
                    address=address,
                    type=entry.type,
                    action=Action.DESTROY,
                    before=entry.arguments,
                    deposed=list(entry.deposed),
                ))
            else:
                change.deposed = list(entry.deposed)
