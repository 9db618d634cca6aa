"""
Engine: one project directory, one state file, one invocation.

Ties the configuration loader, graph builder, planner, executor and state
store together. Apply and destroy hold the state lock from the moment the
state is loaded until the last result is committed.
"""

import logging
import os
import threading
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from ..config import Settings
from ..errors import ConfigError, UnresolvedReferenceError
from ..providers import ProviderRegistry, default_registry
from ..security import InputSanitizer, OutputRedactor
from ..utils.retry import RetryPolicy
from .config_parser import ConfigParser, Configuration
from .diff import Action
from .executor import ApplyResult, EventCallback, PlanExecutor
from .expressions import UNKNOWN, Reference, evaluate, is_known, substitute_variables, traverse
from .graph import GraphBuilder, ResourceGraph
from .plan import Plan, Planner
from .state import StateEntry, StateResource, StateStore
from .variables import VariableResolver

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "read", "update", "delete")


class Engine:
    """
    Plans and applies one project.

    Args:
        project_path: Directory holding the *.tf files
        settings: Engine settings (loaded from the user config dir if None)
        registry: Provider registry (bundled aws and local providers if None)
        variables: Values from --var flags
        var_files: Paths from --var-file flags
        cancel_event: Set to stop starting new work during apply
    """

    def __init__(
        self,
        project_path: str,
        settings: Optional[Settings] = None,
        registry: Optional[ProviderRegistry] = None,
        variables: Optional[Dict[str, Any]] = None,
        var_files: Optional[List[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.project_path = InputSanitizer.sanitize_path(project_path)
        self.settings = settings or Settings()
        self.registry = registry or default_registry()
        self.cli_variables = variables or {}
        self.var_files = var_files or []
        self.cancel_event = cancel_event or threading.Event()
        self.environ = environ

        state_file = os.path.expanduser(self.settings.get("state_file", "groundwork.tfstate"))
        self.store = StateStore(os.path.join(self.project_path, state_file))

        self._parser = ConfigParser(self.project_path)
        self._variables: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def configuration(self) -> Configuration:
        return self._parser.load()

    @property
    def paths(self) -> Dict[str, str]:
        return {"module": self.project_path, "root": self.project_path, "cwd": os.getcwd()}

    def _resolver(self) -> VariableResolver:
        return VariableResolver(self.configuration.variables, self.project_path, self.environ)

    def variables(self) -> Dict[str, Any]:
        """Resolved variable values (resolved once per engine)."""
        if self._variables is None:
            self._variables = self._resolver().resolve(self.cli_variables, self.var_files)
        return self._variables

    def redactor(self, variables: Optional[Dict[str, Any]] = None, strict: bool = True) -> OutputRedactor:
        """
        Redactor for sensitive variable values.

        With strict=False, unresolvable variables leave nothing to redact
        instead of raising (for read-only commands).
        """
        if variables is None:
            try:
                variables = self.variables()
            except ConfigError as e:
                if strict:
                    raise
                logger.debug(f"Variables not resolved, nothing to redact: {e}")
                variables = {}
        return self._resolver().redactor(variables)

    def build_graph(self, variables: Optional[Dict[str, Any]] = None) -> ResourceGraph:
        """
        Build the dependency graph and configure providers.

        Raises:
            ConfigError, UnresolvedReferenceError, CycleError
        """
        variables = self.variables() if variables is None else variables
        self._configure_providers(variables)
        return GraphBuilder(self.registry).build(self.configuration.resources, variables, self.paths)

    def _configure_providers(self, variables: Dict[str, Any]):
        configs = {
            name: substitute_variables(config, variables, self.paths, source=f"provider.{name}")
            for name, config in self.configuration.providers.items()
        }
        configs.setdefault("local", {}).setdefault("base_dir", self.project_path)
        self.registry.configure(configs)

    def validate(self) -> Configuration:
        """
        Check syntax, references and cycles without touching state or providers.

        Variables without a value are treated as unknown.

        Raises:
            ConfigError, UnresolvedReferenceError, CycleError
        """
        configuration = self.configuration
        placeholders = {
            name: definition.default if definition.has_default else UNKNOWN
            for name, definition in configuration.variables.items()
        }
        GraphBuilder(self.registry).build(configuration.resources, placeholders, self.paths)
        for output in configuration.outputs.values():
            substitute_variables(output.value, placeholders, self.paths, source=f"output.{output.name}")
        return configuration

    def retry_policies(self) -> Dict[str, RetryPolicy]:
        return {op: RetryPolicy.from_dict(self.settings.retry_settings(op)) for op in OPERATIONS}

    # ------------------------------------------------------------------
    # Plan / apply / destroy
    # ------------------------------------------------------------------

    def _planner(self) -> Planner:
        return Planner(self.registry, self.retry_policies()["read"], self.cancel_event)

    def _refresh_default(self, refresh: Optional[bool]) -> bool:
        return self.settings.get("refresh", True) if refresh is None else refresh

    def _plan_locked(
        self,
        targets: Optional[List[str]],
        destroy: bool,
        refresh: Optional[bool],
    ) -> Tuple[Plan, ResourceGraph]:
        graph = self.build_graph()
        state = self.store.load()
        for target in targets or []:
            InputSanitizer.sanitize_resource_address(target)
            if target not in graph and target not in state:
                raise ConfigError(f"Target {target} is neither configured nor in state")
        plan = self._planner().plan(
            graph,
            state,
            lineage=self.store.lineage,
            serial=self.store.serial,
            destroy=destroy,
            targets=targets,
            refresh=self._refresh_default(refresh),
            variables=self.variables(),
        )
        return plan, graph

    def plan(
        self,
        targets: Optional[List[str]] = None,
        destroy: bool = False,
        refresh: Optional[bool] = None,
    ) -> Plan:
        """
        Compute a plan under the state lock.

        Raises:
            LockedStateError: If another invocation holds the lock
            ConfigError, UnresolvedReferenceError, CycleError: For invalid configuration
            ProviderError: If refreshing fails
        """
        with self.store.locked("plan"):
            plan, _ = self._plan_locked(targets, destroy, refresh)
            return plan

    def apply(
        self,
        plan: Optional[Plan] = None,
        targets: Optional[List[str]] = None,
        destroy: bool = False,
        refresh: Optional[bool] = None,
        parallelism: Optional[int] = None,
        best_effort: Optional[bool] = None,
        confirm: Optional[Callable[[Plan], bool]] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Optional[ApplyResult]:
        """
        Plan (unless a saved plan is given) and execute.

        Args:
            plan: Saved plan to execute instead of planning afresh
            confirm: Called with the plan before executing; returning False aborts
            on_event: Progress callback (address, NodeState, detail)

        Returns:
            ApplyResult, or None if confirmation was declined

        Raises:
            LockedStateError: If another invocation holds the lock
            StalePlanError: If the saved plan no longer matches the state
            ConfigError, UnresolvedReferenceError, CycleError: For invalid configuration
        """
        operation = "destroy" if (destroy or (plan is not None and plan.destroy)) else "apply"
        with self.store.locked(operation):
            if plan is None:
                plan, graph = self._plan_locked(targets, destroy, refresh)
            else:
                self.store.load()
                plan.check_current(self.store.lineage, self.store.serial)
                self._variables = dict(plan.variables)
                graph = self.build_graph(self._variables)
                for change in plan.changes:
                    if change.action != Action.DESTROY and change.address not in graph:
                        raise ConfigError(f"Saved plan refers to {change.address}, which is no longer configured")

            if confirm is not None and plan.has_changes and not confirm(plan):
                logger.info(f"{operation.capitalize()} cancelled")
                return None

        # commits from here on are guarded by the store's serial check
        executor = PlanExecutor(
            graph,
            plan,
            self.store,
            self.registry,
            parallelism=parallelism or self.settings.get("parallelism", 10),
            operation_timeout=self.settings.get("operation_timeout", 900),
            best_effort=self.settings.get("best_effort", False) if best_effort is None else best_effort,
            retry_policies=self.retry_policies(),
            cancel_event=self.cancel_event,
            on_event=on_event,
        )
        result = executor.execute()
        self._store_outputs(clear=plan.destroy and not plan.targets)

        summary = result.summary()
        logger.info(
            f"{operation.capitalize()} finished: {summary[Action.CREATE]} added, "
            f"{summary[Action.UPDATE]} changed, {summary[Action.REPLACE]} replaced, "
            f"{summary[Action.DESTROY]} destroyed, {len(result.failures)} failed"
        )
        return result

    def destroy(
        self,
        targets: Optional[List[str]] = None,
        refresh: Optional[bool] = None,
        parallelism: Optional[int] = None,
        best_effort: Optional[bool] = None,
        confirm: Optional[Callable[[Plan], bool]] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Optional[ApplyResult]:
        """Destroy everything in state (or the targets and their dependents)."""
        return self.apply(
            targets=targets,
            destroy=True,
            refresh=refresh,
            parallelism=parallelism,
            best_effort=best_effort,
            confirm=confirm,
            on_event=on_event,
        )

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def evaluate_outputs(self, entries: Dict[str, StateEntry]) -> Dict[str, Dict[str, Any]]:
        """Evaluate output blocks against applied state; unavailable outputs are skipped."""
        variables = self.variables()

        def _lookup(ref: Reference) -> Any:
            entry = entries.get(ref.address)
            if entry is None:
                raise UnresolvedReferenceError(ref.expression, reason="resource is not in state")
            attributes = {**entry.outputs, "id": entry.id}
            if ref.attribute not in attributes:
                raise UnresolvedReferenceError(ref.expression, reason="attribute is not in state")
            return traverse(attributes[ref.attribute], ref.subpath, ref.expression)

        outputs = {}
        for name, output in sorted(self.configuration.outputs.items()):
            try:
                value = substitute_variables(output.value, variables, self.paths, source=f"output.{name}")
                value = evaluate(value, _lookup)
            except UnresolvedReferenceError as e:
                logger.debug(f"Output {name} not available: {e}")
                continue
            if is_known(value):
                outputs[name] = {"value": value, "sensitive": output.sensitive}
        return outputs

    def _store_outputs(self, clear: bool = False):
        outputs = {} if clear else self.evaluate_outputs(self.store.entries())
        self.store.set_outputs(outputs)

    def outputs(self) -> Dict[str, Dict[str, Any]]:
        """Outputs recorded by the last apply."""
        self.store.load()
        return self.store.outputs()

    # ------------------------------------------------------------------
    # State commands
    # ------------------------------------------------------------------

    def state_list(self) -> List[StateResource]:
        return self.store.list_resources()

    def state_show(self, address: str) -> StateEntry:
        return self.store.show(address)

    def sensitive_attributes(self, resource_type: str) -> FrozenSet[str]:
        """Attributes of a type that are never printed; empty for types no provider registers."""
        try:
            return self.registry.schema(resource_type).sensitive
        except ConfigError:
            return frozenset()

    def state_rm(self, address: str):
        """Forget a resource without destroying it (under the lock)."""
        with self.store.locked("state rm"):
            self.store.rm(address)

    def force_unlock(self, lock_id: str):
        self.store.force_unlock(lock_id)

