"""
Core provisioning engine for Groundwork.

This module provides the business logic for reconciling infrastructure:
- Parsing configuration files and resolving variables
- Building the resource dependency graph
- Diffing desired resources against state
- Executing plans through providers
"""

from .config_parser import ConfigParser, Configuration, ResourceDeclaration, VariableDefinition
from .diff import Action, AttributeDiff, DiffEngine, ResourceChange
from .engine import Engine
from .executor import ApplyResult, NodeState, PlanExecutor
from .expressions import UNKNOWN, is_known
from .graph import GraphBuilder, ResourceGraph
from .plan import Plan, Planner
from .state import StateEntry, StateResource, StateStore
from .tfvars_handler import TfvarsHandler
from .variables import VariableResolver

__all__ = [
    "ConfigParser",
    "Configuration",
    "ResourceDeclaration",
    "VariableDefinition",
    "Action",
    "AttributeDiff",
    "DiffEngine",
    "ResourceChange",
    "Engine",
    "ApplyResult",
    "NodeState",
    "PlanExecutor",
    "UNKNOWN",
    "is_known",
    "GraphBuilder",
    "ResourceGraph",
    "Plan",
    "Planner",
    "StateEntry",
    "StateResource",
    "StateStore",
    "TfvarsHandler",
    "VariableResolver",
]
