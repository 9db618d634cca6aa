"""
Variable resolution.

Each variable is resolved once per invocation, lowest to highest
precedence: declared default, auto-loaded tfvars files, --var-file files,
TF_VAR_<name> environment variables, --var name=value flags.
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ConfigError
from ..security import InputSanitizer, OutputRedactor
from .config_parser import VariableDefinition
from .tfvars_handler import TfvarsHandler

logger = logging.getLogger(__name__)

ENV_PREFIX = "TF_VAR_"


def parse_var_flags(flags: List[str]) -> Dict[str, str]:
    """
    Split "name=value" command line flags.

    Raises:
        ConfigError: For flags without "="
    """
    values = {}
    for flag in flags:
        if "=" not in flag:
            raise ConfigError(f"Invalid --var '{flag}': expected name=value")
        name, value = flag.split("=", 1)
        values[InputSanitizer.sanitize_variable_name(name.strip())] = value
    return values


class VariableResolver:
    """Resolves declared variables from all input sources."""

    def __init__(
        self,
        definitions: Mapping[str, VariableDefinition],
        project_path: str,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.definitions = definitions
        self.project_path = project_path
        self.environ = os.environ if environ is None else environ

    def resolve(
        self,
        cli_values: Optional[Dict[str, Any]] = None,
        var_files: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Resolve every declared variable.

        Args:
            cli_values: Values from --var flags
            var_files: Paths from --var-file flags

        Returns:
            Dict of variable name to typed value

        Raises:
            ConfigError: For missing required variables, undeclared names
                given on the command line, or values of the wrong type
        """
        layers: List[Dict[str, Any]] = []

        for path in TfvarsHandler.auto_files(self.project_path):
            logger.debug(f"Loading variables from {path}")
            layers.append(TfvarsHandler.parse_tfvars(path))

        for path in var_files or []:
            if not os.path.isabs(path):
                path = os.path.join(self.project_path, path)
            try:
                layers.append(TfvarsHandler.parse_tfvars(path))
            except FileNotFoundError:
                raise ConfigError(f"Variable file not found: {path}")

        env_values = {
            key[len(ENV_PREFIX):]: value
            for key, value in self.environ.items()
            if key.startswith(ENV_PREFIX)
        }
        layers.append({k: v for k, v in env_values.items() if k in self.definitions})

        cli_values = cli_values or {}
        for name in cli_values:
            if name not in self.definitions:
                raise ConfigError(f"Value given for undeclared variable '{name}'")
        layers.append(cli_values)

        resolved: Dict[str, Any] = {}
        for name, definition in self.definitions.items():
            found = definition.has_default
            value = definition.default
            for layer in layers:
                if name in layer:
                    found = True
                    value = layer[name]
            if not found:
                raise ConfigError(f"No value for required variable '{name}'")
            try:
                resolved[name] = InputSanitizer.coerce_variable_value(value, definition.type)
            except ConfigError as e:
                raise ConfigError(f"Variable '{name}': {e}") from e

        return resolved

    def redactor(self, values: Dict[str, Any]) -> OutputRedactor:
        """Build a redactor for the sensitive variables among resolved values."""
        return OutputRedactor.from_values({
            name: values.get(name)
            for name, definition in self.definitions.items()
            if definition.sensitive
        })
