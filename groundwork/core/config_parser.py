"""
Configuration parser.

This module parses the HCL files of a project into variable, provider,
resource and output declarations.
"""

import glob
import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import hcl2

from ..errors import ConfigError
from ..security import InputSanitizer
from .expressions import INTERPOLATION_RE, parse_reference

logger = logging.getLogger(__name__)


@dataclass
class VariableDefinition:
    """
    Represents a variable block.

    Attributes:
        name: Variable name
        type: Type constraint (string, number, bool, list, map, any, ...)
        default: Default value (None if no default)
        description: Human-readable description
        sensitive: Whether the value must be redacted from output
        has_default: Whether a default was declared at all
    """
    name: str
    type: str = "any"
    default: Optional[Any] = None
    description: str = ""
    sensitive: bool = False
    has_default: bool = False

    def is_required(self) -> bool:
        """
        Check if variable is required (has no default).

        Returns:
            True if variable must be provided
        """
        return not self.has_default

    def __repr__(self) -> str:
        return (
            f"VariableDefinition(name='{self.name}', type='{self.type}', "
            f"required={self.is_required()}, sensitive={self.sensitive})"
        )


@dataclass
class Lifecycle:
    """Per-resource lifecycle overrides."""
    create_before_destroy: Optional[bool] = None
    prevent_destroy: bool = False
    ignore_changes: List[str] = field(default_factory=list)


@dataclass
class ResourceDeclaration:
    """A resource block: type, name and raw arguments."""
    type: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    source: str = ""

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


@dataclass
class OutputDeclaration:
    """An output block."""
    name: str
    value: Any = None
    description: str = ""
    sensitive: bool = False


@dataclass
class Configuration:
    """Everything declared in a project directory."""
    variables: Dict[str, VariableDefinition] = field(default_factory=dict)
    providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    resources: Dict[str, ResourceDeclaration] = field(default_factory=dict)
    outputs: Dict[str, OutputDeclaration] = field(default_factory=dict)


class ConfigParser:
    """
    Parser for project configuration files.

    Reads every *.tf file in the project directory with hcl2. Any syntax
    error or malformed block fails the whole load with ConfigError; a
    partial configuration is never returned.
    """

    def __init__(self, project_path: str):
        """
        Initialize parser for a project.

        Args:
            project_path: Path to project directory
        """
        self.project_path = project_path
        self._config: Optional[Configuration] = None

    def _tf_files(self) -> List[str]:
        return sorted(glob.glob(os.path.join(self.project_path, "*.tf")))

    def load(self) -> Configuration:
        """
        Parse all .tf files in the project.

        Returns:
            Configuration with variables, providers, resources and outputs

        Raises:
            ConfigError: On syntax errors, duplicates or malformed blocks
        """
        if self._config is not None:
            return self._config

        tf_files = self._tf_files()
        if not tf_files:
            raise ConfigError(f"No .tf files found in {self.project_path}")

        logger.debug(f"Found {len(tf_files)} configuration files")

        config = Configuration()
        for tf_file in tf_files:
            parsed = self._load_file(tf_file)
            self._collect(config, parsed, os.path.basename(tf_file))

        logger.info(
            f"Parsed {len(config.resources)} resources, {len(config.variables)} variables, "
            f"{len(config.outputs)} outputs"
        )
        self._config = config
        return config

    @staticmethod
    def _load_file(tf_file: str) -> Dict[str, Any]:
        try:
            with open(tf_file, 'r', encoding='utf-8') as f:
                return hcl2.load(f)
        except Exception as e:
            raise ConfigError(f"Syntax error in {os.path.basename(tf_file)}: {e}") from e

    def _collect(self, config: Configuration, parsed: Dict[str, Any], source: str):
        for var_block in parsed.get('variable', []):
            for var_name, var_config in var_block.items():
                if var_name in config.variables:
                    raise ConfigError(f"Duplicate variable '{var_name}' in {source}")
                config.variables[var_name] = self._create_variable(var_name, var_config or {})

        for provider_block in parsed.get('provider', []):
            for provider_name, provider_config in provider_block.items():
                config.providers[provider_name] = normalize(provider_config or {})

        for resource_block in parsed.get('resource', []):
            for res_type, instances in resource_block.items():
                for res_name, body in instances.items():
                    resource = self._create_resource(res_type, res_name, body or {}, source)
                    if resource.address in config.resources:
                        raise ConfigError(f"Duplicate resource '{resource.address}' in {source}")
                    config.resources[resource.address] = resource

        for output_block in parsed.get('output', []):
            for output_name, output_config in output_block.items():
                output_config = normalize(output_config or {})
                if 'value' not in output_config:
                    raise ConfigError(f"Output '{output_name}' in {source} has no value")
                config.outputs[output_name] = OutputDeclaration(
                    name=output_name,
                    value=output_config['value'],
                    description=output_config.get('description', ''),
                    sensitive=bool(output_config.get('sensitive', False)),
                )

    def _create_variable(self, name: str, config: dict) -> VariableDefinition:
        """
        Create VariableDefinition from parsed HCL config.

        Args:
            name: Variable name
            config: Parsed variable configuration dict

        Returns:
            VariableDefinition object
        """
        InputSanitizer.sanitize_variable_name(name)
        config = normalize(config)

        return VariableDefinition(
            name=name,
            type=self._extract_type(config.get('type', 'any')),
            default=config.get('default'),
            description=config.get('description', ''),
            sensitive=bool(config.get('sensitive', False)),
            has_default='default' in config,
        )

    @staticmethod
    def _extract_type(type_value: Any) -> str:
        """
        Extract and normalize a type constraint.

        hcl2 renders type expressions as interpolations, e.g. "${list(string)}".

        Args:
            type_value: Type value from HCL

        Returns:
            Normalized type string
        """
        if isinstance(type_value, str):
            text = type_value.strip()
            if text.startswith("${") and text.endswith("}"):
                text = text[2:-1].strip()
            return text
        return str(type_value)

    def _create_resource(self, res_type: str, res_name: str, body: dict, source: str) -> ResourceDeclaration:
        address = f"{res_type}.{res_name}"
        InputSanitizer.sanitize_resource_address(address)

        arguments = normalize(body)
        depends_on = [
            self._depends_on_address(item, address)
            for item in arguments.pop('depends_on', []) or []
        ]

        lifecycle_blocks = arguments.pop('lifecycle', [])
        if isinstance(lifecycle_blocks, dict):
            lifecycle_blocks = [lifecycle_blocks]
        lifecycle = Lifecycle()
        for block in lifecycle_blocks:
            if 'create_before_destroy' in block:
                lifecycle.create_before_destroy = bool(block['create_before_destroy'])
            if 'prevent_destroy' in block:
                lifecycle.prevent_destroy = bool(block['prevent_destroy'])
            for item in block.get('ignore_changes', []) or []:
                lifecycle.ignore_changes.append(self._bare_name(item))

        return ResourceDeclaration(
            type=res_type,
            name=res_name,
            arguments=arguments,
            depends_on=depends_on,
            lifecycle=lifecycle,
            source=source,
        )

    @staticmethod
    def _bare_name(item: Any) -> str:
        text = str(item).strip()
        match = INTERPOLATION_RE.fullmatch(text)
        return match.group(1).strip() if match else text

    def _depends_on_address(self, item: Any, address: str) -> str:
        text = self._bare_name(item)
        ref = parse_reference(text)
        if not ref.is_resource or len(ref.parts) != 2:
            raise ConfigError(f"depends_on in {address} must list resource addresses, got '{item}'")
        return ref.address


def normalize(value: Any) -> Any:
    """Strip hcl2 metadata keys (__start_line__ etc.) from parsed values."""
    if isinstance(value, dict):
        return {
            k: normalize(v)
            for k, v in value.items()
            if not (isinstance(k, str) and k.startswith("__"))
        }
    if isinstance(value, list):
        return [normalize(v) for v in value]
    return value
