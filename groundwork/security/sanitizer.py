"""
Validation of input that does not come from parsed .tf files: the project
directory, --var / TF_VAR_ values, and addresses passed to -target and
the state commands.
"""

import json
import os
import re
from typing import Any, Tuple

from ..errors import ConfigError


class SecurityError(ConfigError):
    """Rejected external input."""
    pass


NAME = r'[a-zA-Z_][a-zA-Z0-9_-]*'


class InputSanitizer:
    """Static checks and type coercion; every failure is a SecurityError."""

    VARIABLE_NAME_PATTERN = re.compile(rf'^{NAME}$')
    # aws_instance, null_resource, local_file
    RESOURCE_TYPE_PATTERN = re.compile(r'^[a-z][a-z0-9]*(_[a-z0-9]+)*$')
    RESOURCE_NAME_PATTERN = re.compile(rf'^{NAME}$')

    MAX_VARIABLE_NAME_LENGTH = 255
    MAX_VARIABLE_VALUE_LENGTH = 65536
    MAX_ADDRESS_LENGTH = 512

    COLLECTION_TYPES = {"list": list, "set": list, "tuple": list, "map": dict, "object": dict}

    @staticmethod
    def sanitize_path(path: str) -> str:
        """
        Resolve a project directory to an absolute real path.

        Raises:
            SecurityError: For an empty path, or one that is not an existing directory
        """
        if not path:
            raise SecurityError("Project path is empty")
        try:
            resolved = os.path.realpath(os.path.expanduser(path))
        except (OSError, ValueError) as e:
            raise SecurityError(f"Cannot resolve project path {path}: {e}")
        if not os.path.isdir(resolved):
            reason = "is not a directory" if os.path.exists(resolved) else "does not exist"
            raise SecurityError(f"Project path {path} {reason}")
        return resolved

    @staticmethod
    def sanitize_variable_name(name: str) -> str:
        if not name:
            raise SecurityError("Empty variable name")
        if len(name) > InputSanitizer.MAX_VARIABLE_NAME_LENGTH:
            raise SecurityError(
                f"Variable name longer than {InputSanitizer.MAX_VARIABLE_NAME_LENGTH} characters"
            )
        if not InputSanitizer.VARIABLE_NAME_PATTERN.match(name):
            raise SecurityError(
                f"Invalid variable name '{name}': use letters, digits, '_' and '-', "
                "starting with a letter or '_'"
            )
        return name

    @staticmethod
    def coerce_variable_value(value: Any, var_type: str = "string") -> Any:
        """
        Convert a value to a variable's declared type.

        --var and TF_VAR_ values are strings; collections among them are
        read as JSON. Values from .tfvars files and defaults are already
        typed and only checked. Type arguments such as list(string) are
        not enforced.

        Raises:
            SecurityError: If the value is oversized or does not fit the type
        """
        if value is None:
            return None

        if isinstance(value, str) and len(value) > InputSanitizer.MAX_VARIABLE_VALUE_LENGTH:
            raise SecurityError(
                f"Variable value longer than {InputSanitizer.MAX_VARIABLE_VALUE_LENGTH} characters"
            )

        base_type = var_type.split("(", 1)[0].strip()

        if base_type == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).lower()
            if text not in ("true", "false", "1", "0"):
                raise SecurityError(f"Expected a bool, got {value!r}")
            return text in ("true", "1")

        if base_type == "number":
            if isinstance(value, bool):
                raise SecurityError(f"Expected a number, got {value!r}")
            if isinstance(value, (int, float)):
                return value
            for convert in (int, float):
                try:
                    return convert(value)
                except (TypeError, ValueError):
                    continue
            raise SecurityError(f"Expected a number, got {value!r}")

        if base_type in InputSanitizer.COLLECTION_TYPES:
            expected = InputSanitizer.COLLECTION_TYPES[base_type]
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError as e:
                    raise SecurityError(f"Value for {var_type} is not valid JSON: {e}")
            if not isinstance(value, expected):
                raise SecurityError(f"Expected a {base_type}, got {type(value).__name__}")
            return value

        if base_type == "string":
            if isinstance(value, (dict, list)):
                raise SecurityError(f"Expected a string, got {type(value).__name__}")
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)

        return value

    @staticmethod
    def sanitize_resource_address(address: str) -> Tuple[str, str]:
        """
        Split "<type>.<name>" into its parts.

        Raises:
            SecurityError: For anything else
        """
        if not address:
            raise SecurityError("Empty resource address")
        if len(address) > InputSanitizer.MAX_ADDRESS_LENGTH:
            raise SecurityError(
                f"Resource address longer than {InputSanitizer.MAX_ADDRESS_LENGTH} characters"
            )

        parts = address.split(".")
        if len(parts) != 2:
            raise SecurityError(f"Invalid resource address '{address}': expected <type>.<name>")

        resource_type, resource_name = parts
        if not InputSanitizer.RESOURCE_TYPE_PATTERN.match(resource_type):
            raise SecurityError(f"Invalid resource type '{resource_type}' in '{address}'")
        if not InputSanitizer.RESOURCE_NAME_PATTERN.match(resource_name):
            raise SecurityError(f"Invalid resource name '{resource_name}' in '{address}'")
        return resource_type, resource_name
