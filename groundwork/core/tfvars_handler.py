"""
Handler for .tfvars files.

Provides parsing of variable definition files and discovery of the
files a project loads automatically.
"""

import glob
import logging
import os
from typing import Any, Dict, List

import hcl2

from ..errors import ConfigError
from .config_parser import normalize

logger = logging.getLogger(__name__)


class TfvarsHandler:
    """Parse Terraform-style .tfvars files."""

    AUTO_FILENAMES = ("terraform.tfvars", "groundwork.tfvars")

    @staticmethod
    def parse_tfvars(file_path: str) -> Dict[str, Any]:
        """
        Parse a .tfvars file and return variable name-value pairs.

        Args:
            file_path: Path to the .tfvars file.

        Returns:
            Dict of variable name to value.

        Raises:
            FileNotFoundError: If file does not exist.
            ConfigError: If file cannot be parsed.
        """
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                parsed = hcl2.load(f)
        except FileNotFoundError:
            raise
        except Exception as e:
            raise ConfigError(f"Failed to parse tfvars file {file_path}: {e}") from e

        return normalize(parsed)

    @staticmethod
    def auto_files(project_path: str) -> List[str]:
        """
        List the tfvars files loaded without being named on the command line.

        terraform.tfvars / groundwork.tfvars first, then *.auto.tfvars in
        lexical order (later files win).
        """
        files = [
            os.path.join(project_path, name)
            for name in TfvarsHandler.AUTO_FILENAMES
            if os.path.isfile(os.path.join(project_path, name))
        ]
        files.extend(sorted(glob.glob(os.path.join(project_path, "*.auto.tfvars"))))
        return files
