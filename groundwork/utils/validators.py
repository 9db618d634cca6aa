"""
Validation utilities for Groundwork.
"""

from pathlib import Path


def validate_project_is_groundwork(project_path: str) -> bool:
    """
    Check if a directory appears to be a Groundwork project.

    A valid project should have at least one .tf file.

    Args:
        project_path: Path to directory

    Returns:
        True if appears to be a Groundwork project
    """
    path = Path(project_path)

    if not path.exists() or not path.is_dir():
        return False

    return any(path.glob("*.tf"))
