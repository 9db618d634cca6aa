"""
Utility functions for Groundwork.
"""

from .logger import setup_logging
from .retry import RetryPolicy
from .validators import validate_project_is_groundwork

__all__ = ["setup_logging", "RetryPolicy", "validate_project_is_groundwork"]
