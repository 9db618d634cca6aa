"""
Security module for Groundwork.

This module provides utilities for validating external input and
keeping sensitive values out of rendered output.
"""

from .sanitizer import InputSanitizer, SecurityError
from .secure_memory import SecureString, OutputRedactor, REDACTED

__all__ = ["InputSanitizer", "SecurityError", "SecureString", "OutputRedactor", "REDACTED"]
