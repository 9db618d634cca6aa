"""
Groundwork - declarative infrastructure provisioning with dependency-ordered apply.
"""

__version__ = "0.9.0"
