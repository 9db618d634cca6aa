#!/usr/bin/env python3
"""
Groundwork - Main entry point.

Runs the command line interface.
"""

import sys

from groundwork.cli import main


if __name__ == "__main__":
    sys.exit(main())
