#!/usr/bin/env python3
"""
Main entry point for the buildlink CLI.

Delegates to the UI layer in buildlink.ui.cli to keep the
console script mapping stable.
"""

from buildlink.ui.cli import run as buildlink


if __name__ == "__main__":
    buildlink()
