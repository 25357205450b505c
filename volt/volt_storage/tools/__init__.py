"""
CLI tools for Volt storage administration.

This module provides command-line tools for:
- info / migrate / distribute: Operate on the configured back-end
- test-connection / check-dependencies: Probe without switching

Invariants:
    - Tools open their own router and close it before exiting
    - All operations are logged for audit
"""

from .storage_cli import StorageCLI, parse_options

__all__ = ["StorageCLI", "parse_options"]
