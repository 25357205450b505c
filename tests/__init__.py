"""
Volt storage layer test suite.

This package contains:
- unit/: Unit tests (SQLite, temp directories, in-process fakes)
- integration/: End-to-end scenarios across router, services and migration
"""
