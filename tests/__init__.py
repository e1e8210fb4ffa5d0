"""
DocDB Smuggler Test Suite.

This package contains:
- unit/: Unit tests (leaf components, temporary SQLite files)
- integration/: Pipeline tests (real stores, in-process HTTP server)
"""
