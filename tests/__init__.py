"""
NodeDB Test Suite.

This package contains:
- unit/: Unit tests (SQLite, flatfiles, fakes; no servers)
- integration/: Engine scenarios on SQLite and flatfiles
- e2e/: PostgreSQL, MySQL and Redis runs (NODEDB_E2E_TESTS=1)
"""
