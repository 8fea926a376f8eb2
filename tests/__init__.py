"""
Logical table backup test suite.

This package contains:
- unit/: Unit tests (no external dependencies, in-memory session)
- integration/: Integration tests (real PostgreSQL, opt-in)
"""
