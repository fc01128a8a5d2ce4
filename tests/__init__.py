"""
linksync test suite.

This package contains:
- unit/: Unit tests (in-memory doubles and temporary SQLite files)
- integration/: Consumers over the in-memory transport and SQLite stores
"""
