"""External adapters for the loan lifecycle service.

This package contains all external dependencies (SQLite, PostgreSQL,
HTTP clients and servers) and provides implementations of the core port
interfaces.

Adapter Organization:

- store/: Adapters for loan persistence (SQLite, PostgreSQL)
- notification/: Adapters for funding-complete notices (stdout, markdown, webhook)
- http/: HTTP API exposing the lifecycle operations
- cli/: Command-line interface for operators
"""
