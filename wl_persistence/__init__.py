"""
Workload persistence module.

This module contains the database implementation for workload and
deployment storage. Currently supports SQLite, but can be extended to
PostgreSQL, MySQL, etc.

The persistence layer depends on wl_common for domain models and interfaces,
and can be used by the server, the deployer and the admin CLI.
"""

from .sqlite_repository import SQLiteWorkloadRepository

__all__ = ["SQLiteWorkloadRepository"]
