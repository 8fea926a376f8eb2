"""
Replication session abstraction for table backups.

This module provides the client capability TableBackup needs from the
database driver:
- PostgreSQL via psycopg 3 (production)
- In-memory fake server (for testing)

Invariants:
    - Sessions are opened in replication=database mode
    - Driver errors surface as SessionError

How to change safely:
    - New adapters must implement the ReplicationSession protocol
    - Run the integration tests against a real server after changes
"""

from .base import (
    REPLICATION_PARAMS,
    ReplicationSession,
    ServerInfo,
    SessionClosedError,
    SessionConnector,
    SessionError,
    SessionTransaction,
    merge_params,
)
from .memory import InMemoryConnector, InMemoryReplicationSession, InMemoryServer
from .postgres import PostgresReplicationSession, PostgresTransaction

__all__ = [
    # Protocol and types
    "ReplicationSession",
    "SessionTransaction",
    "SessionConnector",
    "ServerInfo",
    "SessionError",
    "SessionClosedError",
    "REPLICATION_PARAMS",
    "merge_params",
    # Implementations
    "PostgresReplicationSession",
    "PostgresTransaction",
    "InMemoryServer",
    "InMemoryConnector",
    "InMemoryReplicationSession",
]
