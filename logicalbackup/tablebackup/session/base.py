"""
Base protocol and types for replication sessions.

A replication session is a connection opened with ``replication=database``:
it accepts both ordinary SQL and replication commands such as
CREATE_REPLICATION_SLOT. TableBackup only talks to the server through the
protocols defined here, so the wire protocol stays an external concern.

Invariants:
    - A session runs at most one transaction at a time
    - Driver exceptions never leak out of an adapter, they become SessionError
    - copy_to() writes raw COPY output to the sink, unmodified

How to change safely:
    - Protocol changes require updating every adapter (postgres, memory)
    - Keep SessionTransaction free of commit-on-exit magic; callers decide
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    BinaryIO,
    Callable,
    Dict,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)
import logging

logger = logging.getLogger(__name__)

# Parameters merged over the caller's connection parameters by connect().
REPLICATION_PARAMS: Dict[str, str] = {"replication": "database"}


class SessionError(Exception):
    """Base exception for session operations."""
    pass


class SessionClosedError(SessionError):
    """Operation attempted on a closed session."""
    pass


@dataclass(frozen=True)
class ServerInfo:
    """Server metadata learned once per session.

    Attributes:
        system_id: Database system identifier (IDENTIFY_SYSTEM)
        timeline: Current timeline
        xlogpos: Current WAL flush position, server text form
        dbname: Database the session is bound to
        server_version: Numeric server version (e.g. 160002)
        server_encoding: Server-side encoding
        integer_datetimes: Whether timestamps are 64-bit integers
    """

    system_id: str
    timeline: int
    xlogpos: str
    dbname: Optional[str]
    server_version: int
    server_encoding: Optional[str] = None
    integer_datetimes: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "system_id": self.system_id,
            "timeline": self.timeline,
            "xlogpos": self.xlogpos,
            "dbname": self.dbname,
            "server_version": self.server_version,
            "server_encoding": self.server_encoding,
            "integer_datetimes": self.integer_datetimes,
        }


@runtime_checkable
class SessionTransaction(Protocol):
    """An open transaction on a replication session."""

    @abstractmethod
    async def execute(self, query: str) -> None:
        """Run a statement that returns no rows.

        Raises:
            SessionError: If the server rejects the statement
        """
        ...

    @abstractmethod
    async def query_row(self, query: str) -> Optional[Tuple[Any, ...]]:
        """Run a statement and return its first row, or None.

        Raises:
            SessionError: If the server rejects the statement
        """
        ...

    @abstractmethod
    async def copy_to(self, query: str, sink: BinaryIO) -> int:
        """Stream the output of a ``COPY ... TO STDOUT`` into sink.

        Returns:
            Number of bytes written

        Raises:
            SessionError: If the COPY fails; sink may hold partial data
        """
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...


@runtime_checkable
class ReplicationSession(Protocol):
    """Protocol for replication-mode database sessions.

    Example:
        >>> session = await PostgresReplicationSession.connect(params)
        >>> info = await session.load_server_info()
        >>> tx = await session.begin(isolation="REPEATABLE READ", read_only=True)
        >>> row = await tx.query_row("CREATE_REPLICATION_SLOT ...")
        >>> await tx.commit()
        >>> await session.close()
    """

    server_info: Optional[ServerInfo]

    @property
    @abstractmethod
    def backend_pid(self) -> int:
        """Process ID of the server backend serving this session."""
        ...

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        ...

    @abstractmethod
    async def load_server_info(self) -> ServerInfo:
        """Fetch server metadata and attach it as ``server_info``.

        Raises:
            SessionError: If the exchange fails
        """
        ...

    @abstractmethod
    async def begin(self, *, isolation: str, read_only: bool) -> SessionTransaction:
        """Begin a transaction.

        Args:
            isolation: SQL isolation level, e.g. "REPEATABLE READ"
            read_only: Whether the transaction is READ ONLY

        Raises:
            SessionError: If BEGIN fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Any open transaction is rolled back by the server."""
        ...


# Opens a session from merged connection parameters.
SessionConnector = Callable[..., Awaitable[ReplicationSession]]


def merge_params(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge connection parameters, overrides win.

    None values in base are dropped so libpq defaults apply.
    """
    merged = {key: value for key, value in base.items() if value is not None}
    merged.update(overrides)
    return merged
