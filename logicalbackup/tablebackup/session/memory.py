"""
In-memory replication session for testing.

This module provides a fake server for:
- Unit tests of the backup protocol
- Local development without a PostgreSQL instance

The fake understands exactly the statements TableBackup issues (BEGIN via
begin(), LOCK TABLE, CREATE_REPLICATION_SLOT, COPY ... TO STDOUT) and records
every statement it sees. Failures can be injected per operation.

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ReplicationSession protocol
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from .base import ServerInfo, SessionClosedError, SessionError

logger = logging.getLogger(__name__)

_COPY_RE = re.compile(r"^copy (.+) to stdout$", re.IGNORECASE)
_SLOT_RE = re.compile(
    r"^CREATE_REPLICATION_SLOT (\S+) TEMPORARY LOGICAL (\S+) USE_SNAPSHOT$"
)


@dataclass
class InMemoryServer:
    """State shared by all sessions of one fake server.

    Attributes:
        tables: COPY output per sanitized table identifier
        consistent_point: Consistent point returned by slot creation
        snapshot_name: Snapshot name returned by slot creation
        slot_row: Overrides the whole slot creation row when set
        copy_chunk_size: Bytes per COPY chunk
        fail_on: Operation name -> exception raised on next call
        fail_copy_after: Bytes to emit before a COPY fails
        statements: Every statement seen, in order
        next_pid: Backend PID handed to the next session
    """

    tables: Dict[str, bytes] = field(default_factory=dict)
    consistent_point: Optional[str] = "0/16B3748"
    snapshot_name: str = "00000003-00000002-1"
    slot_row: Optional[Tuple[Any, ...]] = None
    copy_chunk_size: int = 8192
    fail_on: Dict[str, Exception] = field(default_factory=dict)
    fail_copy_after: Optional[int] = None
    statements: List[str] = field(default_factory=list)
    next_pid: int = 4242
    connections: List[Dict[str, Any]] = field(default_factory=list)

    def inject_failure(self, operation: str, exception: Optional[Exception] = None) -> None:
        """Make the next call of an operation fail.

        Operations: connect, server_info, begin, execute, query_row, copy,
        commit, rollback, close.
        """
        self.fail_on[operation] = exception or SessionError(f"injected {operation} failure")

    def _maybe_fail(self, operation: str) -> None:
        exc = self.fail_on.pop(operation, None)
        if exc is not None:
            raise exc


class InMemoryTransaction:
    """Transaction on an InMemoryReplicationSession."""

    def __init__(self, session: InMemoryReplicationSession) -> None:
        self._session = session
        self._server = session.server
        self.finished = False
        self.committed = False

    def _check(self) -> None:
        if self._session.is_closed:
            raise SessionClosedError("session is closed")
        if self.finished:
            raise SessionError("transaction already finished")

    async def execute(self, query: str) -> None:
        self._check()
        self._server.statements.append(query)
        self._server._maybe_fail("execute")

    async def query_row(self, query: str) -> Optional[Tuple[Any, ...]]:
        self._check()
        self._server.statements.append(query)
        self._server._maybe_fail("query_row")

        match = _SLOT_RE.match(query)
        if match is None:
            raise SessionError(f"syntax error at or near {query!r}")
        if self._server.slot_row is not None:
            return self._server.slot_row
        slot_name, plugin = match.groups()
        return (
            slot_name,
            self._server.consistent_point,
            self._server.snapshot_name,
            plugin,
        )

    async def copy_to(self, query: str, sink: BinaryIO) -> int:
        self._check()
        self._server.statements.append(query)
        self._server._maybe_fail("copy")

        match = _COPY_RE.match(query)
        if match is None:
            raise SessionError(f"syntax error at or near {query!r}")
        identifier = match.group(1)
        if identifier not in self._server.tables:
            raise SessionError(f"relation {identifier} does not exist")

        data = self._server.tables[identifier]
        limit = self._server.fail_copy_after
        written = 0
        step = self._server.copy_chunk_size
        for start in range(0, len(data), step):
            chunk = data[start:start + step]
            if limit is not None and written + len(chunk) > limit:
                sink.write(chunk[: limit - written])
                raise SessionError("connection lost during COPY")
            sink.write(chunk)
            written += len(chunk)
        return written

    async def commit(self) -> None:
        self._check()
        self._server.statements.append("COMMIT")
        self._server._maybe_fail("commit")
        self.finished = True
        self.committed = True
        self._session.transaction = None

    async def rollback(self) -> None:
        self._check()
        self._server.statements.append("ROLLBACK")
        self._server._maybe_fail("rollback")
        self.finished = True
        self._session.transaction = None


class InMemoryReplicationSession:
    """In-memory implementation of ReplicationSession for testing.

    Example:
        >>> server = InMemoryServer(tables={'"public"."t"': b"1\\tone\\n"})
        >>> session = await InMemoryConnector(server)({"replication": "database"})
        >>> tx = await session.begin(isolation="REPEATABLE READ", read_only=True)
    """

    def __init__(self, server: InMemoryServer, pid: int) -> None:
        self.server = server
        self._pid = pid
        self._closed = False
        self.server_info: Optional[ServerInfo] = None
        self.transaction: Optional[InMemoryTransaction] = None
        self.begin_options: Optional[Dict[str, Any]] = None

    @property
    def backend_pid(self) -> int:
        return self._pid

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def load_server_info(self) -> ServerInfo:
        if self._closed:
            raise SessionClosedError("session is closed")
        self.server.statements.append("IDENTIFY_SYSTEM")
        self.server._maybe_fail("server_info")
        self.server_info = ServerInfo(
            system_id="7000000000000000001",
            timeline=1,
            xlogpos="0/16B3748",
            dbname="postgres",
            server_version=160002,
            server_encoding="UTF8",
        )
        return self.server_info

    async def begin(self, *, isolation: str, read_only: bool) -> InMemoryTransaction:
        if self._closed:
            raise SessionClosedError("session is closed")
        self.server._maybe_fail("begin")
        if self.transaction is not None:
            raise SessionError("there is already a transaction in progress")
        access_mode = "READ ONLY" if read_only else "READ WRITE"
        self.server.statements.append(f"BEGIN ISOLATION LEVEL {isolation} {access_mode}")
        self.begin_options = {"isolation": isolation, "read_only": read_only}
        self.transaction = InMemoryTransaction(self)
        return self.transaction

    async def close(self) -> None:
        self.server._maybe_fail("close")
        self._closed = True
        self.transaction = None
        logger.debug("InMemoryReplicationSession closed")


class InMemoryConnector:
    """SessionConnector that opens sessions on an InMemoryServer.

    Records the parameters of every connection attempt on the server.
    """

    def __init__(self, server: InMemoryServer) -> None:
        self.server = server
        self.sessions: List[InMemoryReplicationSession] = []

    async def __call__(
        self,
        params: Dict[str, Any],
        *,
        prefer_simple_protocol: bool = True,
    ) -> InMemoryReplicationSession:
        self.server.connections.append(
            {"params": dict(params), "prefer_simple_protocol": prefer_simple_protocol}
        )
        self.server._maybe_fail("connect")
        session = InMemoryReplicationSession(self.server, self.server.next_pid)
        self.server.next_pid += 1
        self.sessions.append(session)
        return session
