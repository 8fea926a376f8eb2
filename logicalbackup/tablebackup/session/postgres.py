"""
PostgreSQL replication session backed by psycopg 3.

The connection is opened in autocommit mode and transactions are controlled
with explicit BEGIN/COMMIT/ROLLBACK statements, so the isolation level and
access mode are part of the BEGIN itself. Replication connections do not
accept the extended query protocol, so queries go through client-side
binding cursors with prepared statements disabled.

Invariants:
    - Every psycopg.Error is re-raised as SessionError
    - COPY output is written to the sink chunk by chunk, never buffered whole

How to change safely:
    - Test against a real server with wal_level=logical before release
    - Keep the simple-protocol settings, CREATE_REPLICATION_SLOT needs them
"""

from __future__ import annotations

import logging
from typing import Any, BinaryIO, Dict, Optional, Tuple

import psycopg

from .base import ServerInfo, SessionClosedError, SessionError

logger = logging.getLogger(__name__)


class PostgresTransaction:
    """Transaction on a PostgresReplicationSession."""

    def __init__(self, conn: psycopg.AsyncConnection) -> None:
        self._conn = conn

    async def execute(self, query: str) -> None:
        try:
            await self._conn.execute(query)
        except psycopg.Error as e:
            raise SessionError(str(e)) from e

    async def query_row(self, query: str) -> Optional[Tuple[Any, ...]]:
        try:
            cur = await self._conn.execute(query)
            return await cur.fetchone()
        except psycopg.Error as e:
            raise SessionError(str(e)) from e

    async def copy_to(self, query: str, sink: BinaryIO) -> int:
        written = 0
        try:
            async with self._conn.cursor() as cur:
                async with cur.copy(query) as copy:
                    async for chunk in copy:
                        sink.write(chunk)
                        written += len(chunk)
        except psycopg.Error as e:
            raise SessionError(str(e)) from e
        return written

    async def commit(self) -> None:
        await self.execute("COMMIT")

    async def rollback(self) -> None:
        await self.execute("ROLLBACK")


class PostgresReplicationSession:
    """Replication-mode session on a psycopg AsyncConnection.

    Attributes:
        server_info: Server metadata, set by load_server_info()

    Example:
        >>> session = await PostgresReplicationSession.connect(
        ...     {"host": "localhost", "dbname": "app", "replication": "database"}
        ... )
        >>> await session.load_server_info()
        >>> session.backend_pid
        4242
    """

    def __init__(self, conn: psycopg.AsyncConnection) -> None:
        self._conn = conn
        self.server_info: Optional[ServerInfo] = None

    @classmethod
    async def connect(
        cls,
        params: Dict[str, Any],
        *,
        prefer_simple_protocol: bool = True,
    ) -> PostgresReplicationSession:
        """Open a session.

        Args:
            params: libpq connection parameters (host, dbname, replication, ...)
            prefer_simple_protocol: Use client-side binding and no prepared
                statements

        Raises:
            SessionError: If the connection cannot be established
        """
        kwargs: Dict[str, Any] = dict(params)
        if prefer_simple_protocol:
            kwargs["cursor_factory"] = psycopg.AsyncClientCursor
            kwargs["prepare_threshold"] = None

        try:
            conn = await psycopg.AsyncConnection.connect(autocommit=True, **kwargs)
        except psycopg.Error as e:
            raise SessionError(str(e)) from e

        logger.debug(
            "Replication session opened",
            extra={"host": params.get("host"), "dbname": params.get("dbname")},
        )
        return cls(conn)

    @property
    def backend_pid(self) -> int:
        return self._conn.info.backend_pid

    @property
    def is_closed(self) -> bool:
        return self._conn.closed

    async def load_server_info(self) -> ServerInfo:
        """Run IDENTIFY_SYSTEM and read the reported server parameters."""
        if self.is_closed:
            raise SessionClosedError("session is closed")

        try:
            cur = await self._conn.execute("IDENTIFY_SYSTEM")
            row = await cur.fetchone()
        except psycopg.Error as e:
            raise SessionError(str(e)) from e

        if row is None or len(row) < 4:
            raise SessionError(f"unexpected IDENTIFY_SYSTEM result: {row!r}")

        info = self._conn.info
        self.server_info = ServerInfo(
            system_id=str(row[0]),
            timeline=int(row[1]),
            xlogpos=str(row[2]),
            dbname=row[3],
            server_version=info.server_version,
            server_encoding=info.parameter_status("server_encoding"),
            integer_datetimes=info.parameter_status("integer_datetimes") != "off",
        )
        return self.server_info

    async def begin(self, *, isolation: str, read_only: bool) -> PostgresTransaction:
        if self.is_closed:
            raise SessionClosedError("session is closed")

        access_mode = "READ ONLY" if read_only else "READ WRITE"
        try:
            await self._conn.execute(f"BEGIN ISOLATION LEVEL {isolation} {access_mode}")
        except psycopg.Error as e:
            raise SessionError(str(e)) from e
        return PostgresTransaction(self._conn)

    async def close(self) -> None:
        try:
            await self._conn.close()
        except psycopg.Error as e:
            raise SessionError(str(e)) from e
        logger.debug("Replication session closed")
