"""
Unit tests for TableBackup against the in-memory session.

Tests cover:
- Connection lifecycle and parameter merging
- Transaction state rules
- Temporary slot provisioning
- Atomic table export and its failure paths
- Complete backup cycles
"""

import asyncio
import hashlib

import pytest

from logicalbackup.tablebackup.backup import read_manifest, temp_slot_name
from logicalbackup.tablebackup.backup.table_backup import TableBackup
from logicalbackup.tablebackup.errors import (
    BackupConnectionError,
    CopyDumpError,
    LSNParseError,
    NoConnectionError,
    NoConsistentPointError,
    NoTransactionError,
    NullConsistentPointError,
    ProtocolError,
    StateError,
    TransactionInProgressError,
)
from logicalbackup.tablebackup.identifier import TableIdentifier
from logicalbackup.tablebackup.lsn import LSN, ZERO_LSN
from logicalbackup.tablebackup.session.memory import InMemoryConnector, InMemoryServer

TABLE = '"public"."users"'
DATA = b"1\talice\n2\tbob\n3\tcarol\n4\tdave\n"
SLOT_QUERY = "CREATE_REPLICATION_SLOT tempslot_4242 TEMPORARY LOGICAL pgoutput USE_SNAPSHOT"


@pytest.fixture
def server():
    """Fake server holding one table."""
    return InMemoryServer(tables={TABLE: DATA})


@pytest.fixture
def connector(server):
    return InMemoryConnector(server)


@pytest.fixture
def bb_path(tmp_path):
    return tmp_path / "users.copy"


@pytest.fixture
def backup(connector, bb_path):
    return TableBackup(
        TableIdentifier("public", "users"),
        bb_path,
        {"host": "db.internal", "dbname": "app", "password": None},
        connector=connector,
    )


async def _prepare(backup):
    """Connect, begin and establish a consistent point."""
    await backup.connect()
    await backup.tx_begin()
    await backup.create_temp_replication_slot()


class TestConnection:
    """Tests for connect/disconnect/temp_slot_name."""

    @pytest.mark.asyncio
    async def test_connect_merges_replication_params(self, backup, server):
        """Caller parameters are kept, replication mode is forced."""
        await backup.connect()

        assert server.connections == [
            {
                "params": {"host": "db.internal", "dbname": "app", "replication": "database"},
                "prefer_simple_protocol": True,
            }
        ]

    @pytest.mark.asyncio
    async def test_connect_overrides_caller_replication(self, server, connector, bb_path):
        backup = TableBackup(
            TableIdentifier("public", "users"),
            bb_path,
            {"replication": "false"},
            connector=connector,
        )
        await backup.connect()

        assert server.connections[0]["params"]["replication"] == "database"

    @pytest.mark.asyncio
    async def test_connect_loads_server_info(self, backup, server):
        await backup.connect()

        assert backup.conn is not None
        assert backup.conn.server_info is not None
        assert backup.conn.server_info.server_version == 160002
        assert server.statements == ["IDENTIFY_SYSTEM"]

    @pytest.mark.asyncio
    async def test_connect_failure(self, backup, server):
        server.inject_failure("connect")

        with pytest.raises(BackupConnectionError):
            await backup.connect()

        assert backup.conn is None

    @pytest.mark.asyncio
    async def test_server_info_failure_closes_session(self, backup, server, connector):
        """No half-initialized session is kept."""
        server.inject_failure("server_info")

        with pytest.raises(BackupConnectionError):
            await backup.connect()

        assert backup.conn is None
        assert connector.sessions[0].is_closed

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, backup):
        await backup.connect()

        with pytest.raises(StateError):
            await backup.connect()

    @pytest.mark.asyncio
    async def test_disconnect(self, backup, connector):
        await backup.connect()
        await backup.disconnect()

        assert backup.conn is None
        assert connector.sessions[0].is_closed

    @pytest.mark.asyncio
    async def test_disconnect_without_connection(self, backup):
        with pytest.raises(NoConnectionError):
            await backup.disconnect()

    @pytest.mark.asyncio
    async def test_temp_slot_name_uses_backend_pid(self, backup):
        await backup.connect()

        assert backup.temp_slot_name() == "tempslot_4242"

    def test_temp_slot_name_requires_connection(self, backup):
        with pytest.raises(NoConnectionError):
            backup.temp_slot_name()

    def test_temp_slot_name_is_pure(self):
        assert temp_slot_name(17) == "tempslot_17"
        assert temp_slot_name(17) == temp_slot_name(17)


class TestTransactions:
    """Tests for tx_begin/tx_commit/tx_rollback."""

    @pytest.mark.asyncio
    async def test_begin_uses_snapshot_isolation(self, backup, connector, server):
        await backup.connect()
        await backup.tx_begin()

        assert backup.tx is not None
        assert connector.sessions[0].begin_options == {
            "isolation": "REPEATABLE READ",
            "read_only": True,
        }
        assert server.statements[-1] == "BEGIN ISOLATION LEVEL REPEATABLE READ READ ONLY"

    @pytest.mark.asyncio
    async def test_begin_twice_rejected_and_first_still_usable(self, backup, server):
        """A second begin fails; the original transaction keeps working."""
        await backup.connect()
        await backup.tx_begin()
        first = backup.tx

        with pytest.raises(TransactionInProgressError):
            await backup.tx_begin()

        assert backup.tx is first
        await backup.lock_table()
        await backup.tx_commit()
        assert server.statements[-1] == "COMMIT"

    @pytest.mark.asyncio
    async def test_begin_without_connection(self, backup):
        with pytest.raises(NoConnectionError):
            await backup.tx_begin()

    @pytest.mark.asyncio
    async def test_begin_failure(self, backup, server):
        await backup.connect()
        server.inject_failure("begin")

        with pytest.raises(ProtocolError):
            await backup.tx_begin()

        assert backup.tx is None

    @pytest.mark.asyncio
    async def test_cancelled_begin_leaves_no_transaction(self, backup, server):
        await backup.connect()
        server.inject_failure("begin", asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await backup.tx_begin()

        assert backup.tx is None

    @pytest.mark.asyncio
    async def test_commit_without_transaction(self, backup):
        await backup.connect()
        conn = backup.conn

        with pytest.raises(NoTransactionError):
            await backup.tx_commit()

        assert backup.tx is None
        assert backup.conn is conn

    @pytest.mark.asyncio
    async def test_rollback_without_transaction(self, backup):
        await backup.connect()

        with pytest.raises(NoTransactionError):
            await backup.tx_rollback()

        assert backup.tx is None

    @pytest.mark.asyncio
    async def test_commit_clears_transaction(self, backup):
        await backup.connect()
        await backup.tx_begin()
        await backup.tx_commit()

        assert backup.tx is None
        await backup.tx_begin()

    @pytest.mark.asyncio
    async def test_rollback_clears_transaction(self, backup, server):
        await backup.connect()
        await backup.tx_begin()
        await backup.tx_rollback()

        assert backup.tx is None
        assert server.statements[-1] == "ROLLBACK"

    @pytest.mark.asyncio
    async def test_commit_failure_keeps_transaction(self, backup, server):
        await backup.connect()
        await backup.tx_begin()
        server.inject_failure("commit")

        with pytest.raises(ProtocolError):
            await backup.tx_commit()

        assert backup.tx is not None

    @pytest.mark.asyncio
    async def test_lock_table(self, backup, server):
        await backup.connect()
        await backup.tx_begin()
        await backup.lock_table()

        assert server.statements[-1] == f"LOCK TABLE {TABLE} IN ACCESS SHARE MODE"

    @pytest.mark.asyncio
    async def test_lock_table_requires_transaction(self, backup):
        await backup.connect()

        with pytest.raises(NoTransactionError):
            await backup.lock_table()

    @pytest.mark.asyncio
    async def test_lock_table_failure(self, backup, server):
        await backup.connect()
        await backup.tx_begin()
        server.inject_failure("execute")

        with pytest.raises(ProtocolError):
            await backup.lock_table()


class TestTempReplicationSlot:
    """Tests for create_temp_replication_slot()."""

    @pytest.mark.asyncio
    async def test_sets_consistent_point(self, backup, server):
        await backup.connect()
        await backup.tx_begin()

        slot = await backup.create_temp_replication_slot()

        assert server.statements[-1] == SLOT_QUERY
        assert backup.basebackup_lsn == LSN.parse("0/16B3748")
        assert slot.lsn == backup.basebackup_lsn
        assert slot.name == "tempslot_4242"
        assert slot.snapshot_name == server.snapshot_name
        assert slot.plugin == "pgoutput"

    @pytest.mark.asyncio
    async def test_custom_plugin(self, server, connector, bb_path):
        backup = TableBackup(
            TableIdentifier("public", "users"), bb_path, connector=connector, plugin="wal2json"
        )
        await backup.connect()
        await backup.tx_begin()
        slot = await backup.create_temp_replication_slot()

        assert "TEMPORARY LOGICAL wal2json USE_SNAPSHOT" in server.statements[-1]
        assert slot.plugin == "wal2json"

    @pytest.mark.asyncio
    async def test_requires_transaction(self, backup):
        await backup.connect()

        with pytest.raises(NoTransactionError):
            await backup.create_temp_replication_slot()

        assert backup.basebackup_lsn == ZERO_LSN

    @pytest.mark.asyncio
    async def test_null_consistent_point(self, backup, server):
        """A null consistent point leaves the stored LSN unset."""
        server.consistent_point = None
        await backup.connect()
        await backup.tx_begin()

        with pytest.raises(NullConsistentPointError):
            await backup.create_temp_replication_slot()

        assert backup.basebackup_lsn == ZERO_LSN

    @pytest.mark.asyncio
    async def test_malformed_consistent_point(self, backup, server):
        server.consistent_point = "not/an-lsn"
        await backup.connect()
        await backup.tx_begin()

        with pytest.raises(LSNParseError):
            await backup.create_temp_replication_slot()

        assert backup.basebackup_lsn == ZERO_LSN

    @pytest.mark.asyncio
    async def test_unexpected_row_shape(self, backup, server):
        server.slot_row = ("tempslot_4242", "0/16B3748")
        await backup.connect()
        await backup.tx_begin()

        with pytest.raises(ProtocolError):
            await backup.create_temp_replication_slot()

        assert backup.basebackup_lsn == ZERO_LSN

    @pytest.mark.asyncio
    async def test_request_failure(self, backup, server):
        await backup.connect()
        await backup.tx_begin()
        server.inject_failure("query_row")

        with pytest.raises(ProtocolError):
            await backup.create_temp_replication_slot()


class TestCopyDump:
    """Tests for copy_dump()."""

    @pytest.mark.asyncio
    async def test_writes_table_atomically(self, backup, bb_path, server):
        await _prepare(backup)

        stats = await backup.copy_dump()

        assert bb_path.read_bytes() == DATA
        assert not backup.temp_path.exists()
        assert stats.size_bytes == len(DATA)
        assert stats.checksum == f"sha256:{hashlib.sha256(DATA).hexdigest()}"
        assert server.statements[-1] == f"copy {TABLE} to stdout"

    def test_temp_path_suffix(self, backup, bb_path):
        assert backup.temp_path == bb_path.with_name("users.copy.new")

    @pytest.mark.asyncio
    async def test_replaces_previous_backup(self, backup, bb_path):
        bb_path.write_bytes(b"previous backup")
        await _prepare(backup)

        await backup.copy_dump()

        assert bb_path.read_bytes() == DATA

    @pytest.mark.asyncio
    async def test_stale_temp_file_is_removed(self, backup, bb_path):
        backup.temp_path.write_bytes(b"leftover from a crashed run" * 1000)
        await _prepare(backup)

        await backup.copy_dump()

        assert bb_path.read_bytes() == DATA
        assert not backup.temp_path.exists()

    @pytest.mark.asyncio
    async def test_requires_consistent_point(self, backup, bb_path, tmp_path):
        """Without a consistent point nothing is written, not even <path>.new."""
        await backup.connect()
        await backup.tx_begin()

        with pytest.raises(NoConsistentPointError):
            await backup.copy_dump()

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_requires_transaction(self, backup, tmp_path):
        await backup.connect()

        with pytest.raises(NoTransactionError):
            await backup.copy_dump()

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_stream_failure_rolls_back_and_cleans_up(self, backup, bb_path, server):
        """Mid-stream failure: rollback, no temp file, old backup untouched."""
        bb_path.write_bytes(b"old contents")
        server.copy_chunk_size = 4
        server.fail_copy_after = 10
        await _prepare(backup)

        with pytest.raises(CopyDumpError) as exc_info:
            await backup.copy_dump()

        assert exc_info.value.rollback_error is None
        assert "could not copy" in str(exc_info.value)
        assert server.statements[-1] == "ROLLBACK"
        assert backup.tx is None
        assert not backup.temp_path.exists()
        assert bb_path.read_bytes() == b"old contents"

    @pytest.mark.asyncio
    async def test_stream_failure_without_previous_backup(self, backup, bb_path, server):
        server.inject_failure("copy")
        await _prepare(backup)

        with pytest.raises(CopyDumpError):
            await backup.copy_dump()

        assert not bb_path.exists()
        assert not backup.temp_path.exists()

    @pytest.mark.asyncio
    async def test_stream_and_rollback_failure_are_combined(self, backup, bb_path, server):
        server.inject_failure("copy")
        server.inject_failure("rollback")
        await _prepare(backup)

        with pytest.raises(CopyDumpError) as exc_info:
            await backup.copy_dump()

        error = exc_info.value
        assert isinstance(error.rollback_error, ProtocolError)
        assert "injected copy failure" in str(error)
        assert "injected rollback failure" in str(error)
        assert not backup.temp_path.exists()
        assert not bb_path.exists()

    @pytest.mark.asyncio
    async def test_unknown_table(self, server, connector, bb_path):
        backup = TableBackup(TableIdentifier("public", "missing"), bb_path, connector=connector)
        await _prepare(backup)

        with pytest.raises(CopyDumpError):
            await backup.copy_dump()

        assert not backup.temp_path.exists()

    @pytest.mark.asyncio
    async def test_empty_table(self, server, connector, bb_path):
        server.tables['"public"."empty"'] = b""
        backup = TableBackup(TableIdentifier("public", "empty"), bb_path, connector=connector)
        await _prepare(backup)

        stats = await backup.copy_dump()

        assert bb_path.read_bytes() == b""
        assert stats.size_bytes == 0

    @pytest.mark.asyncio
    async def test_cancelled_stream_removes_temp_file(self, backup, bb_path, server):
        """Cancellation mid-stream leaves no <path>.new; the old backup survives."""
        bb_path.write_bytes(b"old contents")
        server.inject_failure("copy", asyncio.CancelledError())
        await _prepare(backup)

        with pytest.raises(asyncio.CancelledError):
            await backup.copy_dump()

        assert not backup.temp_path.exists()
        assert bb_path.read_bytes() == b"old contents"
        assert backup.tx is not None


class TestRotateOldDeltas:
    """Tests for TableBackup.rotate_old_deltas()."""

    def test_requires_consistent_point(self, backup, tmp_path):
        deltas = tmp_path / "deltas"
        deltas.mkdir()
        (deltas / "1").write_bytes(b"")

        with pytest.raises(NoConsistentPointError):
            backup.rotate_old_deltas(deltas, LSN(2))

        assert (deltas / "1").exists()

    @pytest.mark.asyncio
    async def test_uses_base_backup_lsn_as_threshold(self, backup, tmp_path):
        deltas = tmp_path / "deltas"
        deltas.mkdir()
        await _prepare(backup)
        threshold = backup.basebackup_lsn
        older = LSN(threshold.value - 1)
        newer = LSN(threshold.value + 1)
        for lsn in (older, threshold, newer):
            (deltas / lsn.hex).write_bytes(b"")

        removed = backup.rotate_old_deltas(deltas, newer)

        assert removed == [deltas / older.hex]
        assert {p.name for p in deltas.iterdir()} == {threshold.hex, newer.hex}


class TestRunBasebackup:
    """Tests for complete backup cycles."""

    @pytest.mark.asyncio
    async def test_full_cycle(self, backup, bb_path, server, connector):
        result = await backup.run_basebackup()

        assert result.lsn == LSN.parse("0/16B3748")
        assert result.table == "public.users"
        assert result.size_bytes == len(DATA)
        assert bb_path.read_bytes() == DATA
        assert not backup.temp_path.exists()
        assert backup.conn is None
        assert backup.tx is None
        assert backup.basebackup_lsn == result.lsn
        assert connector.sessions[0].is_closed
        assert server.statements == [
            "IDENTIFY_SYSTEM",
            "BEGIN ISOLATION LEVEL REPEATABLE READ READ ONLY",
            f"LOCK TABLE {TABLE} IN ACCESS SHARE MODE",
            SLOT_QUERY,
            f"copy {TABLE} to stdout",
            "COMMIT",
        ]

    @pytest.mark.asyncio
    async def test_full_cycle_writes_manifest(self, backup, bb_path):
        result = await backup.run_basebackup()

        manifest = read_manifest(bb_path)
        assert result.manifest_path is not None
        assert manifest is not None
        assert manifest.lsn == result.lsn
        assert manifest.table == "public.users"
        assert manifest.slot_name == "tempslot_4242"
        assert manifest.checksum == result.checksum
        assert manifest.size_bytes == len(DATA)

    @pytest.mark.asyncio
    async def test_manifest_can_be_disabled(self, server, connector, bb_path):
        backup = TableBackup(
            TableIdentifier("public", "users"), bb_path, connector=connector, write_manifest=False
        )

        result = await backup.run_basebackup()

        assert result.manifest_path is None
        assert read_manifest(bb_path) is None

    @pytest.mark.asyncio
    async def test_failed_step_rolls_back_and_disconnects(self, backup, bb_path, server, connector):
        server.inject_failure("execute")

        with pytest.raises(ProtocolError):
            await backup.run_basebackup()

        assert server.statements[-1] == "ROLLBACK"
        assert backup.conn is None
        assert backup.tx is None
        assert connector.sessions[0].is_closed
        assert not bb_path.exists()

    @pytest.mark.asyncio
    async def test_failed_copy_keeps_copy_error(self, backup, bb_path, server, connector):
        server.inject_failure("copy")

        with pytest.raises(CopyDumpError):
            await backup.run_basebackup()

        assert backup.conn is None
        assert connector.sessions[0].is_closed
        assert not bb_path.exists()

    @pytest.mark.asyncio
    async def test_failed_slot_in_next_cycle_does_not_reuse_position(self, backup, bb_path, server):
        """A new cycle never exports under the previous cycle's position."""
        await backup.run_basebackup()
        assert backup.basebackup_lsn == LSN.parse("0/16B3748")

        await backup.connect()
        await backup.tx_begin()
        assert backup.basebackup_lsn == ZERO_LSN

        server.inject_failure("query_row")
        with pytest.raises(ProtocolError):
            await backup.create_temp_replication_slot()
        with pytest.raises(NoConsistentPointError):
            await backup.copy_dump()

        assert bb_path.read_bytes() == DATA

    @pytest.mark.asyncio
    async def test_cancelled_copy_releases_session(self, backup, bb_path, server, connector):
        server.inject_failure("copy", asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await backup.run_basebackup()

        assert server.statements[-1] == "ROLLBACK"
        assert backup.conn is None
        assert connector.sessions[0].is_closed
        assert not backup.temp_path.exists()
        assert not bb_path.exists()

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self, backup, server):
        server.inject_failure("connect")

        with pytest.raises(BackupConnectionError):
            await backup.run_basebackup()

        assert backup.conn is None

    @pytest.mark.asyncio
    async def test_consecutive_cycles_use_new_sessions(self, backup, bb_path, server, connector):
        await backup.run_basebackup()
        server.consistent_point = "0/2000000"
        server.tables[TABLE] = DATA + b"5\teve\n"

        result = await backup.run_basebackup()

        assert len(connector.sessions) == 2
        assert result.slot.name == "tempslot_4243"
        assert backup.basebackup_lsn == LSN.parse("0/2000000")
        assert bb_path.read_bytes().endswith(b"5\teve\n")
