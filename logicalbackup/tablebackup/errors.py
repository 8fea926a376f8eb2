"""
Exception hierarchy for table backups.

Every failure raised by TableBackup maps to one of four kinds so the
orchestration layer can decide what to do with it:

- StateError: an operation was called out of order (fatal for the cycle)
- ProtocolError / BackupConnectionError: the server rejected or garbled a
  request (usually transient)
- BackupFileError: a filesystem operation failed (usually transient)
- LSNParseError / DeltaFilenameError: a position could not be parsed
  (fatal for the cycle)

How to change safely:
    - Add new subclasses under an existing kind
    - Never move a class between kinds, callers branch on them
"""

from __future__ import annotations


class TableBackupError(Exception):
    """Base exception for table backup operations."""
    pass


class StateError(TableBackupError):
    """Operation called in a state that does not allow it."""
    pass


class NoConnectionError(StateError):
    """No replication session is open."""

    def __init__(self, message: str = "no open connections") -> None:
        super().__init__(message)


class NoTransactionError(StateError):
    """No transaction is running."""

    def __init__(self, message: str = "no running transaction") -> None:
        super().__init__(message)


class TransactionInProgressError(StateError):
    """A transaction is already open on this backup."""

    def __init__(self, message: str = "there is already a transaction in progress") -> None:
        super().__init__(message)


class NoConsistentPointError(StateError):
    """No consistent LSN has been established for this cycle."""

    def __init__(self, message: str = "no consistent point") -> None:
        super().__init__(message)


class BackupConnectionError(TableBackupError):
    """Opening or initializing the replication session failed."""
    pass


class ProtocolError(TableBackupError):
    """A request to the server failed or returned an unexpected result."""
    pass


class NullConsistentPointError(ProtocolError):
    """The slot was created without a consistent point."""

    def __init__(self, message: str = "null consistent point") -> None:
        super().__init__(message)


class LSNParseError(TableBackupError, ValueError):
    """Text could not be parsed as a log sequence number."""
    pass


class DeltaFilenameError(LSNParseError):
    """A delta directory entry does not follow the naming convention.

    Attributes:
        filename: The offending directory entry
    """

    def __init__(self, filename: str, message: str) -> None:
        super().__init__(message)
        self.filename = filename


class BackupFileError(TableBackupError):
    """A filesystem operation on backup or delta files failed."""
    pass


class CopyDumpError(BackupFileError):
    """Streaming the table failed, possibly followed by a failed rollback.

    Both failures are kept so neither signal is lost.

    Attributes:
        copy_error: The streaming failure
        rollback_error: The failure of the compensating rollback, if any
    """

    def __init__(
        self,
        copy_error: BaseException,
        rollback_error: BaseException | None = None,
    ) -> None:
        if rollback_error is None:
            message = f"could not copy: {copy_error}"
        else:
            message = f"could not copy and rollback tx: {rollback_error}, {copy_error}"
        super().__init__(message)
        self.copy_error = copy_error
        self.rollback_error = rollback_error
