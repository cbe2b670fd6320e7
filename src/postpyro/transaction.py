"""
Explicit transactions and savepoints.

A :class:`Transaction` is opened by :meth:`postpyro.Connection.begin` and is
meant to be used as a context manager::

    with conn.begin() as txn:
        txn.execute("INSERT INTO t VALUES ($1)", [1])
        with txn.savepoint("sp1"):
            txn.execute("INSERT INTO t VALUES ($1)", [2])

The scope commits on normal exit and rolls back when an exception escapes.
"""

from __future__ import annotations

import enum
import re
from typing import TYPE_CHECKING, Any, Sequence

import structlog

from .errors import DatabaseError, ProgrammingError
from .row import Row

if TYPE_CHECKING:
    from .connection import Connection

logger = structlog.get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class IsolationLevel(enum.Enum):
    """PostgreSQL transaction isolation levels."""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"

    @classmethod
    def parse(cls, level: "IsolationLevel | str") -> "IsolationLevel":
        if isinstance(level, IsolationLevel):
            return level
        normalized = " ".join(str(level).replace("_", " ").upper().split())
        try:
            return cls(normalized)
        except ValueError:
            raise ProgrammingError(f"Unknown isolation level: {level}") from None


class TransactionState(enum.Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


def begin_clause(
    isolation_level: IsolationLevel | str | None = None,
    read_only: bool | None = None,
    deferrable: bool | None = None,
) -> str:
    clause = ["BEGIN"]
    if isolation_level is not None:
        clause.append(f"ISOLATION LEVEL {IsolationLevel.parse(isolation_level).value}")
    if read_only is not None:
        clause.append("READ ONLY" if read_only else "READ WRITE")
    if deferrable is not None:
        clause.append("DEFERRABLE" if deferrable else "NOT DEFERRABLE")
    return " ".join(clause)


def _check_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ProgrammingError(f"Invalid savepoint name: {name!r}")
    return name


class Transaction:
    """An open transaction on one connection.

    Savepoints form a stack. ``commit()`` and ``rollback()`` are only valid at
    depth 0: they are refused while a savepoint is on the stack or a savepoint
    scope (``with txn.savepoint(...)``) is still open. Leaving the
    ``with conn.begin()`` block ends the transaction at any depth.

    When an operation fails with no savepoint on the stack, the transaction
    is rolled back before the error propagates. With savepoints on the stack
    the server session is left in the failed state so the caller can
    ``rollback_to`` one of them.
    """

    def __init__(self, connection: "Connection") -> None:
        self._connection = connection
        self._state = TransactionState.ACTIVE
        self._savepoints: list[str] = []
        self._open_scopes = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def depth(self) -> int:
        return len(self._savepoints)

    @property
    def savepoints(self) -> tuple[str, ...]:
        return tuple(self._savepoints)

    def is_active(self) -> bool:
        return self._state is TransactionState.ACTIVE

    def _check_active(self) -> None:
        if self._state is not TransactionState.ACTIVE:
            raise ProgrammingError(f"Transaction is already {self._state.value}")

    def _finish(self, state: TransactionState) -> None:
        self._state = state
        self._savepoints.clear()
        self._connection._transaction_finished(self)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _run(self, fn, *args: Any, **kwargs: Any) -> Any:
        self._check_active()
        try:
            return fn(*args, **kwargs)
        except DatabaseError as e:
            self._on_failure(e)
            raise

    def _on_failure(self, error: DatabaseError) -> None:
        if self._connection.is_closed():
            # The server rolls back when the session ends.
            self._finish(TransactionState.ROLLED_BACK)
            return
        if self._savepoints:
            return
        logger.warning(
            "Rolling back transaction after error",
            sqlstate=error.sqlstate,
            error=str(error),
        )
        try:
            self._connection._run_command("ROLLBACK")
        except DatabaseError as e:
            logger.warning("Automatic rollback failed", error=str(e))
        self._finish(TransactionState.ROLLED_BACK)

    def execute(
        self, sql: str, params: Sequence[Any] | None = None, *, timeout: float | None = None
    ) -> int:
        return self._run(self._connection.execute, sql, params, timeout=timeout)

    def query(
        self, sql: str, params: Sequence[Any] | None = None, *, timeout: float | None = None
    ) -> list[Row]:
        return self._run(self._connection.query, sql, params, timeout=timeout)

    def query_one(
        self, sql: str, params: Sequence[Any] | None = None, *, timeout: float | None = None
    ) -> Row:
        return self._run(self._connection.query_one, sql, params, timeout=timeout)

    def execute_batch(
        self, statements: Sequence[str], *, timeout: float | None = None
    ) -> list[int]:
        return self._run(self._connection.execute_batch, statements, timeout=timeout)

    def set_isolation_level(self, level: IsolationLevel | str) -> None:
        """Must run before the first query of the transaction."""
        level = IsolationLevel.parse(level)
        self._run(
            self._connection._run_command,
            f"SET TRANSACTION ISOLATION LEVEL {level.value}",
        )

    def set_read_only(self, read_only: bool = True) -> None:
        mode = "READ ONLY" if read_only else "READ WRITE"
        self._run(self._connection._run_command, f"SET TRANSACTION {mode}")

    # ------------------------------------------------------------------
    # Savepoints
    # ------------------------------------------------------------------

    def savepoint(self, name: str) -> "Savepoint":
        """Create a savepoint and return a scope for it."""
        self._check_active()
        _check_identifier(name)
        self._run(self._connection._run_command, f"SAVEPOINT {name}")
        self._savepoints.append(name)
        logger.debug("Savepoint created", savepoint=name, depth=self.depth)
        return Savepoint(self, name)

    def _position(self, name: str) -> int:
        _check_identifier(name)
        for position in range(len(self._savepoints) - 1, -1, -1):
            if self._savepoints[position] == name:
                return position
        raise ProgrammingError(f"Savepoint {name!r} does not exist")

    def rollback_to(self, name: str) -> None:
        """Undo work done since *name* and pop it with every later savepoint."""
        self._check_active()
        position = self._position(name)
        self._run(self._connection._run_command, f"ROLLBACK TO SAVEPOINT {name}")
        del self._savepoints[position:]
        logger.debug("Rolled back to savepoint", savepoint=name, depth=self.depth)

    def release_savepoint(self, name: str) -> None:
        """Forget *name* and every savepoint created after it."""
        self._check_active()
        position = self._position(name)
        self._run(self._connection._run_command, f"RELEASE SAVEPOINT {name}")
        del self._savepoints[position:]
        logger.debug("Savepoint released", savepoint=name, depth=self.depth)

    def _unwind(self, name: str) -> None:
        position = self._position(name)
        self._run(self._connection._run_command, f"ROLLBACK TO SAVEPOINT {name}")
        self._run(self._connection._run_command, f"RELEASE SAVEPOINT {name}")
        del self._savepoints[position:]
        logger.debug("Savepoint scope unwound", savepoint=name, depth=self.depth)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _check_depth_zero(self, action: str) -> None:
        if self._open_scopes:
            raise ProgrammingError(f"Cannot {action} while a savepoint scope is open")
        if self._savepoints:
            raise ProgrammingError(
                f"Cannot {action} at savepoint depth {self.depth}; "
                "roll back to or release the savepoints first"
            )

    def commit(self) -> None:
        """Commit the transaction.

        A transaction whose session has failed cannot commit: it is rolled
        back and :class:`ProgrammingError` is raised.
        """
        self._check_active()
        self._check_depth_zero("commit")
        if self._connection._in_failed_transaction():
            self._connection._run_command("ROLLBACK")
            self._finish(TransactionState.ROLLED_BACK)
            raise ProgrammingError(
                "Transaction was aborted by an earlier error and has been rolled back",
                sqlstate="25P02",
            )
        try:
            self._connection._run_command("COMMIT")
        except DatabaseError:
            # A failed COMMIT ends the transaction on the server.
            self._finish(TransactionState.ROLLED_BACK)
            raise
        self._finish(TransactionState.COMMITTED)
        logger.debug("Transaction committed")

    def rollback(self) -> None:
        self._check_active()
        self._check_depth_zero("roll back")
        try:
            self._connection._run_command("ROLLBACK")
        finally:
            self._finish(TransactionState.ROLLED_BACK)
        logger.debug("Transaction rolled back")

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self.is_active():
            return
        if self._connection.is_closed():
            self._finish(TransactionState.ROLLED_BACK)
            return
        self._open_scopes = 0
        # COMMIT and ROLLBACK end every savepoint with the transaction.
        self._savepoints.clear()
        if exc_type is None:
            self.commit()
        else:
            try:
                self.rollback()
            except DatabaseError as e:
                logger.warning("Rollback on scope exit failed", error=str(e))


class Savepoint:
    """Scope of one savepoint.

    On normal exit the savepoint is released; when an exception escapes,
    the transaction is rolled back to it (and the savepoint released) before
    the exception propagates.
    """

    def __init__(self, transaction: Transaction, name: str) -> None:
        self.transaction = transaction
        self.name = name
        self._entered = False

    def _alive(self) -> bool:
        txn = self.transaction
        return txn.is_active() and self.name in txn.savepoints

    def release(self) -> None:
        self.transaction.release_savepoint(self.name)

    def rollback(self) -> None:
        self.transaction.rollback_to(self.name)

    def __enter__(self) -> "Savepoint":
        self._entered = True
        self.transaction._open_scopes += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        txn = self.transaction
        if self._entered:
            self._entered = False
            txn._open_scopes = max(0, txn._open_scopes - 1)
        if not self._alive():
            return
        if exc_type is None:
            self.release()
            return
        try:
            txn._unwind(self.name)
        except DatabaseError as e:
            logger.warning("Rollback to savepoint failed", savepoint=self.name, error=str(e))
