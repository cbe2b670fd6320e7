"""
Exception hierarchy for postpyro.

Follows the PEP 249 Database API Specification v2.0 exception names, with
``DatabaseError`` as the common base of every error kind raised by the
driver. Server-reported errors are classified by SQLSTATE through
:func:`map_error`.
"""

from __future__ import annotations

from typing import Any, Mapping


class Error(Exception):
    """Base exception for all database errors."""

    pass


class Warning(Exception):
    """Exception raised for important warnings.

    Such as data truncations while inserting, etc.
    """

    pass


class DatabaseError(Error):
    """Exception raised for errors related to the database.

    Base class of every error kind. Errors that originate from an
    ErrorResponse carry the SQLSTATE and the remaining diagnostic fields;
    ``str(error)`` is the server message verbatim.
    """

    def __init__(
        self,
        message: str = "",
        *,
        sqlstate: str | None = None,
        fields: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.fields: dict[str, str] = dict(fields or {})
        self.sqlstate = sqlstate or self.fields.get("code")

    @property
    def severity(self) -> str | None:
        return self.fields.get("severity")

    @property
    def detail(self) -> str | None:
        return self.fields.get("detail")

    @property
    def hint(self) -> str | None:
        return self.fields.get("hint")

    @property
    def position(self) -> str | None:
        return self.fields.get("position")

    @property
    def schema_name(self) -> str | None:
        return self.fields.get("schema")

    @property
    def table_name(self) -> str | None:
        return self.fields.get("table")

    @property
    def column_name(self) -> str | None:
        return self.fields.get("column")

    @property
    def constraint_name(self) -> str | None:
        return self.fields.get("constraint")


class InterfaceError(DatabaseError):
    """Exception raised for errors related to the database interface.

    Raised for client-side and protocol-level problems: a desynchronized
    session, a malformed frame, or reuse of a closed connection.
    """

    pass


class DataError(DatabaseError):
    """Exception raised for errors due to problems with the processed data.

    Examples include division by zero, numeric value out of range, a value
    that cannot be encoded or decoded, etc.
    """

    pass


class OperationalError(DatabaseError):
    """Exception raised for errors related to the database's operation.

    Raised for errors that are not necessarily under the control of the
    programmer, e.g. an unexpected disconnect occurs, authentication is
    rejected, a deadline expires, etc.
    """

    pass


class IntegrityError(DatabaseError):
    """Exception raised when the relational integrity of the database is affected.

    Examples include foreign key check failure, duplicate key, etc.
    """

    pass


class InternalError(DatabaseError):
    """Exception raised when the database encounters an internal error."""

    pass


class ProgrammingError(DatabaseError):
    """Exception raised for programming errors.

    Examples include table not found, syntax error in SQL statement,
    wrong number of parameters specified, a query_one() that did not
    produce exactly one row, or an invalid transaction-state operation.
    """

    pass


class NotSupportedError(DatabaseError):
    """Exception raised when a method or database API is not supported.

    Raised for unmapped type OIDs and protocol features the driver does
    not implement.
    """

    pass


# Driver-specific exceptions


class ConnectionClosedError(InterfaceError):
    """Exception raised when an operation is attempted on a closed connection."""

    def __init__(self, message: str = "Connection is closed") -> None:
        super().__init__(message)


class ProtocolError(InterfaceError):
    """Exception raised when the backend sends something the protocol forbids."""

    pass


class ConfigurationError(InterfaceError):
    """Exception raised for invalid connection options."""

    pass


class ConnectionLostError(OperationalError):
    """Exception raised when the underlying byte stream fails."""

    pass


class AuthenticationError(OperationalError):
    """Exception raised when the server rejects the startup or authentication."""

    pass


class QueryTimeoutError(OperationalError):
    """Exception raised when an operation exceeds its deadline."""

    pass


class TypeConversionError(DataError):
    """Exception raised when a value cannot be encoded or decoded."""

    pass


# ---------------------------------------------------------------------------
# SQLSTATE mapping
# ---------------------------------------------------------------------------

# Keyed by the two-character SQLSTATE class.
SQLSTATE_CLASS_MAP: dict[str, type[DatabaseError]] = {
    "08": OperationalError,  # connection exception
    "0A": NotSupportedError,  # feature not supported
    "22": DataError,  # data exception
    "23": IntegrityError,  # integrity constraint violation
    "25": ProgrammingError,  # invalid transaction state
    "26": ProgrammingError,  # invalid SQL statement name
    "28": OperationalError,  # invalid authorization specification
    "2B": ProgrammingError,  # dependent privilege descriptors still exist
    "2D": ProgrammingError,  # invalid transaction termination
    "2F": ProgrammingError,  # SQL routine exception
    "34": ProgrammingError,  # invalid cursor name
    "3D": ProgrammingError,  # invalid catalog name
    "3F": ProgrammingError,  # invalid schema name
    "40": OperationalError,  # transaction rollback (serialization, deadlock)
    "42": ProgrammingError,  # syntax error or access rule violation
    "44": ProgrammingError,  # WITH CHECK OPTION violation
    "53": OperationalError,  # insufficient resources
    "54": OperationalError,  # program limit exceeded
    "55": OperationalError,  # object not in prerequisite state
    "57": OperationalError,  # operator intervention
    "58": InternalError,  # system error
    "XX": InternalError,  # internal error
}

# Full codes that do not follow their class.
SQLSTATE_CODE_MAP: dict[str, type[DatabaseError]] = {
    "57014": OperationalError,  # query_canceled
    "0A000": NotSupportedError,
}


def error_class_for(sqlstate: str | None) -> type[DatabaseError]:
    """Return the exception class for a SQLSTATE, falling back to DatabaseError."""
    if not sqlstate:
        return DatabaseError
    sqlstate = sqlstate.upper()
    cls = SQLSTATE_CODE_MAP.get(sqlstate)
    if cls is not None:
        return cls
    return SQLSTATE_CLASS_MAP.get(sqlstate[:2], DatabaseError)


def map_error(
    sqlstate: str | None,
    message: str,
    fields: Mapping[str, Any] | None = None,
) -> DatabaseError:
    """Build the error instance for a server-reported failure.

    Args:
        sqlstate: Five-character SQLSTATE, or None if the server sent none.
        message: Primary message text, kept verbatim.
        fields: The remaining ErrorResponse fields by name.

    Returns:
        An instance of the mapped DatabaseError subclass.
    """
    cls = error_class_for(sqlstate)
    return cls(message, sqlstate=sqlstate, fields=fields)


def error_from_fields(fields: Mapping[str, str]) -> DatabaseError:
    """Map a parsed ErrorResponse field dict."""
    return map_error(fields.get("code"), fields.get("message", "Query error"), fields)
