"""Error types shared by the Minerva modules."""

from __future__ import annotations

from enum import Enum

UNIQUE_VIOLATION_SQLSTATE = "23505"


class DatabaseErrorKind(Enum):
    """Coarse classification of database failures."""

    DEFAULT = "default"
    UNIQUE_VIOLATION = "unique_violation"


def map_error_kind(sql_state: str | None) -> DatabaseErrorKind:
    """Map a PostgreSQL SQLSTATE code to a :class:`DatabaseErrorKind`."""
    if sql_state == UNIQUE_VIOLATION_SQLSTATE:
        return DatabaseErrorKind.UNIQUE_VIOLATION
    return DatabaseErrorKind.DEFAULT


class MinervaError(Exception):
    """Base class of all errors raised by this package."""

    description = "Minerva error"

    def __init__(self, msg: str) -> None:
        super().__init__(msg)
        self.msg = msg

    def __str__(self) -> str:
        return self.msg


class DatabaseError(MinervaError):
    """A failure reported by, or while talking to, the database."""

    description = "Database error"

    def __init__(self, msg: str, kind: DatabaseErrorKind = DatabaseErrorKind.DEFAULT) -> None:
        super().__init__(msg)
        self.kind = kind


class ConfigurationError(MinervaError):
    """A problem with definitions or configuration supplied by the user."""

    description = "Configuration error"


class MinervaRuntimeError(MinervaError):
    """Any other failure while carrying out an operation."""

    description = "Runtime error"