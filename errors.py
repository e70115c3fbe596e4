"""
Error taxonomy shared by the record store, the catalog and the playthrough engine.
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TRANSIENT_IO = "transient_io"
    WRITE_FAILURE = "write_failure"
    BUSY = "busy"
    INVALID = "invalid"
    DATA_ANOMALY = "data_anomaly"


class GameError(Exception):
    kind: ErrorKind = ErrorKind.INVALID


class NotFound(GameError):
    """A challenge or collection no longer exists."""
    kind = ErrorKind.NOT_FOUND


class TransientIO(GameError):
    """A read failed; the caller may retry."""
    kind = ErrorKind.TRANSIENT_IO


class WriteFailure(GameError):
    """A write did not reach the record store."""
    kind = ErrorKind.WRITE_FAILURE


class DataAnomaly(GameError):
    """Stored data breaks an expected uniqueness rule (e.g. duplicate attempts)."""
    kind = ErrorKind.DATA_ANOMALY
