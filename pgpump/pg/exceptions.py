"""PostgreSQL exception hierarchy."""

from typing import Any, Optional

# SQLSTATE class / code prefixes mapped onto query error subclasses.
_INTEGRITY_CLASS = "23"
_DATA_CLASS = "22"
_QUERY_CANCELED = "57014"


class PgError(Exception):
    """Base exception for all PostgreSQL operations."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        detail: Optional[str] = None,
        connection: Any = None,
        result: Any = None,
    ):
        self.message = message
        self.code = code
        self.detail = detail
        self.connection = connection
        self.result = result
        super().__init__(message)


class PgConnectionError(PgError):
    """The connection is unusable until it is reset (socket, handshake, lost server)."""
    pass


class PgResetRequired(PgConnectionError):
    """A previous command on this connection expired; an explicit reset is required."""
    pass


class PgTimeout(PgConnectionError):
    """Query or connect deadline exceeded."""
    pass


class PgProtocolError(PgError):
    """The driver reported a malformed or missing response."""
    pass


class PgBusyError(PgError):
    """A command was issued while another one is still outstanding."""
    pass


class PgQueryError(PgError):
    """Server-reported SQL error; the connection stays usable."""

    @property
    def sqlstate(self) -> Optional[str]:
        return self.code


class PgCanceled(PgQueryError):
    """Query was canceled by client or server."""
    pass


class PgIntegrityError(PgQueryError):
    """Integrity constraint violation."""
    pass


class PgDataError(PgQueryError):
    """Invalid data for column type."""
    pass


def query_error_class(sqlstate: Optional[str]) -> type:
    """Pick the PgQueryError subclass for a SQLSTATE code."""
    if not sqlstate:
        return PgQueryError
    if sqlstate == _QUERY_CANCELED:
        return PgCanceled
    if sqlstate.startswith(_INTEGRITY_CLASS):
        return PgIntegrityError
    if sqlstate.startswith(_DATA_CLASS):
        return PgDataError
    return PgQueryError


def is_connection_failure(error: BaseException) -> bool:
    """
    Check whether ``error`` means the connection itself is gone.

    Timeouts and reset-required errors are excluded: they are never retried
    behind the caller's back.
    """
    if isinstance(error, (PgTimeout, PgResetRequired)):
        return False
    return isinstance(error, (PgConnectionError, PgProtocolError))
