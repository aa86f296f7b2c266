"""Core types for the PostgreSQL client."""

import codecs
from enum import Enum
from dataclasses import dataclass
from typing import Any, Iterator, Type, TypeVar, Optional, List, get_origin

from psycopg import pq


class TxIsolation(Enum):
    """Transaction isolation levels."""

    read_uncommitted = "READ UNCOMMITTED"
    read_committed = "READ COMMITTED"
    repeatable_read = "REPEATABLE READ"
    serializable = "SERIALIZABLE"


class ConnStatus(Enum):
    """Connection health as seen by callers.

    ``ABORTED`` is layered on top of the driver's status after a query
    timeout: the socket may still be open but the session is unusable until
    an explicit reset.
    """

    OK = "ok"
    BAD = "bad"
    ABORTED = "aborted"


class TransactionStatus(Enum):
    """Server-side transaction state, mirrored from the driver."""

    IDLE = "idle"
    ACTIVE = "active"
    INTRANS = "intrans"
    INERROR = "inerror"
    UNKNOWN = "unknown"

    @classmethod
    def from_driver(cls, status: int) -> "TransactionStatus":
        return _TX_STATUS.get(status, cls.UNKNOWN)

    @property
    def in_transaction(self) -> bool:
        """Whether a transaction block was open (or the state is unknown but active)."""
        return self in (TransactionStatus.INTRANS, TransactionStatus.INERROR, TransactionStatus.ACTIVE)


_TX_STATUS = {
    pq.TransactionStatus.IDLE: TransactionStatus.IDLE,
    pq.TransactionStatus.ACTIVE: TransactionStatus.ACTIVE,
    pq.TransactionStatus.INTRANS: TransactionStatus.INTRANS,
    pq.TransactionStatus.INERROR: TransactionStatus.INERROR,
    pq.TransactionStatus.UNKNOWN: TransactionStatus.UNKNOWN,
}


class CommandKind(Enum):
    """Commands that go through the shared send/pump/retry routine."""

    QUERY = "query"
    PREPARE = "prepare"
    QUERY_PREPARED = "query_prepared"
    DESCRIBE_PREPARED = "describe_prepared"
    DESCRIBE_PORTAL = "describe_portal"


@dataclass(frozen=True)
class Notification:
    """An asynchronous LISTEN/NOTIFY message."""

    channel: str
    payload: str
    pid: int


# Server encoding names that codecs.lookup() cannot resolve by itself.
_PG_ENCODINGS = {
    "UTF8": "utf-8",
    "SQL_ASCII": "ascii",
    "LATIN1": "latin-1",
    "WIN1252": "cp1252",
    "EUC_JP": "euc_jp",
    "SJIS": "shift_jis",
}


def py_encoding(pg_encoding: Optional[bytes]) -> str:
    """Map a server ``client_encoding`` value to a Python codec name."""
    if not pg_encoding:
        return "utf-8"
    name = pg_encoding.decode("ascii", "replace").upper()
    if name in _PG_ENCODINGS:
        return _PG_ENCODINGS[name]
    try:
        return codecs.lookup(name.lower()).name
    except LookupError:
        return "utf-8"


class Row(dict):
    """Mapping-like row result.

    Supports both dict-like access and attribute access.
    """

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"Column '{name}' not found") from None

    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = value


T = TypeVar("T")


class QueryResult:
    """Result of one command.

    Wraps a driver result; values are decoded to text with the connection's
    encoding, rows are decoded lazily on first access.
    """

    def __init__(
        self,
        pgresult: Any = None,
        encoding: str = "utf-8",
        rows: List[Row] | None = None,
    ):
        """Initialize result.

        Args:
            pgresult: Driver result object
            encoding: Codec used to decode names and values
            rows: Pre-loaded list of rows
        """
        self.pgresult = pgresult
        self.encoding = encoding
        self._rows = rows

    def __repr__(self) -> str:
        return f"<QueryResult {self.command_status or self.status!s} rows={self.ntuples}>"

    @property
    def status(self) -> Optional[int]:
        """Driver execution status (``psycopg.pq.ExecStatus``)."""
        return self.pgresult.status if self.pgresult is not None else None

    @property
    def command_status(self) -> Optional[str]:
        """Command tag, e.g. ``SELECT 3`` or ``BEGIN``."""
        if self.pgresult is None:
            return None
        tag = self.pgresult.command_status
        return tag.decode(self.encoding) if tag else None

    @property
    def rowcount(self) -> Optional[int]:
        """Rows affected, as reported by the command tag."""
        if self.pgresult is None:
            return None
        return self.pgresult.command_tuples

    @property
    def ntuples(self) -> int:
        if self._rows is not None:
            return len(self._rows)
        return self.pgresult.ntuples if self.pgresult is not None else 0

    @property
    def fields(self) -> List[str]:
        """Column names."""
        if self.pgresult is None:
            return list(self._rows[0].keys()) if self._rows else []
        names = []
        for col_idx in range(self.pgresult.nfields):
            name = self.pgresult.fname(col_idx)
            names.append(name.decode(self.encoding) if name else f"col_{col_idx}")
        return names

    def all(self) -> List[Row]:
        """Get all rows as a list."""
        if self._rows is not None:
            return self._rows

        if self.pgresult is None:
            return []

        res = self.pgresult
        col_names = self.fields
        rows = []
        for row_idx in range(res.ntuples):
            row = Row()
            for col_idx, col_name in enumerate(col_names):
                value = res.get_value(row_idx, col_idx)
                row[col_name] = value.decode(self.encoding) if value is not None else None
            rows.append(row)

        self._rows = rows
        return rows

    def __iter__(self) -> Iterator[Row]:
        return iter(self.all())

    def __len__(self) -> int:
        return self.ntuples

    def one(self) -> Row:
        """Get exactly one row.

        Raises:
            PgError: If result has 0 or more than 1 row.
        """
        from .exceptions import PgError

        rows = self.all()
        if len(rows) == 0:
            raise PgError("Expected exactly 1 row, got 0")
        elif len(rows) > 1:
            raise PgError(f"Expected exactly 1 row, got {len(rows)}")
        return rows[0]

    def first(self) -> Row | None:
        """Get first row or None."""
        rows = self.all()
        return rows[0] if rows else None

    def scalar(self) -> Any:
        """Get first column of first row.

        Raises:
            PgError: If result is empty.
        """
        from .exceptions import PgError

        row = self.first()
        if not row:
            raise PgError("Result is empty")
        for value in row.values():
            return value
        raise PgError("Result is empty")

    def model(self, model_type: Type[T]) -> List[T]:
        """Convert rows to pydantic models.

        Args:
            model_type: Pydantic BaseModel class.
        """
        return [model_type.model_validate(dict(row)) for row in self.all()]

    def into(self, target_type: Type[T]) -> T:
        """Convert rows into a list of dicts or tuple of tuples."""
        rows = self.all()
        if target_type is tuple or get_origin(target_type) is tuple:
            return tuple(tuple(row.values()) for row in rows)  # type: ignore
        return rows  # type: ignore

    def clear(self) -> None:
        """Release the driver result; decoded rows stay available."""
        if self.pgresult is not None:
            self.all()
            self.pgresult.clear()
            self.pgresult = None
