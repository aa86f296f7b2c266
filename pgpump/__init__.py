"""
pgpump - Non-blocking PostgreSQL for asyncio

An event-driven PostgreSQL client built on psycopg's libpq wrapper.

Features:
- Results pumped off the socket on readiness, never blocking the loop
- Single-row streaming with consumer-driven flow control
- Query and connect timeouts
- Transparent, transaction-aware reconnect
- Task-keyed connection pool with FIFO waiting
- LISTEN/NOTIFY
"""

from .core import Future, when_all, Reactor
from .pg import (
    PgConnection,
    PgPool,
    RowStream,
    QueryResult,
    Row,
    TxIsolation,
    ConnStatus,
    TransactionStatus,
    Notification,
    PgError,
    PgConnectionError,
    PgResetRequired,
    PgTimeout,
    PgQueryError,
)

__version__ = "0.1.0"

__all__ = [
    "Future",
    "when_all",
    "Reactor",
    "PgConnection",
    "PgPool",
    "RowStream",
    "QueryResult",
    "Row",
    "TxIsolation",
    "ConnStatus",
    "TransactionStatus",
    "Notification",
    "PgError",
    "PgConnectionError",
    "PgResetRequired",
    "PgTimeout",
    "PgQueryError",
]
