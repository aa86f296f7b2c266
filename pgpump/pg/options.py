"""Connection and pool configuration."""

import os
from typing import Any, Callable, Dict, Optional, Tuple

import psycopg
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from .exceptions import PgConnectionError

# libpq reads the same variable for its blocking connect timeout.
CONNECT_TIMEOUT_ENVVAR = "PGCONNECT_TIMEOUT"

DEFAULT_POOL_SIZE = 4


def _default_connect_timeout() -> float:
    value = os.environ.get(CONNECT_TIMEOUT_ENVVAR, "")
    try:
        return max(float(value), 0.0)
    except ValueError:
        return 0.0


class ConnectionOptions(BaseModel):
    """Client-side options of a connection.

    Anything not listed here is treated as a libpq connection keyword.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    connect_timeout: float = Field(default_factory=_default_connect_timeout, ge=0)
    query_timeout: float = Field(default=0.0, ge=0)
    async_autoreconnect: Optional[bool] = None
    on_autoreconnect: Optional[Callable[..., Any]] = None
    on_connect: Optional[Callable[..., Any]] = None

    @field_validator("on_autoreconnect", "on_connect", mode="before")
    @classmethod
    def _check_callable(cls, v: Any) -> Any:
        if v is not None and not callable(v):
            raise ValueError("hook must be callable")
        return v

    @model_validator(mode="after")
    def _derive_autoreconnect(self) -> "ConnectionOptions":
        # Setting a hook turns autoreconnect on unless it was set explicitly.
        if self.async_autoreconnect is None:
            object.__setattr__(self, "async_autoreconnect", self.on_autoreconnect is not None)
        return self

    @property
    def connect_params(self) -> Dict[str, Any]:
        """Options the driver itself understands."""
        params: Dict[str, Any] = {}
        if self.connect_timeout:
            params["connect_timeout"] = max(int(self.connect_timeout), 1)
        return params


CLIENT_OPTION_NAMES = tuple(ConnectionOptions.model_fields)


def split_options(conninfo: str = "", **kwargs: Any) -> Tuple[str, ConnectionOptions]:
    """Separate client options from libpq keywords.

    Returns:
        The merged conninfo string and the validated client options.

    Raises:
        PgConnectionError: If the conninfo cannot be parsed.
    """
    client = {k: kwargs.pop(k) for k in CLIENT_OPTION_NAMES if k in kwargs}
    try:
        if "connect_timeout" not in client and conninfo:
            dsn_timeout = conninfo_to_dict(conninfo).get("connect_timeout")
            if dsn_timeout is not None:
                client["connect_timeout"] = float(dsn_timeout)
        options = ConnectionOptions(**client)
        merged = make_conninfo(conninfo, **{**options.connect_params, **kwargs})
    except (ValueError, TypeError, psycopg.Error) as e:
        raise PgConnectionError(f"Invalid connection options: {e}") from e
    return merged, options


class PoolOptions(BaseModel):
    """Options of a connection pool."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_size: int = Field(default=DEFAULT_POOL_SIZE, ge=1)
    lazy: bool = False
    disconnect_class: type = PgConnectionError

    @field_validator("disconnect_class")
    @classmethod
    def _check_error_class(cls, v: type) -> type:
        if not (isinstance(v, type) and issubclass(v, BaseException)):
            raise ValueError("disconnect_class must be an exception class")
        return v
