"""Process-wide registry for the database connection factory."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None


def configure(*, get_conn: Callable[[], Any]) -> None:
    """Register the connection factory used by the Postgres billing repository."""

    global _get_conn

    _get_conn = get_conn


def is_configured() -> bool:
    return _get_conn is not None


def get_conn() -> Any:
    if _get_conn is None:
        raise RuntimeError("Database connection factory has not been configured")
    return _get_conn()
