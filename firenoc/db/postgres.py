from __future__ import annotations

from collections.abc import Callable
from typing import Any

from firenoc.errors import DuplicateKeyError, StoreUnavailableError

UNIQUE_VIOLATION = "23505"


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction."""

    def __init__(self, dsn: str, *, connect_timeout: int = 5) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect_timeout = connect_timeout

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn, connect_timeout=self._connect_timeout) as conn:
                result = fn(conn)
                conn.commit()
                return result
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"postgres unavailable: {exc}") from exc
        except psycopg.Error as exc:
            if getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION:
                diag = getattr(exc, "diag", None)
                raise DuplicateKeyError(str(getattr(diag, "constraint_name", "") or "record")) from exc
            raise
