from __future__ import annotations

import copy
import itertools
import json
import re
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from firenoc.db.postgres import PostgresTxRunner
from firenoc.errors import DuplicateKeyError, StoreUnavailableError
from firenoc.query import RecordQuery
from firenoc.resolver import BUSINESS_ID_FIELD, PRIMARY_KEY_FIELD, ResolvedKey

ALLOWED_SORT_KEYS = frozenset({"created_at", "last_updated", BUSINESS_ID_FIELD})
IMMUTABLE_FIELDS = frozenset({PRIMARY_KEY_FIELD, BUSINESS_ID_FIELD, "kind", "tenant_id", "created_at"})
DERIVED_FIELDS = frozenset({"display_class", "attachment_urls"})


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _validate_sort_key(sort_key: str) -> str:
    if sort_key not in ALLOWED_SORT_KEYS:
        raise ValueError(f"unsupported sort key: {sort_key}")
    return sort_key


def _validate_key_field(key: ResolvedKey) -> str:
    if key.field not in {PRIMARY_KEY_FIELD, BUSINESS_ID_FIELD}:
        raise ValueError(f"unsupported lookup field: {key.field}")
    return key.field


def _storable(record: dict[str, Any]) -> dict[str, Any]:
    item = copy.deepcopy(record)
    for name in DERIVED_FIELDS:
        item.pop(name, None)
    return item


def _checked_patch(patch: dict[str, Any]) -> dict[str, Any]:
    touched = IMMUTABLE_FIELDS.intersection(patch)
    if touched:
        raise ValueError(f"immutable fields cannot be patched: {sorted(touched)}")
    return _storable(patch)


def _load_doc(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    return json.loads(raw)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class InMemoryRecordsRepository:
    """Arena of records keyed by primary key with a unique business-id index."""

    def __init__(self, records: dict[str, dict[str, Any]], sequences: dict[str, int]) -> None:
        self._records = records
        self._sequences = sequences
        self._lock = threading.RLock()
        self._by_business_id: dict[str, str] = {}
        self._order: dict[str, int] = {}
        self._counter = itertools.count()
        for record_id, row in records.items():
            self._by_business_id[str(row[BUSINESS_ID_FIELD])] = record_id
            self._order[record_id] = next(self._counter)

    def next_sequence(self, name: str) -> int:
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = _storable(record)
        record_id = str(item[PRIMARY_KEY_FIELD])
        business_id = str(item[BUSINESS_ID_FIELD])
        with self._lock:
            if record_id in self._records:
                raise DuplicateKeyError(f"{PRIMARY_KEY_FIELD}={record_id}")
            if business_id in self._by_business_id:
                raise DuplicateKeyError(f"{BUSINESS_ID_FIELD}={business_id}")
            self._records[record_id] = item
            self._by_business_id[business_id] = record_id
            self._order[record_id] = next(self._counter)
        return copy.deepcopy(item)

    def _locate(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> str | None:
        field = _validate_key_field(key)
        record_id = key.value if field == PRIMARY_KEY_FIELD else self._by_business_id.get(key.value)
        if record_id is None:
            return None
        row = self._records.get(record_id)
        if row is None or row.get("tenant_id") != tenant_id or row.get("kind") != kind:
            return None
        return record_id

    def find(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> dict[str, Any] | None:
        with self._lock:
            record_id = self._locate(tenant_id=tenant_id, kind=kind, key=key)
            if record_id is None:
                return None
            return copy.deepcopy(self._records[record_id])

    def find_by_key(self, *, tenant_id: str, kind: str, record_id: str) -> dict[str, Any] | None:
        return self.find(tenant_id=tenant_id, kind=kind, key=ResolvedKey(PRIMARY_KEY_FIELD, record_id))

    def find_by_business_id(self, *, tenant_id: str, kind: str, business_id: str) -> dict[str, Any] | None:
        return self.find(tenant_id=tenant_id, kind=kind, key=ResolvedKey(BUSINESS_ID_FIELD, business_id))

    def find_many(
        self,
        *,
        tenant_id: str,
        query: RecordQuery,
        sort_key: str = "created_at",
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        _validate_sort_key(sort_key)
        with self._lock:
            rows = [
                (row, self._order[record_id])
                for record_id, row in self._records.items()
                if row.get("tenant_id") == tenant_id and query.matches(row)
            ]
            rows.sort(key=lambda x: (str(x[0].get(sort_key) or ""), x[1]), reverse=descending)
            return [copy.deepcopy(row) for row, _ in rows]

    def update(
        self,
        *,
        tenant_id: str,
        kind: str,
        key: ResolvedKey,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        changes = _checked_patch(patch)
        with self._lock:
            record_id = self._locate(tenant_id=tenant_id, kind=kind, key=key)
            if record_id is None:
                return None
            row = self._records[record_id]
            row.update(changes)
            return copy.deepcopy(row)

    def delete(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> dict[str, Any] | None:
        with self._lock:
            record_id = self._locate(tenant_id=tenant_id, kind=kind, key=key)
            if record_id is None:
                return None
            row = self._records.pop(record_id)
            self._by_business_id.pop(str(row[BUSINESS_ID_FIELD]), None)
            self._order.pop(record_id, None)
            return row

    def count(self, *, tenant_id: str, kind: str, status: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for row in self._records.values()
                if row.get("tenant_id") == tenant_id
                and row.get("kind") == kind
                and (status is None or row.get("status") == status)
            )


class SqliteRecordsRepository:
    """Single-node persistent repository on the standard library sqlite3 driver."""

    def __init__(self, db_path: str, *, timeout: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._initialize_database()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=self._timeout, isolation_level=None)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"sqlite unavailable: {exc}") from exc
        try:
            yield conn
        except sqlite3.IntegrityError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise DuplicateKeyError(str(exc)) from exc
        except sqlite3.OperationalError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailableError(f"sqlite unavailable: {exc}") from exc
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _initialize_database(self) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                  record_id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  business_id TEXT NOT NULL UNIQUE,
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  last_updated TEXT NOT NULL,
                  doc TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS records_tenant_kind_status ON records (tenant_id, kind, status)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS record_sequences (
                  name TEXT PRIMARY KEY,
                  value INTEGER NOT NULL
                )
                """
            )

    def next_sequence(self, name: str) -> int:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO record_sequences(name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
                """,
                (name,),
            )
            row = conn.execute("SELECT value FROM record_sequences WHERE name = ?", (name,)).fetchone()
            conn.execute("COMMIT")
        return int(row[0])

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = _storable(record)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO records (record_id, tenant_id, kind, business_id, status, created_at, last_updated, doc)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item[PRIMARY_KEY_FIELD],
                    item["tenant_id"],
                    item["kind"],
                    item[BUSINESS_ID_FIELD],
                    item["status"],
                    item["created_at"],
                    item["last_updated"],
                    json.dumps(item, ensure_ascii=True, sort_keys=True),
                ),
            )
        return item

    def find(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> dict[str, Any] | None:
        field = _validate_key_field(key)
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT doc FROM records WHERE tenant_id = ? AND kind = ? AND {field} = ? LIMIT 1",
                (tenant_id, kind, key.value),
            ).fetchone()
        return None if row is None else _load_doc(row[0])

    def find_by_key(self, *, tenant_id: str, kind: str, record_id: str) -> dict[str, Any] | None:
        return self.find(tenant_id=tenant_id, kind=kind, key=ResolvedKey(PRIMARY_KEY_FIELD, record_id))

    def find_by_business_id(self, *, tenant_id: str, kind: str, business_id: str) -> dict[str, Any] | None:
        return self.find(tenant_id=tenant_id, kind=kind, key=ResolvedKey(BUSINESS_ID_FIELD, business_id))

    def find_many(
        self,
        *,
        tenant_id: str,
        query: RecordQuery,
        sort_key: str = "created_at",
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        column = _validate_sort_key(sort_key)
        direction = "DESC" if descending else "ASC"
        sql = "SELECT doc FROM records WHERE tenant_id = ? AND kind = ?"
        params: list[Any] = [tenant_id, query.kind]
        if query.status is not None:
            sql += " AND status = ?"
            params.append(query.status)
        sql += f" ORDER BY {column} {direction}, rowid {direction}"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        # free-text search is applied after the fetch
        return [doc for doc in (_load_doc(row[0]) for row in rows) if query.matches(doc)]

    def update(
        self,
        *,
        tenant_id: str,
        kind: str,
        key: ResolvedKey,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        field = _validate_key_field(key)
        changes = _checked_patch(patch)
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT doc FROM records WHERE tenant_id = ? AND kind = ? AND {field} = ? LIMIT 1",
                (tenant_id, kind, key.value),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return None
            doc = _load_doc(row[0])
            doc.update(changes)
            conn.execute(
                "UPDATE records SET status = ?, last_updated = ?, doc = ? WHERE record_id = ?",
                (
                    doc["status"],
                    doc["last_updated"],
                    json.dumps(doc, ensure_ascii=True, sort_keys=True),
                    doc[PRIMARY_KEY_FIELD],
                ),
            )
            conn.execute("COMMIT")
        return doc

    def delete(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> dict[str, Any] | None:
        field = _validate_key_field(key)
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT doc FROM records WHERE tenant_id = ? AND kind = ? AND {field} = ? LIMIT 1",
                (tenant_id, kind, key.value),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return None
            doc = _load_doc(row[0])
            conn.execute("DELETE FROM records WHERE record_id = ?", (doc[PRIMARY_KEY_FIELD],))
            conn.execute("COMMIT")
        return doc

    def count(self, *, tenant_id: str, kind: str, status: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM records WHERE tenant_id = ? AND kind = ?"
        params: list[Any] = [tenant_id, kind]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        with self._connection() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row[0])

    def reset(self) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM records")
            conn.execute("DELETE FROM record_sequences")


class PostgresRecordsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "records",
        sequences_table: str = "record_sequences",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._sequences_table = _validate_identifier(sequences_table)

    def ensure_schema(self) -> None:
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                seq BIGSERIAL,
                record_id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                business_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL,
                doc JSONB NOT NULL
            )
            """,
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {self._table_name}_business_id_key
            ON {self._table_name} (business_id)
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {self._table_name}_tenant_kind_status
            ON {self._table_name} (tenant_id, kind, status)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._sequences_table} (
                name TEXT PRIMARY KEY,
                value BIGINT NOT NULL
            )
            """,
        ]

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for sql in statements:
                    cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def next_sequence(self, name: str) -> int:
        sql = f"""
            INSERT INTO {self._sequences_table} (name, value) VALUES (%s, 1)
            ON CONFLICT (name) DO UPDATE SET value = {self._sequences_table}.value + 1
            RETURNING value
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (name,))
                row = cur.fetchone()
            return int(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = _storable(record)
        sql = f"""
            INSERT INTO {self._table_name} (
                record_id, tenant_id, kind, business_id, status, created_at, last_updated, doc
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item[PRIMARY_KEY_FIELD],
                        item["tenant_id"],
                        item["kind"],
                        item[BUSINESS_ID_FIELD],
                        item["status"],
                        item["created_at"],
                        item["last_updated"],
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def find(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> dict[str, Any] | None:
        field = _validate_key_field(key)
        sql = f"""
            SELECT doc FROM {self._table_name}
            WHERE tenant_id = %s AND kind = %s AND {field} = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, kind, key.value))
                row = cur.fetchone()
            return None if row is None else _load_doc(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def find_by_key(self, *, tenant_id: str, kind: str, record_id: str) -> dict[str, Any] | None:
        return self.find(tenant_id=tenant_id, kind=kind, key=ResolvedKey(PRIMARY_KEY_FIELD, record_id))

    def find_by_business_id(self, *, tenant_id: str, kind: str, business_id: str) -> dict[str, Any] | None:
        return self.find(tenant_id=tenant_id, kind=kind, key=ResolvedKey(BUSINESS_ID_FIELD, business_id))

    def _where(self, *, tenant_id: str, query: RecordQuery) -> tuple[str, list[Any]]:
        clauses = ["tenant_id = %s", "kind = %s"]
        params: list[Any] = [tenant_id, query.kind]
        if query.status is not None:
            clauses.append("status = %s")
            params.append(query.status)
        if query.search:
            pattern = f"%{_escape_like(query.search)}%"
            ors: list[str] = []
            for name in query.search_fields:
                if name == BUSINESS_ID_FIELD:
                    ors.append("business_id ILIKE %s")
                else:
                    ors.append("doc->'fields'->>%s ILIKE %s")
                    params.append(name)
                params.append(pattern)
            clauses.append("(" + " OR ".join(ors) + ")")
        return " AND ".join(clauses), params

    def find_many(
        self,
        *,
        tenant_id: str,
        query: RecordQuery,
        sort_key: str = "created_at",
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        column = _validate_sort_key(sort_key)
        direction = "DESC" if descending else "ASC"
        where, params = self._where(tenant_id=tenant_id, query=query)
        sql = f"""
            SELECT doc FROM {self._table_name}
            WHERE {where}
            ORDER BY {column} {direction}, seq {direction}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [_load_doc(row[0]) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def update(
        self,
        *,
        tenant_id: str,
        kind: str,
        key: ResolvedKey,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        field = _validate_key_field(key)
        changes = _checked_patch(patch)
        sql = f"""
            UPDATE {self._table_name}
            SET doc = doc || %s::jsonb,
                status = COALESCE(%s, status),
                last_updated = COALESCE(%s, last_updated)
            WHERE tenant_id = %s AND kind = %s AND {field} = %s
            RETURNING doc
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        json.dumps(changes, ensure_ascii=True, sort_keys=True),
                        changes.get("status"),
                        changes.get("last_updated"),
                        tenant_id,
                        kind,
                        key.value,
                    ),
                )
                row = cur.fetchone()
            return None if row is None else _load_doc(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def delete(self, *, tenant_id: str, kind: str, key: ResolvedKey) -> dict[str, Any] | None:
        field = _validate_key_field(key)
        sql = f"""
            DELETE FROM {self._table_name}
            WHERE tenant_id = %s AND kind = %s AND {field} = %s
            RETURNING doc
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, kind, key.value))
                row = cur.fetchone()
            return None if row is None else _load_doc(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def count(self, *, tenant_id: str, kind: str, status: str | None = None) -> int:
        sql = f"SELECT COUNT(*) FROM {self._table_name} WHERE tenant_id = %s AND kind = %s"
        params: list[Any] = [tenant_id, kind]
        if status is not None:
            sql += " AND status = %s"
            params.append(status)

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            return int(row[0] or 0)

        return self._tx_runner.run_in_tx(fn=_op)
