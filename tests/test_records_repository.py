from __future__ import annotations

import json
import threading

import pytest

from firenoc.errors import DuplicateKeyError
from firenoc.query import build_query
from firenoc.record_kinds import APPLICATION
from firenoc.repositories import (
    InMemoryRecordsRepository,
    PostgresRecordsRepository,
    SqliteRecordsRepository,
)
from firenoc.resolver import BUSINESS_ID_FIELD, PRIMARY_KEY_FIELD, ResolvedKey


def _record(n: int, *, tenant_id: str = "tenant_a", status: str = "Submitted", name: str = "Lakeview Plaza") -> dict:
    return {
        "record_id": f"65a1b2c3d4e5f60718293a{n:02x}",
        "business_id": f"NOC2026{n:03d}",
        "kind": "application",
        "tenant_id": tenant_id,
        "fields": {"propertyName": name, "applicantName": "Asha Rao", "floors": 3},
        "attachments": {"buildingPlan": None, "propertyDoc": None, "idProof": None},
        "status": status,
        "remarks": "",
        "reviewed_by": "",
        "reviewed_at": None,
        "created_at": f"2026-01-01T00:00:{n:02d}+00:00",
        "last_updated": f"2026-01-01T00:00:{n:02d}+00:00",
    }


def _by_business_id(value: str) -> ResolvedKey:
    return ResolvedKey(BUSINESS_ID_FIELD, value)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordsRepository({}, {})
    return SqliteRecordsRepository(str(tmp_path / "records.sqlite3"))


def test_insert_and_lookup_by_either_key(repo):
    stored = repo.insert(record={**_record(1), "display_class": "info"})
    assert "display_class" not in stored

    by_pk = repo.find_by_key(tenant_id="tenant_a", kind="application", record_id=stored[PRIMARY_KEY_FIELD])
    by_bid = repo.find_by_business_id(tenant_id="tenant_a", kind="application", business_id="NOC2026001")
    assert by_pk == by_bid
    assert by_pk["fields"]["floors"] == 3


def test_insert_rejects_duplicate_business_id(repo):
    repo.insert(record=_record(1))
    duplicate = _record(2)
    duplicate["business_id"] = "NOC2026001"
    with pytest.raises(DuplicateKeyError):
        repo.insert(record=duplicate)
    assert repo.count(tenant_id="tenant_a", kind="application") == 1


def test_lookups_are_tenant_and_kind_scoped(repo):
    repo.insert(record=_record(1))
    assert repo.find(tenant_id="tenant_b", kind="application", key=_by_business_id("NOC2026001")) is None
    assert repo.find(tenant_id="tenant_a", kind="safety_review", key=_by_business_id("NOC2026001")) is None
    assert repo.update(tenant_id="tenant_b", kind="application", key=_by_business_id("NOC2026001"), patch={}) is None
    assert repo.delete(tenant_id="tenant_b", kind="application", key=_by_business_id("NOC2026001")) is None


def test_update_and_delete_return_none_when_nothing_matches(repo):
    assert repo.update(
        tenant_id="tenant_a",
        kind="application",
        key=_by_business_id("NOC2026999"),
        patch={"status": "Approved"},
    ) is None
    assert repo.delete(tenant_id="tenant_a", kind="application", key=_by_business_id("NOC2026999")) is None


def test_update_applies_patch(repo):
    repo.insert(record=_record(1))
    updated = repo.update(
        tenant_id="tenant_a",
        kind="application",
        key=_by_business_id("NOC2026001"),
        patch={"status": "Approved", "remarks": "ok", "last_updated": "2026-02-01T00:00:00+00:00"},
    )
    assert updated["status"] == "Approved"
    assert updated["remarks"] == "ok"
    assert repo.count(tenant_id="tenant_a", kind="application", status="Approved") == 1


def test_update_refuses_identity_fields(repo):
    repo.insert(record=_record(1))
    with pytest.raises(ValueError, match="immutable"):
        repo.update(
            tenant_id="tenant_a",
            kind="application",
            key=_by_business_id("NOC2026001"),
            patch={"business_id": "NOC2026777"},
        )


def test_find_many_sorts_newest_first_and_filters(repo):
    repo.insert(record=_record(1, name="Alpha House"))
    repo.insert(record=_record(2, status="Rejected", name="Beta Towers"))
    repo.insert(record=_record(3, name="Gamma Court"))
    repo.insert(record=_record(4, tenant_id="tenant_b"))

    everything = repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION))
    assert [x["business_id"] for x in everything] == ["NOC2026003", "NOC2026002", "NOC2026001"]

    oldest_first = repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION), descending=False)
    assert [x["business_id"] for x in oldest_first] == ["NOC2026001", "NOC2026002", "NOC2026003"]

    rejected = repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION, status_filter="rejected"))
    assert [x["business_id"] for x in rejected] == ["NOC2026002"]

    searched = repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION, search_text="gamma"))
    assert [x["business_id"] for x in searched] == ["NOC2026003"]


def test_find_many_breaks_ties_by_insertion_order(repo):
    first = _record(1)
    second = _record(2)
    second["created_at"] = first["created_at"]
    repo.insert(record=first)
    repo.insert(record=second)
    listed = repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION))
    assert [x["business_id"] for x in listed] == ["NOC2026002", "NOC2026001"]


def test_find_many_rejects_unknown_sort_key(repo):
    with pytest.raises(ValueError, match="sort key"):
        repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION), sort_key="fields")


def test_delete_removes_record_and_frees_nothing_for_reuse(repo):
    repo.insert(record=_record(1))
    deleted = repo.delete(tenant_id="tenant_a", kind="application", key=_by_business_id("NOC2026001"))
    assert deleted["business_id"] == "NOC2026001"
    assert repo.find_by_business_id(tenant_id="tenant_a", kind="application", business_id="NOC2026001") is None
    assert repo.next_sequence("business_id:NOC2026") == 1
    assert repo.next_sequence("business_id:NOC2026") == 2


def test_next_sequence_is_atomic_across_threads(repo):
    seen: list[int] = []
    lock = threading.Lock()

    def _worker() -> None:
        for _ in range(10):
            value = repo.next_sequence("business_id:SR-")
            with lock:
                seen.append(value)

    threads = [threading.Thread(target=_worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(seen) == list(range(1, 51))


def test_sqlite_repository_persists_across_instances(tmp_path):
    path = str(tmp_path / "persist.sqlite3")
    SqliteRecordsRepository(path).insert(record=_record(1))
    reopened = SqliteRecordsRepository(path)
    assert reopened.find_by_business_id(tenant_id="tenant_a", kind="application", business_id="NOC2026001") is not None


def test_postgres_records_repository_rejects_invalid_table_names():
    class DummyRunner:
        def run_in_tx(self, *, fn):
            return fn(None)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresRecordsRepository(tx_runner=DummyRunner(), table_name="records;drop table records")


def test_postgres_records_repository_statements():
    statements: list[tuple[str, tuple | None]] = []
    doc_rows: list[tuple] = []
    sequence_values = iter([7])

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((query, params))
            lower = query.strip().lower()
            self._one = None
            self._many = []
            if lower.startswith("insert into record_sequences"):
                self._one = (next(sequence_values),)
            elif lower.startswith("select doc") or "returning doc" in lower:
                self._one = doc_rows[0] if doc_rows else None
                self._many = list(doc_rows)
            elif lower.startswith("select count"):
                self._one = (len(doc_rows),)

        def fetchone(self):
            return self._one

        def fetchall(self):
            return self._many

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def __init__(self):
            self.calls = 0

        def run_in_tx(self, *, fn):
            self.calls += 1
            return fn(FakeConnection())

    runner = FakeRunner()
    repo = PostgresRecordsRepository(tx_runner=runner)

    repo.ensure_schema()
    assert any("CREATE UNIQUE INDEX IF NOT EXISTS records_business_id_key" in x[0] for x in statements)

    assert repo.next_sequence("business_id:NOC2026") == 7
    assert "ON CONFLICT (name) DO UPDATE" in statements[-1][0]

    stored = repo.insert(record=_record(1))
    insert_sql, insert_params = statements[-1]
    assert "INSERT INTO records" in insert_sql
    assert insert_params[3] == "NOC2026001"
    assert json.loads(insert_params[-1])["fields"]["propertyName"] == "Lakeview Plaza"

    doc_rows.append((stored,))
    found = repo.find(tenant_id="tenant_a", kind="application", key=_by_business_id("NOC2026001"))
    assert found == stored
    assert "business_id = %s" in statements[-1][0]
    assert statements[-1][1] == ("tenant_a", "application", "NOC2026001")

    repo.find_many(tenant_id="tenant_a", query=build_query(APPLICATION, status_filter="all", search_text="50%_off"))
    list_sql, list_params = statements[-1]
    assert "ILIKE" in list_sql
    assert "ORDER BY created_at DESC, seq DESC" in list_sql
    assert "%50\\%\\_off%" in list_params

    updated = repo.update(
        tenant_id="tenant_a",
        kind="application",
        key=_by_business_id("NOC2026001"),
        patch={"status": "Approved", "last_updated": "2026-02-01T00:00:00+00:00"},
    )
    assert updated == stored
    assert "doc || %s::jsonb" in statements[-1][0]

    assert repo.count(tenant_id="tenant_a", kind="application", status="Approved") == 1
    assert "status = %s" in statements[-1][0]

    doc_rows.clear()
    assert repo.delete(tenant_id="tenant_a", kind="application", key=_by_business_id("NOC2026001")) is None
    assert "DELETE FROM records" in statements[-1][0]
