from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from firenoc.record_kinds import RecordKind
from firenoc.resolver import BUSINESS_ID_FIELD
from firenoc.status import normalize_status

ALL_STATUSES = "all"


@dataclass(frozen=True)
class RecordQuery:
    kind: str
    status: str | None = None
    search: str | None = None
    # BUSINESS_ID_FIELD refers to the top-level column; other names are subject fields
    search_fields: tuple[str, ...] = (BUSINESS_ID_FIELD,)

    def matches(self, record: dict[str, Any]) -> bool:
        if record.get("kind") != self.kind:
            return False
        if self.status is not None and record.get("status") != self.status:
            return False
        if self.search:
            needle = self.search.casefold()
            return any(needle in value.casefold() for value in self._search_values(record))
        return True

    def _search_values(self, record: dict[str, Any]) -> list[str]:
        fields = record.get("fields") or {}
        values: list[str] = []
        for name in self.search_fields:
            raw = record.get(name) if name == BUSINESS_ID_FIELD else fields.get(name)
            if raw is not None:
                values.append(str(raw))
        return values


def build_query(
    kind: RecordKind,
    *,
    status_filter: str | None = None,
    search_text: str | None = None,
) -> RecordQuery:
    status: str | None = None
    if status_filter is not None and status_filter.strip() and status_filter.strip().lower() != ALL_STATUSES:
        status = normalize_status(status_filter)
    search = search_text.strip() if search_text else None
    return RecordQuery(
        kind=kind.name,
        status=status,
        search=search or None,
        search_fields=(BUSINESS_ID_FIELD, *kind.search_fields),
    )
