from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass

from firenoc.errors import ValidationError

PRIMARY_KEY_FIELD = "record_id"
BUSINESS_ID_FIELD = "business_id"

_PRIMARY_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")


@dataclass(frozen=True)
class ResolvedKey:
    field: str
    value: str

    @property
    def is_primary_key(self) -> bool:
        return self.field == PRIMARY_KEY_FIELD


def new_primary_key() -> str:
    # ObjectId-style: 8 hex chars of epoch seconds followed by 16 random hex chars.
    return f"{int(time.time()) & 0xFFFFFFFF:08x}{secrets.token_hex(8)}"


def looks_like_primary_key(value: str) -> bool:
    return bool(_PRIMARY_KEY_PATTERN.fullmatch(value))


def resolve(id_string: str) -> ResolvedKey:
    """Classify a caller-supplied id as a primary key or a business id.

    This is a syntax heuristic: anything of 24 hex characters is treated as
    a primary key. Business id prefixes always carry a non-hex character, so
    the two never overlap. Callers do exactly one lookup with the result and
    report not-found rather than retrying with the other field.
    """
    value = (id_string or "").strip()
    if not value:
        raise ValidationError("record id must not be empty", fields=["id"])
    if looks_like_primary_key(value):
        return ResolvedKey(field=PRIMARY_KEY_FIELD, value=value.lower())
    return ResolvedKey(field=BUSINESS_ID_FIELD, value=value)
