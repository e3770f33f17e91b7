from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from firenoc.errors import IdentifierExhausted
from firenoc.record_kinds import IdScheme, RecordKind


class SequenceSource(Protocol):
    def next_sequence(self, name: str) -> int: ...


class CounterIdentifierGenerator:
    """``prefix + zero-padded counter``; the counter is reserved atomically by the store."""

    def __init__(
        self,
        *,
        sequences: SequenceSource,
        scheme: IdScheme,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sequences = sequences
        self._scheme = scheme
        self._clock = clock or (lambda: datetime.now(UTC))

    def _prefix(self) -> str:
        return self._scheme.prefix.replace("{year}", str(self._clock().year))

    def generate(self) -> str:
        prefix = self._prefix()
        value = self._sequences.next_sequence(f"business_id:{prefix}")
        if self._scheme.max_value is not None and value > self._scheme.max_value:
            raise IdentifierExhausted(prefix)
        return f"{prefix}{str(value).zfill(self._scheme.width)}"


class TimestampIdentifierGenerator:
    """``prefix + epochMillis + '-' + sequence``.

    The timestamp only makes ids readable; uniqueness comes from the atomic
    sequence.
    """

    def __init__(
        self,
        *,
        sequences: SequenceSource,
        scheme: IdScheme,
        millis: Callable[[], int] | None = None,
    ) -> None:
        self._sequences = sequences
        self._scheme = scheme
        self._millis = millis or (lambda: time.time_ns() // 1_000_000)

    def generate(self) -> str:
        value = self._sequences.next_sequence(f"business_id:{self._scheme.prefix}")
        if self._scheme.max_value is not None and value > self._scheme.max_value:
            raise IdentifierExhausted(self._scheme.prefix)
        return f"{self._scheme.prefix}{self._millis()}-{value}"


def create_identifier_generator(
    kind: RecordKind,
    *,
    sequences: SequenceSource,
) -> CounterIdentifierGenerator | TimestampIdentifierGenerator:
    if kind.id_scheme.style == "counter":
        return CounterIdentifierGenerator(sequences=sequences, scheme=kind.id_scheme)
    return TimestampIdentifierGenerator(sequences=sequences, scheme=kind.id_scheme)
