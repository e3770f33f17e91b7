from firenoc.repositories.records import (
    InMemoryRecordsRepository,
    PostgresRecordsRepository,
    SqliteRecordsRepository,
)

__all__ = [
    "InMemoryRecordsRepository",
    "PostgresRecordsRepository",
    "SqliteRecordsRepository",
]
