"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Set, Tuple

import pytest

from contactdedup.logger import StructuredLogger, get_logger

# Keep module-level loggers from writing into ./logs during test runs
get_logger(enable_console=False, enable_file=False)

from contactdedup.database import Contact, init_database, get_session  # noqa: E402
from contactdedup.jid import IdentityResolver  # noqa: E402
from contactdedup.mapping import DictMapping  # noqa: E402

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0)


def make_contact(id: int, number: str, minutes: int = 0, name: str = None) -> Contact:
    """Build a detached contact created ``minutes`` after BASE_TIME."""
    created = BASE_TIME + timedelta(minutes=minutes)
    return Contact(
        id=id,
        name=name or f"user {id}",
        number=number,
        created_at=created,
        updated_at=created,
    )


class MemoryContactStore:
    """In-memory ContactStore with per-record failure injection."""

    def __init__(self, records: Iterable[Contact] = ()):
        self.records: Dict[int, Contact] = {r.id: r for r in records}
        self.fail_on: Set[Tuple[str, int]] = set()
        self.fail_list = False
        self.calls: List[Tuple[str, int]] = []

    def list_all(self) -> List[Contact]:
        if self.fail_list:
            raise ConnectionError("storage unreachable")
        return sorted(self.records.values(), key=lambda r: (r.created_at, r.id))

    def update(self, record: Contact) -> None:
        self.calls.append(("update", record.id))
        if ("update", record.id) in self.fail_on:
            raise RuntimeError(f"update failed for {record.id}")
        self.records[record.id] = record

    def delete(self, record: Contact) -> None:
        self.calls.append(("delete", record.id))
        if ("delete", record.id) in self.fail_on:
            raise RuntimeError(f"delete failed for {record.id}")
        del self.records[record.id]

    def count(self) -> int:
        return len(self.records)

    def numbers(self) -> List[str]:
        return sorted(r.number for r in self.records.values())


@pytest.fixture
def quiet_logger() -> StructuredLogger:
    """Logger with no handlers, for metric assertions."""
    return StructuredLogger(name="quiet-test", enable_console=False, enable_file=False)


@pytest.fixture
def mapping() -> DictMapping:
    return DictMapping({"555111": "15551234567", "777000": "447700900123"})


@pytest.fixture
def resolver(mapping, quiet_logger) -> IdentityResolver:
    return IdentityResolver(mapping, logger=quiet_logger)


@pytest.fixture
def memory_store():
    def _build(*records: Contact) -> MemoryContactStore:
        return MemoryContactStore(records)
    return _build


@pytest.fixture
def db_path(tmp_path):
    """Initialized empty SQLite database."""
    path = tmp_path / "contacts.db"
    init_database(path)
    return path


@pytest.fixture
def seed_db(db_path):
    """Insert (name, number, created_at) rows and return the db path."""
    def _seed(rows):
        session = get_session(db_path)
        for name, number, created_at in rows:
            session.add(Contact(name=name, number=number, created_at=created_at, updated_at=created_at))
        session.commit()
        session.close()
        return db_path
    return _seed
