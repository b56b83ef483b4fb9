"""
Contact store.

Responsibilities:
- List, update, delete and count contact records.
- Commit each write on its own so one bad record never rolls back another.

Non-Responsibilities:
- No identity resolution.
- No keeper selection or other reconciliation decisions.
"""

from typing import List, Protocol

from sqlalchemy.exc import OperationalError

from .database import Contact
from .logger import get_logger
from .retry import exponential_backoff, is_transient_error

logger = get_logger()


class ContactStore(Protocol):
    """Storage collaborator consumed by the reconciler."""

    def list_all(self) -> List[Contact]:
        """Return every record ordered by creation time, oldest first."""
        ...

    def update(self, record: Contact) -> None:
        ...

    def delete(self, record: Contact) -> None:
        ...

    def count(self) -> int:
        ...


def _log_retry(attempt: int, error: Exception, delay: float) -> None:
    logger.warning(
        "Storage write failed, retrying",
        attempt=attempt,
        delay=round(delay, 3),
        error=str(error),
    )


class SqlContactStore:
    """ContactStore backed by a SQLAlchemy session."""

    def __init__(self, session):
        self.session = session

    def list_all(self) -> List[Contact]:
        return (
            self.session.query(Contact)
            .order_by(Contact.created_at.asc(), Contact.id.asc())
            .all()
        )

    def sample(self, limit: int = 5) -> List[Contact]:
        """Return the first ``limit`` records by id, for display."""
        return self.session.query(Contact).order_by(Contact.id.asc()).limit(limit).all()

    def update(self, record: Contact) -> None:
        self._write(record, delete=False)

    def delete(self, record: Contact) -> None:
        self._write(record, delete=True)

    def count(self) -> int:
        return self.session.query(Contact).count()

    @exponential_backoff(
        max_retries=3,
        base_delay=0.1,
        max_delay=2.0,
        exceptions=(OperationalError,),
        retry_if=is_transient_error,
        on_retry=_log_retry,
    )
    def _write(self, record: Contact, delete: bool) -> None:
        # A rollback expires pending changes, so re-apply the record on each attempt
        pending_number = None if delete else record.number
        try:
            if delete:
                self.session.delete(record)
            else:
                record.number = pending_number
                self.session.add(record)
            self.session.commit()
        except Exception:
            self.session.rollback()
            if not delete:
                record.number = pending_number
            raise
