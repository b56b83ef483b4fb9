"""
Contact reconciliation.

Takes one snapshot of the contact store, groups records by canonical
phone number and converges every group to a single record holding a
clean number:

- a lone record with a suffix is rewritten in place (migrated),
- a group of duplicates keeps one record and deletes the rest.

Running it again after it converged changes nothing. Failures on a
single record are counted and attributed; they never stop the run.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .database import Contact
from .grouping import IdentityGroup, build_groups
from .jid import IdentityResolver, is_canonical
from .logger import StructuredLogger
from .storage import ContactStore

FULL = "full"
MIGRATE = "migrate"
DEDUPE = "dedupe"
MODES = (FULL, MIGRATE, DEDUPE)


class ReconcileError(Exception):
    """Base class for run-fatal reconciliation errors."""


class SnapshotError(ReconcileError):
    """The initial record snapshot could not be read; nothing was changed."""


@dataclass
class RecordFailure:
    record_id: Any
    operation: str  # "update" | "delete"
    error: str


@dataclass
class ReconcileSummary:
    total: int = 0
    migrated: int = 0
    duplicates_removed: int = 0
    already_clean: int = 0
    errors: int = 0
    skipped: int = 0
    unresolved: int = 0
    failures: List[RecordFailure] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.migrated or self.duplicates_removed)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GroupPlan:
    canonical: str
    keeper: Contact
    losers: List[Contact]
    rewrite: bool
    unresolved: bool = False

    @property
    def size(self) -> int:
        return 1 + len(self.losers)


def select_keeper(records: Iterable[Contact]) -> Tuple[Contact, List[Contact]]:
    """
    Pick the surviving record of a duplicate group.

    Clean numbers win over suffixed ones; among equals the most recently
    created wins, and the higher id breaks exact timestamp ties.

    Returns:
        Tuple of (keeper, losers)
    """
    ordered = sorted(records, key=lambda r: r.id, reverse=True)
    if not ordered:
        raise ValueError("Cannot select a keeper from an empty group")
    ordered.sort(key=lambda r: r.created_at, reverse=True)
    ordered.sort(key=lambda r: not is_canonical(r.number))
    return ordered[0], ordered[1:]


def plan_group(group: IdentityGroup) -> GroupPlan:
    keeper, losers = select_keeper(group.members)
    return GroupPlan(
        canonical=group.canonical,
        keeper=keeper,
        losers=losers,
        rewrite=keeper.number != group.canonical,
        unresolved=group.degraded,
    )


def audit_records(records: Iterable[Contact]) -> List[str]:
    """Describe every record that breaks the converged state."""
    records = list(records)
    problems = []
    for record in records:
        if not is_canonical(record.number):
            problems.append(f"Contact {record.id} still has a suffixed number: {record.number}")

    counts = Counter(record.number for record in records if is_canonical(record.number))
    for number, count in counts.items():
        if count > 1:
            ids = sorted(r.id for r in records if r.number == number)
            problems.append(f"Number {number} is held by {count} contacts: {ids}")
    return problems


class Reconciler:
    """Plans and applies contact reconciliation against a ContactStore."""

    def __init__(
        self,
        store: ContactStore,
        resolver: IdentityResolver,
        logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.logger = logger or resolver.logger

    def snapshot(self) -> List[Contact]:
        try:
            return list(self.store.list_all())
        except Exception as e:
            self.logger.critical("Could not read contact snapshot", error=str(e))
            raise SnapshotError(f"Could not read contact snapshot: {e}") from e

    def plan(self, records: Iterable[Contact]) -> List[GroupPlan]:
        return [plan_group(group) for group in build_groups(records, self.resolver)]

    def run(self, mode: str = FULL, dry_run: bool = False) -> ReconcileSummary:
        """
        Reconcile the whole store.

        Args:
            mode: "full", "migrate" (rewrite lone records only, leave
                unmapped LIDs alone) or "dedupe" (delete duplicates only)
            dry_run: Compute the same tallies without writing anything

        Returns:
            ReconcileSummary for the run

        Raises:
            SnapshotError: If the store cannot be read
        """
        if mode not in MODES:
            raise ValueError(f"Unknown mode {mode!r}; expected one of {MODES}")

        records = self.snapshot()
        summary = ReconcileSummary(total=len(records))
        plans = self.plan(records)

        self.logger.info(
            "Starting reconciliation",
            mode=mode,
            dry_run=dry_run,
            total=summary.total,
            groups=len(plans),
            duplicate_groups=sum(1 for p in plans if p.losers),
        )

        for plan in plans:
            if plan.losers:
                self._apply_duplicates(plan, mode, dry_run, summary)
            else:
                self._apply_single(plan, mode, dry_run, summary)

        self.logger.info("Reconciliation completed", mode=mode, dry_run=dry_run, **_tally(summary))
        return summary

    def audit(self) -> List[str]:
        return audit_records(self.snapshot())

    def _apply_single(self, plan: GroupPlan, mode: str, dry_run: bool, summary: ReconcileSummary) -> None:
        if not plan.rewrite:
            summary.already_clean += 1
            return
        if mode == DEDUPE or (mode == MIGRATE and plan.unresolved):
            summary.skipped += 1
            self.logger.debug("Skipping contact", id=plan.keeper.id, number=plan.keeper.number, mode=mode)
            return
        if plan.unresolved:
            summary.unresolved += 1
        self._migrate(plan.keeper, plan.canonical, dry_run, summary)

    def _apply_duplicates(self, plan: GroupPlan, mode: str, dry_run: bool, summary: ReconcileSummary) -> None:
        if mode == MIGRATE:
            summary.skipped += plan.size
            self.logger.debug("Leaving duplicate group for a full run", canonical=plan.canonical, size=plan.size)
            return

        self.logger.info(
            "Duplicate detected",
            canonical=plan.canonical,
            keep=plan.keeper.id,
            remove=[loser.id for loser in plan.losers],
        )
        for loser in plan.losers:
            self._delete(loser, dry_run, summary)

        if not plan.rewrite:
            return
        if mode == DEDUPE:
            summary.skipped += 1
            return
        if plan.unresolved:
            summary.unresolved += 1
        self._migrate(plan.keeper, plan.canonical, dry_run, summary)

    def _migrate(self, record: Contact, canonical: str, dry_run: bool, summary: ReconcileSummary) -> None:
        record_id, old_number = record.id, record.number
        if not dry_run:
            try:
                record.number = canonical
                self.store.update(record)
            except Exception as e:
                record.number = old_number
                self._fail(summary, record_id, "update", e)
                return
        summary.migrated += 1
        self.logger.info("Migrated contact", id=record_id, old=old_number, new=canonical, dry_run=dry_run)

    def _delete(self, record: Contact, dry_run: bool, summary: ReconcileSummary) -> None:
        record_id, number = record.id, record.number
        if not dry_run:
            try:
                self.store.delete(record)
            except Exception as e:
                self._fail(summary, record_id, "delete", e)
                return
        summary.duplicates_removed += 1
        self.logger.info("Removed duplicate contact", id=record_id, number=number, dry_run=dry_run)

    def _fail(self, summary: ReconcileSummary, record_id: Any, operation: str, error: Exception) -> None:
        summary.errors += 1
        summary.failures.append(RecordFailure(record_id, operation, str(error)))
        self.logger.record_error(type(error).__name__)
        self.logger.error(
            f"Failed to {operation} contact",
            id=record_id,
            error=str(error),
            error_type=type(error).__name__,
        )


def _tally(summary: ReconcileSummary) -> Dict[str, int]:
    data = summary.as_dict()
    data.pop("failures")
    return data
