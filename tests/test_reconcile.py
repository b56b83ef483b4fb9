"""
Tests for contact reconciliation.
"""

import pytest

from contactdedup.jid import IdentityResolver, is_canonical
from contactdedup.mapping import DictMapping
from contactdedup.reconcile import (
    DEDUPE,
    MIGRATE,
    Reconciler,
    SnapshotError,
    audit_records,
    select_keeper,
)

from conftest import make_contact


def reconcile(store, resolver, **kwargs):
    return Reconciler(store, resolver).run(**kwargs)


class TestScenarios:
    """End-to-end outcomes on small record sets."""

    def test_mapped_lid_is_migrated(self, memory_store, resolver):
        store = memory_store(make_contact(1, "555111@lid"))

        summary = reconcile(store, resolver)

        assert store.records[1].number == "15551234567"
        assert summary.migrated == 1
        assert summary.total == 1
        assert summary.errors == 0

    def test_lid_duplicate_of_clean_number_is_removed(self, memory_store, resolver):
        # The clean record is older; it still wins
        store = memory_store(
            make_contact(1, "15551234567", minutes=0),
            make_contact(2, "555111@lid", minutes=5),
        )

        summary = reconcile(store, resolver)

        assert store.count() == 1
        assert 1 in store.records
        assert store.records[1].number == "15551234567"
        assert summary.duplicates_removed == 1
        assert summary.migrated == 0

    def test_clean_keeper_wins_when_newer_too(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", minutes=0),
            make_contact(2, "15551234567", minutes=5),
        )

        summary = reconcile(store, resolver)

        assert list(store.records) == [2]
        assert summary.duplicates_removed == 1

    def test_unmapped_lid_falls_back_and_migrates(self, memory_store, resolver):
        store = memory_store(make_contact(1, "999999@lid"))

        summary = reconcile(store, resolver)

        assert store.records[1].number == "999999"
        assert summary.migrated == 1
        assert summary.unresolved == 1
        assert summary.errors == 0

    def test_clean_record_untouched(self, memory_store, resolver):
        store = memory_store(make_contact(1, "15551234567"))

        summary = reconcile(store, resolver)

        assert store.calls == []
        assert summary.already_clean == 1
        assert summary.migrated == 0

    def test_canonical_kept_over_two_older_and_newer_lids(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", minutes=0),
            make_contact(2, "15551234567", minutes=10),
            make_contact(3, "15551234567@s.whatsapp.net", minutes=20),
        )

        summary = reconcile(store, resolver)

        assert list(store.records) == [2]
        assert summary.duplicates_removed == 2
        assert summary.migrated == 0

    def test_all_suffixed_group_keeps_newest_and_migrates_it(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", minutes=0),
            make_contact(2, "15551234567@s.whatsapp.net", minutes=10),
        )

        summary = reconcile(store, resolver)

        assert list(store.records) == [2]
        assert store.records[2].number == "15551234567"
        assert summary.duplicates_removed == 1
        assert summary.migrated == 1


class TestIdempotence:
    """A converged store is left alone."""

    def test_second_run_changes_nothing(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", 0),
            make_contact(2, "15551234567", 1),
            make_contact(3, "777000@lid", 2),
            make_contact(4, "999999@lid", 3),
            make_contact(5, "12025550100@s.whatsapp.net", 4),
            make_contact(6, "12025550100", 5),
        )

        first = reconcile(store, resolver)
        numbers_after_first = store.numbers()
        store.calls.clear()
        second = reconcile(store, resolver)

        assert first.changed
        assert second.migrated == 0
        assert second.duplicates_removed == 0
        assert second.already_clean == store.count() == second.total
        assert store.calls == []
        assert store.numbers() == numbers_after_first

    def test_converged_store_passes_audit(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", 0),
            make_contact(2, "15551234567", 1),
            make_contact(3, "888@s.whatsapp.net", 2),
        )

        reconcile(store, resolver)

        assert all(is_canonical(n) for n in store.numbers())
        assert audit_records(store.list_all()) == []


class TestKeeperSelection:
    """Deterministic keeper choice."""

    def test_canonical_first(self):
        records = [make_contact(1, "555111@lid", 50), make_contact(2, "15551234567", 0)]
        keeper, losers = select_keeper(records)
        assert keeper.id == 2
        assert [r.id for r in losers] == [1]

    def test_newest_among_equals(self):
        records = [make_contact(1, "15551234567", 0), make_contact(2, "15551234567", 10)]
        keeper, _ = select_keeper(records)
        assert keeper.id == 2

    def test_same_keeper_regardless_of_input_order(self):
        records = [
            make_contact(1, "555111@lid", 0),
            make_contact(2, "15551234567@s.whatsapp.net", 5),
            make_contact(3, "15551234567", 5),
            make_contact(4, "15551234567", 5),
        ]

        keepers = {select_keeper(order)[0].id for order in (records, records[::-1], records[1:] + records[:1])}

        assert keepers == {4}

    def test_empty_group_rejected(self):
        with pytest.raises(ValueError):
            select_keeper([])


class TestPartialFailures:
    """Per-record failures are counted and do not stop the run."""

    def test_failed_delete_does_not_block_other_losers(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", 0),
            make_contact(2, "15551234567@s.whatsapp.net", 1),
            make_contact(3, "15551234567", 2),
        )
        store.fail_on.add(("delete", 1))

        summary = reconcile(store, resolver)

        assert summary.errors == 1
        assert summary.duplicates_removed == 1
        assert sorted(store.records) == [1, 3]
        assert summary.failures[0].record_id == 1
        assert summary.failures[0].operation == "delete"

    def test_failed_update_is_attributed_and_run_continues(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", 0),
            make_contact(2, "777000@lid", 1),
        )
        store.fail_on.add(("update", 1))

        summary = reconcile(store, resolver)

        assert summary.errors == 1
        assert summary.migrated == 1
        assert store.records[1].number == "555111@lid"
        assert store.records[2].number == "447700900123"

    def test_failed_run_converges_on_retry(self, memory_store, resolver):
        store = memory_store(
            make_contact(1, "555111@lid", 0),
            make_contact(2, "15551234567", 1),
        )
        store.fail_on.add(("delete", 1))
        reconcile(store, resolver)

        store.fail_on.clear()
        summary = reconcile(store, resolver)

        assert summary.duplicates_removed == 1
        assert store.numbers() == ["15551234567"]

    def test_snapshot_failure_aborts_before_any_write(self, memory_store, resolver):
        store = memory_store(make_contact(1, "555111@lid"))
        store.fail_list = True

        with pytest.raises(SnapshotError):
            reconcile(store, resolver)

        assert store.calls == []

    def test_lookup_failure_is_not_a_run_error(self, memory_store, quiet_logger):
        class BrokenMapping:
            def lookup(self, local_id):
                raise PermissionError("denied")

        store = memory_store(make_contact(1, "555111@lid"))

        summary = reconcile(store, IdentityResolver(BrokenMapping(), logger=quiet_logger))

        assert summary.errors == 0
        assert store.records[1].number == "555111"


class TestModes:
    """Dry runs and partial modes."""

    @pytest.fixture
    def mixed_store(self, memory_store):
        return memory_store(
            make_contact(1, "555111@lid", 0),
            make_contact(2, "15551234567", 1),
            make_contact(3, "777000@lid", 2),
            make_contact(4, "999999@lid", 3),
            make_contact(5, "12025550100", 4),
        )

    def test_dry_run_writes_nothing(self, mixed_store, resolver):
        summary = reconcile(mixed_store, resolver, dry_run=True)

        assert mixed_store.calls == []
        assert mixed_store.records[1].number == "555111@lid"
        assert summary.duplicates_removed == 1
        assert summary.migrated == 2
        assert summary.already_clean == 1

    def test_dry_run_matches_real_run(self, mixed_store, resolver):
        planned = reconcile(mixed_store, resolver, dry_run=True)
        applied = reconcile(mixed_store, resolver)

        assert planned.as_dict() == applied.as_dict()

    def test_migrate_mode(self, mixed_store, resolver):
        summary = reconcile(mixed_store, resolver, mode=MIGRATE)

        assert summary.migrated == 1  # 777000 only
        assert summary.skipped == 3  # duplicate pair + unmapped LID
        assert summary.duplicates_removed == 0
        assert mixed_store.records[3].number == "447700900123"
        assert mixed_store.records[4].number == "999999@lid"
        assert mixed_store.count() == 5

    def test_dedupe_mode(self, mixed_store, resolver):
        summary = reconcile(mixed_store, resolver, mode=DEDUPE)

        assert summary.duplicates_removed == 1
        assert summary.migrated == 0
        assert summary.skipped == 2  # 777000 and 999999 left for migration
        assert 1 not in mixed_store.records
        assert mixed_store.records[3].number == "777000@lid"

    def test_unknown_mode(self, mixed_store, resolver):
        with pytest.raises(ValueError):
            reconcile(mixed_store, resolver, mode="purge")


class TestAudit:

    def test_reports_suffixes_and_duplicates(self):
        problems = audit_records([
            make_contact(1, "555111@lid"),
            make_contact(2, "15551234567"),
            make_contact(3, "15551234567"),
        ])

        assert len(problems) == 2
        assert "555111@lid" in problems[0]
        assert "[2, 3]" in problems[1]

    def test_reconciler_audit_reads_store(self, memory_store, quiet_logger):
        store = memory_store(make_contact(1, "15551234567"))
        reconciler = Reconciler(store, IdentityResolver(DictMapping(), logger=quiet_logger))
        assert reconciler.audit() == []

    def test_reconciler_audit_unreadable_store(self, memory_store, resolver):
        store = memory_store(make_contact(1, "555111@lid"))
        store.fail_list = True

        with pytest.raises(SnapshotError):
            Reconciler(store, resolver).audit()
