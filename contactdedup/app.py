import argparse
from pathlib import Path
from typing import List, Optional, Protocol

from . import __version__
from .database import get_session
from .env import Settings, load_env
from .jid import IdentityResolver
from .logger import get_logger
from .mapping import DictMapping, FileLidMapping, MappingLookup
from .reconcile import DEDUPE, FULL, MIGRATE, Reconciler, ReconcileSummary, SnapshotError
from .storage import SqlContactStore

RULE = "━" * 50


class ReportSink(Protocol):
    def report(self, summary: ReconcileSummary) -> None:
        ...


class ConsoleReport:
    """Prints a run summary, the remaining count and a few sample contacts."""

    def __init__(self, store: SqlContactStore, mode: str, dry_run: bool = False, sample_size: int = 5):
        self.store = store
        self.mode = mode
        self.dry_run = dry_run
        self.sample_size = sample_size

    def report(self, summary: ReconcileSummary) -> None:
        print(RULE)
        title = "DRY RUN" if self.dry_run else "COMPLETED"
        print(f"Contact {self.mode} {title}\n")
        print("Summary:")
        print(f"  Total contacts processed: {summary.total}")
        print(f"  Migrated (suffix -> phone): {summary.migrated}")
        print(f"  Duplicates removed: {summary.duplicates_removed}")
        print(f"  Already clean: {summary.already_clean}")
        if summary.skipped:
            print(f"  Skipped: {summary.skipped}")
        if summary.unresolved:
            print(f"  Migrated without a LID mapping (LID kept as number): {summary.unresolved}")
        if summary.errors:
            print(f"  Errors: {summary.errors}")
            for failure in summary.failures:
                print(f"   - {failure.operation} contact {failure.record_id}: {failure.error}")
        print(f"  Final contact count: {self.store.count()}")

        print(f"\n{RULE}")
        print("Sample of contacts:\n")
        for contact in self.store.sample(self.sample_size):
            print(f"  {contact.id}. {contact.name} -> {contact.number}")
        print(RULE)

        if self.dry_run:
            print("No changes were written (dry run).")
        elif not summary.changed and not summary.errors:
            print("Database is already clean! No changes needed.")


def build_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    return Settings(
        session_path=Path(args.session_path) if args.session_path else settings.session_path,
        db_path=Path(args.db) if args.db else settings.db_path,
        log_level=settings.log_level,
    )


def build_mapping(args: argparse.Namespace, settings: Settings) -> MappingLookup:
    if args.mapping_file:
        path = Path(args.mapping_file)
        if not path.exists():
            raise SystemExit(f"Mapping file not found: {path}")
        return DictMapping.from_json_file(path)
    return FileLidMapping(settings.session_path)


def open_store(settings: Settings) -> SqlContactStore:
    if not settings.db_path.exists():
        raise SystemExit(f"Database not found: {settings.db_path}")
    return SqlContactStore(get_session(settings.db_path))


def build_resolver(args: argparse.Namespace, settings: Settings) -> IdentityResolver:
    return IdentityResolver(build_mapping(args, settings), logger=get_logger())


def run_mode(args: argparse.Namespace, mode: str) -> ReconcileSummary:
    settings = build_settings(args)
    resolver = build_resolver(args, settings)
    store = open_store(settings)
    try:
        reconciler = Reconciler(store, resolver)
        print(f"Session path: {settings.session_path}")
        print(f"Database: {settings.db_path}\n")
        try:
            summary = reconciler.run(mode=mode, dry_run=args.dry_run)
        except SnapshotError as e:
            raise SystemExit(f"Fatal error during {mode}: {e}")
        sink: ReportSink = ConsoleReport(store, mode, dry_run=args.dry_run)
        sink.report(summary)
        resolver.logger.log_metrics_summary()
        return summary
    finally:
        store.session.close()


def cmd_clean(args: argparse.Namespace) -> None:
    run_mode(args, FULL)


def cmd_migrate(args: argparse.Namespace) -> None:
    summary = run_mode(args, MIGRATE)
    if summary.skipped:
        print("Tip: run 'contactdedup clean' to merge duplicates and migrate unmapped LIDs.")


def cmd_dedupe(args: argparse.Namespace) -> None:
    summary = run_mode(args, DEDUPE)
    if summary.skipped:
        print("Tip: run 'contactdedup migrate' to convert the remaining suffixed numbers.")


def cmd_audit(args: argparse.Namespace) -> None:
    settings = build_settings(args)
    store = open_store(settings)
    try:
        reconciler = Reconciler(store, build_resolver(args, settings))
        try:
            problems = reconciler.audit()
        except SnapshotError as e:
            raise SystemExit(str(e))
    finally:
        store.session.close()
    if problems:
        print(f"Found {len(problems)} problem(s):")
        for problem in problems:
            print(f" - {problem}")
        raise SystemExit(1)
    print("All contacts have clean, unique numbers.")


def cmd_resolve(args: argparse.Namespace) -> None:
    settings = build_settings(args)
    resolution = build_resolver(args, settings).resolution(args.jid)
    print(resolution.value)
    if resolution.degraded:
        print("(no LID mapping found; showing the LID itself)")


def cmd_list(args: argparse.Namespace) -> None:
    settings = build_settings(args)
    store = open_store(settings)
    try:
        contacts = store.list_all()
        if not contacts:
            print("No contacts in database.")
            return
        if args.limit is not None:
            contacts = contacts[:args.limit]
        print(f"Showing {len(contacts)} of {store.count()} contacts in {settings.db_path}:\n")
        for contact in contacts:
            print(f"{contact.id}. {contact.name} -> {contact.number} (created {contact.created_at:%Y-%m-%d %H:%M:%S})")
    finally:
        store.session.close()


def main(argv: Optional[List[str]] = None):
    # Load .env if present (SESSION_PATH, CONTACTS_DB, LOG_LEVEL)
    load_env()
    parser = argparse.ArgumentParser(prog="contactdedup", description="Reconcile contacts stored by phone number or LID")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Path to SQLite database (or set CONTACTS_DB; default: data/contacts.db)")
    parser.add_argument("--session-path", help="Directory with lid-mapping-*_reverse.json files (or set SESSION_PATH)")
    parser.add_argument("--mapping-file", help="JSON object of LID -> phone number, used instead of session files")

    subparsers = parser.add_subparsers(dest="command")
    cln = subparsers.add_parser("clean", help="Migrate suffixed numbers and remove duplicates (safe to re-run)")
    cln.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    cln.set_defaults(func=cmd_clean)

    mig = subparsers.add_parser("migrate", help="Rewrite suffixed numbers in place; leaves duplicates and unmapped LIDs")
    mig.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    mig.set_defaults(func=cmd_migrate)

    ded = subparsers.add_parser("dedupe", help="Remove duplicate contacts only, keeping the clean number")
    ded.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    ded.set_defaults(func=cmd_dedupe)

    aud = subparsers.add_parser("audit", help="Check that every number is clean and unique")
    aud.set_defaults(func=cmd_audit)

    res = subparsers.add_parser("resolve", help="Resolve a single JID to its phone number")
    res.add_argument("jid", help="JID such as 221582278529209@lid or 573001234567@s.whatsapp.net")
    res.set_defaults(func=cmd_resolve)

    lst = subparsers.add_parser("list", help="List stored contacts, oldest first")
    lst.add_argument("--limit", type=int, help="Show at most this many contacts")
    lst.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    get_logger().set_level(Settings.from_env().log_level)

    if hasattr(args, "func"):
        args.func(args)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
