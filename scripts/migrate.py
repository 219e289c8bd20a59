#!/usr/bin/env python
"""Migration CLI: list, apply, rollback migrations for the recommendation DB.

Usage (examples):

python scripts/migrate.py --db autotrade.db list
python scripts/migrate.py --db autotrade.db apply
python scripts/migrate.py --db autotrade.db apply --dry-run
python scripts/migrate.py --db autotrade.db rollback --version 2 --yes
python scripts/migrate.py --db autotrade.db rollback --last
"""
import argparse
import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from autotrade.db_migrations import (  # noqa: E402
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def confirm(prompt: str) -> bool:
    """Ask for confirmation; non-interactive stdin counts as yes."""
    try:
        answer = input(f"{prompt} This may DROP data. Type 'yes' to continue: ")
    except (EOFError, BrokenPipeError):
        return True
    return answer.strip().lower() == "yes"


def cmd_apply(conn, args) -> None:
    if args.dry_run:
        pending = pending_versions(conn)
        if pending:
            print("Pending migrations:", pending)
        else:
            print("No pending migrations; database up-to-date.")
        return
    applied = apply_migrations(conn)
    if applied:
        print("Applied migrations:", applied)
    else:
        print("No migrations applied; database up-to-date.")


def cmd_rollback(conn, args, parser) -> None:
    if args.version:
        if args.dry_run:
            print(f"Would rollback migration {args.version} (dry-run)")
            return
        if not args.yes and not confirm(f"Rollback migration {args.version}?"):
            print("Aborted.")
            return
        rollback_migration(conn, args.version)
        print(f"Rolled back migration {args.version}")
        return

    if args.last:
        applied = applied_versions(conn)
        if not applied:
            print("No applied migrations to rollback")
            return
        latest = max(applied)
        if args.dry_run:
            print(f"Would rollback migration {latest} (dry-run)")
            return
        if not args.yes and not confirm(f"Rollback the last migration {latest}?"):
            print("Aborted.")
            return
        rollback_last(conn)
        print(f"Rolled back migration {latest}")
        return

    parser.print_help()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Manage recommendation DB schema migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show what would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args(argv)
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30)
    try:
        if args.cmd == "list":
            list_migrations(conn)
        elif args.cmd == "apply":
            cmd_apply(conn, args)
        elif args.cmd == "rollback":
            cmd_rollback(conn, args, rb)
        else:
            parser.print_help()
    finally:
        conn.close()


if __name__ == "__main__":
    main()
