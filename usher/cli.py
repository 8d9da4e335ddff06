"""Usher schema migration runner.

Usage:
    usher-migrate status
    usher-migrate up [--to N]
    usher-migrate down --to N
    usher-migrate plan --to N
    usher-migrate install [--directory alembic/versions] [--down-revision REV]

Reads the installed schema version from the database, compares it with the
latest known version, and only runs DDL when the database is not already at
the requested version. --database-url overrides USHER_DATABASE_URL.
"""
import argparse
import logging
import sys
import uuid
from datetime import date
from pathlib import Path
from typing import List, Optional

from usher.core.config import UsherSettings, get_settings
from usher.core.errors import InvalidTargetVersionError, StepExecutionFailedError, UsherError
from usher.db.session import create_usher_engine
from usher.migrations import MigrationEngine, latest_version

EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_INVALID_TARGET = 2

REVISION_TEMPLATE = '''"""
install usher invitations schema v{version:02d}

Revision ID: {revision}
Revises: {down_revision}
Create Date: {create_date}
"""

from alembic import op

from usher.migrations import migrate_to_version

# Alembic identifiers (REQUIRED)
revision = "{revision}"
down_revision = {down_revision!r}
branch_labels = None
depends_on = None


def upgrade():
    migrate_to_version({version}, bind=op.get_bind())


def downgrade():
    migrate_to_version({down_version}, bind=op.get_bind())
'''


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="usher-migrate", description="Manage the Usher invitations schema.")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (default: USHER_DATABASE_URL)")
    parser.add_argument("--table-name", default=None, help="invitations table (default: USHER_TABLE_NAME)")
    parser.add_argument("--prefix", default=None, help="database schema holding the tables")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="print installed and latest schema versions")

    up = sub.add_parser("up", help="migrate forward (default: latest)")
    up.add_argument("--to", type=int, default=None)

    down = sub.add_parser("down", help="roll back to a version")
    down.add_argument("--to", type=int, required=True)

    plan = sub.add_parser("plan", help="print the steps a migration would run")
    plan.add_argument("--to", type=int, required=True)

    install = sub.add_parser("install", help="write an alembic revision that installs the schema")
    install.add_argument("--directory", default="alembic/versions")
    install.add_argument("--down-revision", default=None)
    install.add_argument("--to", type=int, default=None)

    return parser


def write_install_revision(
    directory: str,
    *,
    version: Optional[int] = None,
    down_revision: Optional[str] = None,
) -> Path:
    """Write an alembic revision file calling migrate_to_version and return its path."""
    if version is None:
        version = latest_version()
    if isinstance(version, bool) or not 1 <= version <= latest_version():
        raise InvalidTargetVersionError(version, list(range(1, latest_version() + 1)))

    revision = uuid.uuid4().hex[:12]
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{revision}_install_usher_v{version:02d}.py"
    path.write_text(
        REVISION_TEMPLATE.format(
            version=version,
            # Rolling back the install keeps the baseline table (version 1)
            down_version=1,
            revision=revision,
            down_revision=down_revision,
            create_date=date.today().isoformat(),
        ),
        encoding="utf-8",
    )
    return path


def _engine_for(args, settings: UsherSettings) -> MigrationEngine:
    bind = create_usher_engine(settings, database_url=args.database_url)
    return MigrationEngine(bind, settings, table_name=args.table_name, prefix=args.prefix)


def _print_steps(steps) -> None:
    if not steps:
        print("No action taken.")
        return
    for step in steps:
        print(" ", step)


def main(argv: Optional[List[str]] = None, settings: Optional[UsherSettings] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    settings = settings or get_settings()

    if args.command == "install":
        try:
            path = write_install_revision(args.directory, version=args.to, down_revision=args.down_revision)
        except InvalidTargetVersionError as e:
            print("Error:", e.message, file=sys.stderr)
            return EXIT_INVALID_TARGET
        print("Wrote", path)
        return EXIT_OK

    engine = _engine_for(args, settings)

    try:
        if args.command == "status":
            state = engine.detect_state()
            suffix = " (legacy, no version annotation)" if state.legacy else ""
            print(f"Installed version: {state.version}{suffix}")
            print(f"Latest version: {engine.latest_version}")
            if state.version == engine.latest_version:
                print("Database is up-to-date (no pending migrations).")
            return EXIT_OK

        if args.command == "plan":
            _print_steps(engine.plan(args.to))
            return EXIT_OK

        target = engine.latest_version if args.to is None else args.to
        current = engine.current_version()
        if args.command == "down" and target > current:
            print("Target is above the installed version; use 'up'.", file=sys.stderr)
            return EXIT_INVALID_TARGET
        if args.command == "up" and target < current:
            print("Target is below the installed version; use 'down'.", file=sys.stderr)
            return EXIT_INVALID_TARGET

        print(f"Migrating {engine.table_name} to version {target}...")
        _print_steps(engine.migrate_to_version(target))
        print("Migration complete.")
        return EXIT_OK

    except InvalidTargetVersionError as e:
        print("Error:", e.message, file=sys.stderr)
        return EXIT_INVALID_TARGET
    except StepExecutionFailedError as e:
        print("Error:", e.message, file=sys.stderr)
        return EXIT_STEP_FAILED
    except UsherError as e:
        print("Error:", e.message, file=sys.stderr)
        return EXIT_STEP_FAILED
    finally:
        engine.bind.dispose()


if __name__ == "__main__":
    sys.exit(main())
