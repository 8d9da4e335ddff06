# usher/migrations/__init__.py

"""
Versioned schema management for the invitations tables.

The installed version is read from the database every time (see
usher.migrations.annotation); nothing is cached between calls. Moving from
version A to B runs the steps between them in order, one transaction per step
when the engine is bound to an Engine, or inside the caller's transaction when
bound to a Connection (e.g. `op.get_bind()` from a host alembic revision).

    engine = MigrationEngine(create_usher_engine())
    engine.migrate_to_latest()
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Union

from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Connection, Engine

from usher.core.config import UsherSettings, get_settings
from usher.core.errors import (
    InvalidTargetVersionError,
    StepExecutionFailedError,
    UnknownSchemaVersionError,
    log_exception_with_context,
)
from usher.db.session import create_usher_engine
from usher.migrations.annotation import annotation_for, parse_version_tag
from usher.migrations.versions import STEP_MODULES

logger = logging.getLogger("usher")

UP = "up"
DOWN = "down"

# Table present without a version tag: installed before tags were written
LEGACY = "legacy"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PlannedStep:
    direction: str
    version: int

    @classmethod
    def up(cls, version: int) -> "PlannedStep":
        return cls(UP, version)

    @classmethod
    def down(cls, version: int) -> "PlannedStep":
        return cls(DOWN, version)

    def __str__(self) -> str:
        return f"{self.direction}({self.version})"


@dataclass(frozen=True)
class MigrationStep:
    version: int
    description: str
    upgrade: Callable[["StepContext"], None]
    downgrade: Callable[["StepContext"], None]

    @classmethod
    def from_module(cls, module) -> "MigrationStep":
        return cls(
            version=module.version,
            description=module.description,
            upgrade=module.upgrade,
            downgrade=module.downgrade,
        )


@dataclass
class StepContext:
    """What a step's upgrade/downgrade receives."""

    ops: Operations
    connection: Connection
    table_name: str
    usages_table_name: str
    schema: Optional[str]
    now: datetime

    @property
    def is_sqlite(self) -> bool:
        return self.connection.dialect.name == "sqlite"


@dataclass(frozen=True)
class InstalledState:
    version: int
    legacy: bool = False
    tag: Optional[str] = None


def check_contiguous(steps: Sequence[MigrationStep]) -> List[MigrationStep]:
    """Steps must be numbered 1..N with no gaps or duplicates."""
    ordered = sorted(steps, key=lambda s: s.version)
    expected = list(range(1, len(ordered) + 1))
    found = [s.version for s in ordered]
    if found != expected:
        raise RuntimeError(f"migration steps must be numbered {expected}, found {found}")
    return ordered


def _sqlite_foreign_keys_enabled(conn: Connection) -> bool:
    return conn.dialect.name == "sqlite" and bool(conn.exec_driver_sql("PRAGMA foreign_keys").scalar())


@contextmanager
def _sqlite_foreign_keys_off(conn: Connection) -> Iterator[None]:
    """
    SQLite table rebuilds (batch mode) drop the original table, which fires
    ON DELETE CASCADE into the usages table while foreign keys are enforced.
    Enforcement is switched off around the step and restored afterwards.

    The pragma is a no-op inside a transaction, so it is issued on `conn`
    before the step's transaction begins.
    """
    if conn.dialect.name != "sqlite":
        yield
        return

    enabled = _sqlite_foreign_keys_enabled(conn)
    if enabled:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
    # End the implicit transaction so the step can begin its own
    conn.commit()
    try:
        yield
    finally:
        if enabled:
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")
            conn.commit()


def _warn_if_sqlite_foreign_keys_on(conn: Connection, table_name: str) -> None:
    # Inside the caller's transaction the pragma can't be changed any more
    if _sqlite_foreign_keys_enabled(conn):
        logger.warning(
            "usher_sqlite_foreign_keys_enabled table=%s "
            "hint=table rebuilds cascade into usages; run migrations with PRAGMA foreign_keys=OFF",
            table_name,
        )


STEPS: List[MigrationStep] = check_contiguous([MigrationStep.from_module(m) for m in STEP_MODULES])


def latest_version(steps: Sequence[MigrationStep] = STEPS) -> int:
    return len(steps)


def valid_versions(steps: Sequence[MigrationStep] = STEPS) -> List[int]:
    return list(range(1, latest_version(steps) + 1))


def normalize_version(value: Union[int, str, None]) -> int:
    """
    None -> 0 (not installed), "legacy" -> 1, "v03" / "3" / 3 -> 3.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise TypeError(f"schema version must be an int or a tag, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lower() == LEGACY:
        return 1
    return parse_version_tag(value)


def get_migration_path(
    from_version: Union[int, str, None],
    to_version: Union[int, str, None],
) -> List[PlannedStep]:
    """
    Steps needed to go from one version to another.

    get_migration_path(0, 3) -> [up(1), up(2), up(3)]
    get_migration_path(3, 1) -> [down(3), down(2)]
    get_migration_path(2, 2) -> []
    """
    current = normalize_version(from_version)
    target = normalize_version(to_version)

    if target > current:
        return [PlannedStep.up(v) for v in range(current + 1, target + 1)]
    if target < current:
        return [PlannedStep.down(v) for v in range(current, target, -1)]
    return []


class MigrationEngine:
    """
    Detects the installed schema version and moves it to a target version.

    `bind` is an Engine (each step gets its own transaction) or a Connection
    (steps run on it and the caller owns the transaction).
    """

    def __init__(
        self,
        bind: Union[Engine, Connection],
        settings: Optional[UsherSettings] = None,
        *,
        table_name: Optional[str] = None,
        usages_table_name: Optional[str] = None,
        prefix: Optional[str] = None,
        steps: Optional[Sequence[MigrationStep]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.bind = bind
        self.table_name = table_name or settings.table_name
        self.usages_table_name = usages_table_name or settings.usages_table_name
        self.schema = prefix if prefix is not None else settings.prefix
        self.steps = check_contiguous(steps) if steps is not None else STEPS
        self.clock = clock
        self._by_version: Dict[int, MigrationStep] = {s.version: s for s in self.steps}

    # ---------- connections ----------

    @contextmanager
    def _reading(self) -> Iterator[Connection]:
        if isinstance(self.bind, Engine):
            with self.bind.connect() as conn:
                yield conn
        else:
            yield self.bind

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        if isinstance(self.bind, Engine):
            with self.bind.connect() as conn:
                with _sqlite_foreign_keys_off(conn):
                    with conn.begin():
                        yield conn
        else:
            _warn_if_sqlite_foreign_keys_on(self.bind, self.table_name)
            yield self.bind

    # ---------- state ----------

    @property
    def latest_version(self) -> int:
        return latest_version(self.steps)

    @property
    def valid_versions(self) -> List[int]:
        return valid_versions(self.steps)

    def detect_state(self) -> InstalledState:
        """
        Read the installed version from the database.

        - version tag present: that version
        - table present, no tag: version 1 (legacy install)
        - no table: version 0
        """
        with self._reading() as conn:
            annotation = annotation_for(conn, self.table_name, self.schema)
            tag = annotation.read_tag()
            if tag is not None:
                version = parse_version_tag(tag)
                if not 1 <= version <= self.latest_version:
                    raise UnknownSchemaVersionError(tag)
                return InstalledState(version=version, tag=tag)
            if annotation.table_exists():
                return InstalledState(version=1, legacy=True)
            return InstalledState(version=0)

    def current_version(self) -> int:
        return self.detect_state().version

    def _validate_target(self, target) -> int:
        valid = self.valid_versions
        if isinstance(target, bool) or not isinstance(target, int) or target not in valid:
            raise InvalidTargetVersionError(target, valid)
        return target

    def plan(self, target: int) -> List[PlannedStep]:
        target = self._validate_target(target)
        return get_migration_path(self.current_version(), target)

    # ---------- execution ----------

    def migrate_to_version(self, target: int) -> List[PlannedStep]:
        """
        Bring the schema to `target` and return the steps that ran.

        The target is checked before the database is touched. Calling this
        again with the same target runs nothing.
        """
        target = self._validate_target(target)
        state = self.detect_state()
        path = get_migration_path(state.version, target)

        if not path:
            logger.info("usher_migration_noop table=%s version=%s", self.table_name, target)
            return []

        logger.info(
            "usher_migration_start table=%s from=%s to=%s legacy=%s steps=%s",
            self.table_name,
            state.version,
            target,
            state.legacy,
            ",".join(str(p) for p in path),
        )
        for planned in path:
            self._apply(planned)

        logger.info("usher_migration_done table=%s version=%s", self.table_name, target)
        return path

    def migrate_to_latest(self) -> List[PlannedStep]:
        return self.migrate_to_version(self.latest_version)

    def _apply(self, planned: PlannedStep) -> None:
        step = self._by_version[planned.version]
        try:
            with self._transaction() as conn:
                ctx = StepContext(
                    ops=Operations(MigrationContext.configure(conn)),
                    connection=conn,
                    table_name=self.table_name,
                    usages_table_name=self.usages_table_name,
                    schema=self.schema,
                    now=self.clock(),
                )
                annotation = annotation_for(conn, self.table_name, self.schema)
                if planned.direction == UP:
                    step.upgrade(ctx)
                    annotation.write(ctx.ops, planned.version)
                else:
                    step.downgrade(ctx)
                    annotation.write(ctx.ops, planned.version - 1)
        except Exception as exc:
            log_exception_with_context(
                "usher_migration_step_failed",
                extra={
                    "table": self.table_name,
                    "direction": planned.direction,
                    "version": planned.version,
                },
            )
            raise StepExecutionFailedError(planned.version, planned.direction, exc) from exc

        logger.info(
            "usher_migration_step table=%s step=%s description=%r",
            self.table_name,
            planned,
            step.description,
        )


def migrate_to_version(
    version: int,
    *,
    bind: Optional[Union[Engine, Connection]] = None,
    settings: Optional[UsherSettings] = None,
) -> List[PlannedStep]:
    """
    Entry point for host alembic revisions:

        from alembic import op
        from usher.migrations import migrate_to_version

        def upgrade():
            migrate_to_version(5, bind=op.get_bind())

    Without `bind`, an engine is built from settings.database_url.
    """
    if bind is None:
        bind = create_usher_engine(settings)
    return MigrationEngine(bind, settings).migrate_to_version(version)


__all__ = [
    "DOWN",
    "LEGACY",
    "UP",
    "InstalledState",
    "MigrationEngine",
    "MigrationStep",
    "PlannedStep",
    "StepContext",
    "STEPS",
    "check_contiguous",
    "get_migration_path",
    "latest_version",
    "migrate_to_version",
    "normalize_version",
    "valid_versions",
]
