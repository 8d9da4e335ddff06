# usher/migrations/annotation.py

"""
Where the installed schema version lives.

The version is stored next to the invitations table as a tag like "v05":
- as the table comment on dialects that support comments (Postgres, MySQL, ...)
- in a small registry table (usher_schema_versions) on dialects that don't (SQLite)

Nothing here caches: every read goes back to the database catalog.
"""

from __future__ import annotations

import re
from typing import Optional

import sqlalchemy as sa
from alembic.operations import Operations
from sqlalchemy.engine import Connection

from usher.core.errors import UnknownSchemaVersionError

REGISTRY_TABLE = "usher_schema_versions"

_TAG_RE = re.compile(r"^[vV]?(\d+)$")


def format_version_tag(version: int) -> str:
    """5 -> "v05", 12 -> "v12", 123 -> "v123"."""
    return f"v{version:02d}"


def parse_version_tag(tag) -> int:
    """
    "v05" -> 5, "5" -> 5. Anything else raises UnknownSchemaVersionError.
    """
    m = _TAG_RE.match(str(tag).strip())
    if not m:
        raise UnknownSchemaVersionError(tag)
    return int(m.group(1))


class VersionAnnotation:
    """Reads and writes the version tag of one table."""

    def __init__(self, connection: Connection, table_name: str, schema: Optional[str] = None) -> None:
        self.connection = connection
        self.table_name = table_name
        self.schema = schema

    def _inspector(self):
        # Fresh inspector per call: inspectors cache reflection results
        return sa.inspect(self.connection)

    def table_exists(self) -> bool:
        return self._inspector().has_table(self.table_name, schema=self.schema)

    def read_tag(self) -> Optional[str]:
        raise NotImplementedError

    def write(self, ops: Operations, version: int) -> None:
        raise NotImplementedError


class CommentAnnotation(VersionAnnotation):
    """Version tag kept as the table comment (COMMENT ON TABLE ... IS 'v05')."""

    def read_tag(self) -> Optional[str]:
        if not self.table_exists():
            return None
        comment = self._inspector().get_table_comment(self.table_name, schema=self.schema)
        text = (comment or {}).get("text")
        return text.strip() if text and text.strip() else None

    def write(self, ops: Operations, version: int) -> None:
        if version == 0:
            # Version 0 means the table is gone; nothing left to annotate
            if self.table_exists():
                ops.drop_table_comment(self.table_name, schema=self.schema)
            return
        ops.create_table_comment(self.table_name, format_version_tag(version), schema=self.schema)


class RegistryAnnotation(VersionAnnotation):
    """Version tag kept as a row of usher_schema_versions, keyed by table name."""

    def __init__(self, connection: Connection, table_name: str, schema: Optional[str] = None) -> None:
        super().__init__(connection, table_name, schema)
        self.registry = sa.Table(
            REGISTRY_TABLE,
            sa.MetaData(),
            sa.Column("table_name", sa.String(255), primary_key=True),
            sa.Column("version", sa.String(32), nullable=False),
            schema=schema,
        )

    def read_tag(self) -> Optional[str]:
        # A registry row for a table that no longer exists is stale
        if not self.table_exists():
            return None
        if not self._inspector().has_table(REGISTRY_TABLE, schema=self.schema):
            return None
        stmt = sa.select(self.registry.c.version).where(self.registry.c.table_name == self.table_name)
        return self.connection.execute(stmt).scalar()

    def write(self, ops: Operations, version: int) -> None:
        self.registry.create(self.connection, checkfirst=True)
        self.connection.execute(
            self.registry.delete().where(self.registry.c.table_name == self.table_name)
        )
        if version > 0:
            self.connection.execute(
                self.registry.insert().values(
                    table_name=self.table_name,
                    version=format_version_tag(version),
                )
            )


def annotation_for(connection: Connection, table_name: str, schema: Optional[str] = None) -> VersionAnnotation:
    if connection.dialect.supports_comments:
        return CommentAnnotation(connection, table_name, schema)
    return RegistryAnnotation(connection, table_name, schema)
