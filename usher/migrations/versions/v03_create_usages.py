"""
create invitation usages table

Version: 03
"""

import sqlalchemy as sa

version = 3
description = "create invitation usages table"


def upgrade(ctx):
    ops, usages, schema = ctx.ops, ctx.usages_table_name, ctx.schema
    parent = f"{schema}.{ctx.table_name}" if schema else ctx.table_name

    ops.create_table(
        usages,
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "invitation_id",
            sa.String(length=36),
            sa.ForeignKey(f"{parent}.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=255), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("inserted_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        schema=schema,
    )

    ops.create_index(f"{usages}_invitation_id_index", usages, ["invitation_id"], schema=schema)
    ops.create_index(
        f"{usages}_entity_type_entity_id_index",
        usages,
        ["entity_type", "entity_id"],
        schema=schema,
    )
    ops.create_index(f"{usages}_action_index", usages, ["action"], schema=schema)
    ops.create_index(f"{usages}_inserted_at_index", usages, ["inserted_at"], schema=schema)


def downgrade(ctx):
    ctx.ops.drop_table(ctx.usages_table_name, schema=ctx.schema)
