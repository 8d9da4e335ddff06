"""
invitations add name

Version: 02
"""

import sqlalchemy as sa

version = 2
description = "add name to invitations"


def upgrade(ctx):
    ctx.ops.add_column(
        ctx.table_name,
        sa.Column("name", sa.String(length=255), nullable=True),
        schema=ctx.schema,
    )


def downgrade(ctx):
    if ctx.is_sqlite:
        with ctx.ops.batch_alter_table(ctx.table_name, schema=ctx.schema) as batch_op:
            batch_op.drop_column("name")
    else:
        ctx.ops.drop_column(ctx.table_name, "name", schema=ctx.schema)
