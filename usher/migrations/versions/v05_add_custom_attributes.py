"""
invitations add custom_attributes

Version: 05
"""

import sqlalchemy as sa

version = 5
description = "add custom_attributes to invitations"


def upgrade(ctx):
    ctx.ops.add_column(
        ctx.table_name,
        sa.Column("custom_attributes", sa.JSON(), nullable=True),
        schema=ctx.schema,
    )


def downgrade(ctx):
    if ctx.is_sqlite:
        with ctx.ops.batch_alter_table(ctx.table_name, schema=ctx.schema) as batch_op:
            batch_op.drop_column("custom_attributes")
    else:
        ctx.ops.drop_column(ctx.table_name, "custom_attributes", schema=ctx.schema)
