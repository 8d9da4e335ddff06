"""
invitations expires_at nullable

Version: 04
"""

from datetime import timedelta

import sqlalchemy as sa

version = 4
description = "allow invitations without expiration"

# Expiration given to never-expiring rows when going back to a NOT NULL column
DOWNGRADE_BACKFILL = timedelta(days=7)


def upgrade(ctx):
    with ctx.ops.batch_alter_table(ctx.table_name, schema=ctx.schema) as batch_op:
        batch_op.alter_column(
            "expires_at",
            existing_type=sa.DateTime(),
            nullable=True,
        )


def downgrade(ctx):
    invitations = sa.table(
        ctx.table_name,
        sa.column("expires_at", sa.DateTime()),
        schema=ctx.schema,
    )
    backfill = (ctx.now + DOWNGRADE_BACKFILL).replace(tzinfo=None)
    ctx.ops.execute(
        invitations.update()
        .where(invitations.c.expires_at.is_(None))
        .values(expires_at=backfill)
    )

    with ctx.ops.batch_alter_table(ctx.table_name, schema=ctx.schema) as batch_op:
        batch_op.alter_column(
            "expires_at",
            existing_type=sa.DateTime(),
            nullable=False,
        )
