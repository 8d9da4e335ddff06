"""
create invitations table

Version: 01
"""

import sqlalchemy as sa

# Step identifiers (REQUIRED)
version = 1
description = "create invitations table with unique token"


def upgrade(ctx):
    ops, table, schema = ctx.ops, ctx.table_name, ctx.schema

    ops.create_table(
        table,
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("token", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("joined_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("inserted_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        schema=schema,
    )

    # The unique index is what turns a token collision into a field error
    ops.create_index(f"{table}_token_index", table, ["token"], unique=True, schema=schema)
    ops.create_index(f"{table}_expires_at_index", table, ["expires_at"], schema=schema)


def downgrade(ctx):
    # Indexes go with the table
    ctx.ops.drop_table(ctx.table_name, schema=ctx.schema)
