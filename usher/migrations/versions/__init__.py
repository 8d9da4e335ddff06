# usher/migrations/versions/__init__.py

"""
Ordered schema steps for the invitations tables.

Each module exposes `version`, `description`, `upgrade(ctx)` and
`downgrade(ctx)`. A new step is a new module appended to STEP_MODULES.
"""

from usher.migrations.versions import (
    v01_create_invitations,
    v02_add_name,
    v03_create_usages,
    v04_nullable_expires_at,
    v05_add_custom_attributes,
)

STEP_MODULES = (
    v01_create_invitations,
    v02_add_name,
    v03_create_usages,
    v04_nullable_expires_at,
    v05_add_custom_attributes,
)
