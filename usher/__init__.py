# usher/__init__.py

"""
Usher: shareable invitation links backed by SQLAlchemy.

- InvitationService: create / look up / validate invitations
- InvitationUsageService: track what entities did with an invitation
- MigrationEngine: install and upgrade the invitations schema
"""

from usher.core.config import DefaultExpiresIn, UsherSettings, get_settings
from usher.core.errors import (
    FieldError,
    InvalidTargetVersionError,
    InvitationValidationError,
    StepExecutionFailedError,
    TokenCollisionExhaustedError,
    UsherError,
    UsherErrorCode,
)
from usher.migrations import MigrationEngine, get_migration_path, latest_version, migrate_to_version, valid_versions
from usher.models import Invitation, InvitationUsage
from usher.services.invitations import InvitationRepository, InvitationService, invitation_url
from usher.services.tokens import TokenGenerator, generate_token
from usher.services.usages import InvitationUsageService

__version__ = "0.5.0"

__all__ = [
    "DefaultExpiresIn",
    "FieldError",
    "InvalidTargetVersionError",
    "Invitation",
    "InvitationRepository",
    "InvitationService",
    "InvitationUsage",
    "InvitationUsageService",
    "InvitationValidationError",
    "MigrationEngine",
    "StepExecutionFailedError",
    "TokenCollisionExhaustedError",
    "TokenGenerator",
    "UsherError",
    "UsherErrorCode",
    "UsherSettings",
    "generate_token",
    "get_migration_path",
    "get_settings",
    "invitation_url",
    "latest_version",
    "migrate_to_version",
    "valid_versions",
]
