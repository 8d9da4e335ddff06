# usher/core/errors.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Iterable, List, Optional, Sequence

logger = logging.getLogger("usher")


class UsherErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TOO_MANY_TOKEN_GENERATE_ATTEMPTS = "TOO_MANY_TOKEN_GENERATE_ATTEMPTS"
    TOKEN_REQUIRED = "TOKEN_REQUIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVITATION_NOT_FOUND = "INVITATION_NOT_FOUND"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVITATION_EXPIRED = "INVITATION_EXPIRED"
    NAME_REQUIRED = "NAME_REQUIRED"
    INVALID_TARGET_VERSION = "INVALID_TARGET_VERSION"
    UNKNOWN_SCHEMA_VERSION = "UNKNOWN_SCHEMA_VERSION"
    STEP_EXECUTION_FAILED = "STEP_EXECUTION_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# Message used by the storage layer for a unique token violation.
TOKEN_TAKEN_MESSAGE = "has already been taken"


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class UsherError(Exception):
    """
    Base class for every error Usher raises on purpose.

    Carries a stable `code` plus free-form context so callers can map errors
    to their own contracts (HTTP responses, CLI exit codes, alerts).
    """

    code: UsherErrorCode = UsherErrorCode.VALIDATION_FAILED
    default_message = "Usher error"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        payload.update(self.context)
        return payload


class ConfigurationError(UsherError):
    code = UsherErrorCode.CONFIGURATION_ERROR
    default_message = "Invalid Usher configuration"


# ---------- Invitations ----------

class InvitationValidationError(UsherError):
    """
    Field-level validation failure (schema rules or a storage uniqueness
    violation). Never retried for caller-supplied tokens.
    """

    code = UsherErrorCode.VALIDATION_FAILED
    default_message = "Invitation is invalid"

    def __init__(self, errors: Iterable[FieldError], message: Optional[str] = None) -> None:
        self.errors: List[FieldError] = list(errors)
        super().__init__(message or _summarize(self.errors))

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = [e.to_dict() for e in self.errors]
        return payload

    def messages_for(self, field: str) -> List[str]:
        return [e.message for e in self.errors if e.field == field]

    @property
    def token_taken(self) -> bool:
        return TOKEN_TAKEN_MESSAGE in self.messages_for("token")


class TokenCollisionExhaustedError(UsherError):
    """
    Every auto-generated token collided. Signals token-space exhaustion or a
    broken uniqueness check; alert on it rather than showing it to users.
    """

    code = UsherErrorCode.TOO_MANY_TOKEN_GENERATE_ATTEMPTS
    default_message = "Too many token generation attempts"

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(attempts=attempts)


class TokenRequiredError(UsherError):
    code = UsherErrorCode.TOKEN_REQUIRED
    default_message = "A non-empty token is required"


class InvalidSignatureError(UsherError):
    code = UsherErrorCode.INVALID_SIGNATURE
    default_message = "Token signature is invalid"


class InvitationNotFoundError(UsherError):
    code = UsherErrorCode.INVITATION_NOT_FOUND
    default_message = "Invitation not found"


class InvalidInvitationTokenError(UsherError):
    code = UsherErrorCode.INVALID_TOKEN
    default_message = "Invitation token is invalid"


class InvitationExpiredError(UsherError):
    code = UsherErrorCode.INVITATION_EXPIRED
    default_message = "Invitation has expired"


class NameRequiredError(UsherError):
    code = UsherErrorCode.NAME_REQUIRED
    default_message = "Invitation has no name"


# ---------- Migrations ----------

class InvalidTargetVersionError(UsherError):
    code = UsherErrorCode.INVALID_TARGET_VERSION

    def __init__(self, target: Any, valid_versions: Sequence[int]) -> None:
        self.target = target
        self.valid_versions = list(valid_versions)
        super().__init__(
            f"Invalid target version {target!r}; expected one of {self.valid_versions}",
            target=target,
            valid_versions=self.valid_versions,
        )


class UnknownSchemaVersionError(UsherError):
    code = UsherErrorCode.UNKNOWN_SCHEMA_VERSION

    def __init__(self, tag: Any) -> None:
        self.tag = tag
        super().__init__(f"Unrecognized schema version annotation {tag!r}", tag=tag)


class StepExecutionFailedError(UsherError):
    """
    A migration step raised. The original exception is chained as __cause__
    and kept on `original`.
    """

    code = UsherErrorCode.STEP_EXECUTION_FAILED

    def __init__(self, version: int, direction: str, original: BaseException) -> None:
        self.version = version
        self.direction = direction
        self.original = original
        super().__init__(
            f"Migration step {direction}({version}) failed: {original}",
            version=version,
            direction=direction,
        )


def _summarize(errors: Sequence[FieldError]) -> str:
    if not errors:
        return InvitationValidationError.default_message
    return "; ".join(f"{e.field}: {e.message}" for e in errors)


def log_exception_with_context(
    message: str,
    *,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """
    Log an exception with stack trace and Usher context.

    Use this inside exception handlers before re-raising so the root cause
    lands in the host application's logs.

    Example:
        try:
            ...
        except Exception:
            log_exception_with_context(
                "usher_migration_step_failed",
                extra={"version": 3, "direction": "up"},
            )
            raise
    """
    payload: dict[str, Any] = {}
    if extra:
        payload.update(extra)

    # logger.exception includes the stack trace of the currently-handled exception
    details = " ".join(f"{k}={v}" for k, v in payload.items())
    logger.exception("%s %s", message, details, extra={"usher": payload})
