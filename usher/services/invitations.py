# usher/services/invitations.py
from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Tuple, Type
from urllib.parse import urlencode, urlsplit, urlunsplit

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from usher.core.config import DefaultExpiresIn, UsherSettings, get_settings
from usher.core.errors import (
    TOKEN_TAKEN_MESSAGE,
    FieldError,
    InvalidInvitationTokenError,
    InvitationExpiredError,
    InvitationNotFoundError,
    InvitationValidationError,
    NameRequiredError,
    TokenCollisionExhaustedError,
    TokenRequiredError,
)
from usher.models import Invitation
from usher.schemas import InvitationCreate, resolve_custom_attributes, validate_invitation
from usher.services.tokens import TokenGenerator, sign_token, verify_token_signature

logger = logging.getLogger("usher")

# 1 initial attempt + 4 retries
MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS = 5

INVITATION_TOKEN_QUERY_PARAM = "invitation_token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(start: datetime, months: int) -> datetime:
    # Calendar arithmetic; the day is clamped to the target month's length.
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_duration(start: datetime, amount: int, unit: str) -> datetime:
    """
    Add `amount` `unit`s to `start`. Units: second, minute, hour, day, week,
    month, year.
    """
    if unit == "month":
        return _add_months(start, amount)
    if unit == "year":
        return _add_months(start, amount * 12)
    if unit not in {"second", "minute", "hour", "day", "week"}:
        raise ValueError(f"unsupported duration unit: {unit!r}")
    return start + timedelta(**{f"{unit}s": amount})


def default_expiration(now: datetime, expires_in: DefaultExpiresIn) -> datetime:
    return add_duration(now, expires_in.amount, expires_in.unit)


def invitation_url(token: str, base_url: str) -> str:
    """
    Build the link handed to invitees, e.g.
    invitation_url("abc123", "https://example.com/signup")
    -> "https://example.com/signup?invitation_token=abc123"
    """
    parts = urlsplit(base_url)
    query = urlencode([(INVITATION_TOKEN_QUERY_PARAM, token)])
    return urlunsplit(parts._replace(query=query))


def _is_token_unique_violation(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return ("unique" in msg or "duplicate" in msg) and "token" in msg


class InvitationRepository:
    """
    Storage collaborator for invitation creation.

    Each insert is its own transaction: committed on success, rolled back on
    failure. A unique-token violation comes back as a field error instead of
    an IntegrityError; every other IntegrityError propagates.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def insert(self, record: InvitationCreate) -> Invitation:
        invitation = Invitation(
            token=record.token,
            name=record.name,
            expires_at=record.expires_at,
            custom_attributes=record.custom_attributes,
        )
        self.db.add(invitation)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if _is_token_unique_violation(exc):
                raise InvitationValidationError([FieldError("token", TOKEN_TAKEN_MESSAGE)]) from exc
            raise

        self.db.refresh(invitation)
        return invitation


class InvitationService:
    """
    Creates, looks up and validates invitations.

    Everything configurable comes in through the constructor: settings, the
    storage repository, the token generator, the clock and the custom
    attributes model.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[UsherSettings] = None,
        *,
        repository: Optional[InvitationRepository] = None,
        token_generator: Optional[TokenGenerator] = None,
        clock: Callable[[], datetime] = _utcnow,
        custom_attributes_model: Optional[Type[BaseModel]] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.repository = repository or InvitationRepository(db)
        self.token_generator = token_generator or TokenGenerator(self.settings.token_length)
        self.clock = clock
        self.custom_attributes_schema = resolve_custom_attributes(custom_attributes_model)

    # ---------- creation ----------

    def create_invitation(
        self,
        attrs: Optional[Mapping[str, Any]] = None,
        *,
        require_name: Optional[bool] = None,
    ) -> Invitation:
        """
        Create an invitation.

        - "token" given: inserted once, verbatim. A collision is an
          InvitationValidationError on the token field.
        - no "token": a token is generated and regenerated on collision, up to
          MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS inserts, then
          TokenCollisionExhaustedError.
        - "expires_at" absent: now + settings.default_expires_in.
          "expires_at": None is kept (never expires).
        """
        attrs = dict(attrs or {})
        token_provided = "token" in attrs
        now = self.clock()

        if "expires_at" not in attrs:
            attrs["expires_at"] = default_expiration(now, self.settings.default_expires_in)
        if not token_provided:
            attrs["token"] = self.token_generator.generate()

        if require_name is None:
            require_name = self.settings.name_required

        record = validate_invitation(
            attrs,
            now=now,
            require_name=require_name,
            custom_attributes=self.custom_attributes_schema,
        )

        if token_provided:
            return self.repository.insert(record)
        return self._insert_random_token_with_retry(record)

    def _insert_random_token_with_retry(self, record: InvitationCreate) -> Invitation:
        for attempt in range(1, MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS + 1):
            if attempt > 1:
                record = record.model_copy(update={"token": self.token_generator.generate()})

            try:
                return self.repository.insert(record)
            except InvitationValidationError as exc:
                if not exc.token_taken:
                    raise
                logger.warning(
                    "usher_token_collision attempt=%s max_attempts=%s",
                    attempt,
                    MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS,
                )

        logger.error(
            "usher_token_generation_exhausted attempts=%s",
            MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS,
        )
        raise TokenCollisionExhaustedError(MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS)

    def create_invitation_with_signed_token(
        self,
        attrs: Mapping[str, Any],
        *,
        require_name: Optional[bool] = None,
    ) -> Tuple[Invitation, str]:
        """
        Create an invitation from a caller-supplied token and return it with the
        token's signature. Requires settings.signing_secret.
        """
        token = (attrs or {}).get("token")
        if not isinstance(token, str) or not token:
            raise TokenRequiredError()

        secret = self.settings.signing_secret_required()
        invitation = self.create_invitation(attrs, require_name=require_name)
        return invitation, sign_token(token, secret)

    def sign_token(self, token: str) -> str:
        return sign_token(token, self.settings.signing_secret_required())

    def verify_token_signature(self, token: str, signature: str) -> str:
        return verify_token_signature(token, signature, self.settings.signing_secret_required())

    # ---------- lookups ----------

    def list_invitations(self) -> List[Invitation]:
        stmt = select(Invitation).order_by(Invitation.inserted_at.desc())
        return list(self.db.execute(stmt).scalars().all())

    def get_invitation(self, invitation_id: str) -> Invitation:
        invitation = self.db.get(Invitation, invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(invitation_id=invitation_id)
        return invitation

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        stmt = select(Invitation).where(Invitation.token == token)
        return self.db.execute(stmt).scalars().first()

    def validate_invitation_token(self, token: str, *, require_name: Optional[bool] = None) -> Invitation:
        """
        Return the invitation for `token` if it can be used right now.
        `require_name` defaults to settings.name_required.

        Raises InvalidInvitationTokenError, InvitationExpiredError or
        NameRequiredError.
        """
        invitation = self.get_invitation_by_token(token)
        if invitation is None:
            raise InvalidInvitationTokenError()

        if self.is_expired(invitation):
            raise InvitationExpiredError(invitation_id=invitation.id)

        if require_name is None:
            require_name = self.settings.name_required
        if require_name and invitation.name is None:
            raise NameRequiredError(invitation_id=invitation.id)

        return invitation

    def is_expired(self, invitation: Invitation) -> bool:
        if invitation.expires_at is None:
            return False
        return invitation.expires_at <= self.clock()

    def load_custom_attributes(self, invitation: Invitation) -> Any:
        return self.custom_attributes_schema.load(invitation.custom_attributes)

    # ---------- mutations ----------

    def increment_joined_count(self, invitation: Invitation) -> Invitation:
        self.db.execute(
            update(Invitation)
            .where(Invitation.id == invitation.id)
            .values(joined_count=Invitation.joined_count + 1, updated_at=self.clock())
        )
        self.db.commit()
        self.db.refresh(invitation)
        return invitation

    def delete_invitation(self, invitation: Invitation) -> Invitation:
        invitation_id = invitation.id
        self.db.delete(invitation)
        self.db.commit()
        logger.info("usher_invitation_deleted invitation_id=%s", invitation_id)
        return invitation
