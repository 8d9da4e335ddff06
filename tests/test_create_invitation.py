# tests/test_create_invitation.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from pydantic import BaseModel

from usher.core.config import UsherSettings
from usher.core.errors import (
    TOKEN_TAKEN_MESSAGE,
    FieldError,
    InvitationValidationError,
    TokenCollisionExhaustedError,
    UsherErrorCode,
)
from usher.models import Invitation
from usher.services.invitations import (
    MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS,
    InvitationService,
    add_duration,
)


class StubRepository:
    """
    Stands in for InvitationRepository: the first `collisions` inserts fail
    with a token uniqueness error, the rest succeed.
    """

    def __init__(self, collisions: int = 0, error: FieldError | None = None) -> None:
        self.collisions = collisions
        self.error = error or FieldError("token", TOKEN_TAKEN_MESSAGE)
        self.records = []

    @property
    def tokens(self):
        return [r.token for r in self.records]

    def insert(self, record):
        self.records.append(record)
        if len(self.records) <= self.collisions:
            raise InvitationValidationError([self.error])
        return Invitation(
            id="inv-1",
            token=record.token,
            name=record.name,
            expires_at=record.expires_at,
            custom_attributes=record.custom_attributes,
        )


class SequentialTokens:
    def __init__(self) -> None:
        self._n = count(1)

    def generate(self) -> str:
        return f"token{next(self._n):04d}"


def _service(settings, clock, repository, **kwargs) -> InvitationService:
    kwargs.setdefault("token_generator", SequentialTokens())
    return InvitationService(None, settings, repository=repository, clock=clock, **kwargs)


# ---------- retry protocol ----------

def test_retries_until_a_token_is_free(settings, clock, caplog):
    repo = StubRepository(collisions=4)

    with caplog.at_level(logging.WARNING, logger="usher"):
        invitation = _service(settings, clock, repo).create_invitation({})

    assert len(repo.tokens) == 5
    assert len(set(repo.tokens)) == 5
    assert invitation.token == repo.tokens[-1]
    assert sum("usher_token_collision" in r.getMessage() for r in caplog.records) == 4


def test_gives_up_after_five_attempts(settings, clock):
    repo = StubRepository(collisions=100)

    with pytest.raises(TokenCollisionExhaustedError) as exc_info:
        _service(settings, clock, repo).create_invitation({})

    assert MAX_RANDOM_TOKEN_GENERATE_ATTEMPTS == 5
    assert len(repo.records) == 5
    assert exc_info.value.attempts == 5
    assert exc_info.value.code == UsherErrorCode.TOO_MANY_TOKEN_GENERATE_ATTEMPTS
    # Exhaustion is distinguishable from ordinary validation failures
    assert not isinstance(exc_info.value, InvitationValidationError)


def test_caller_token_is_tried_once(settings, clock):
    repo = StubRepository(collisions=100)

    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, repo).create_invitation({"token": "my-token"})

    assert repo.tokens == ["my-token"]
    assert exc_info.value.token_taken
    assert exc_info.value.messages_for("token") == [TOKEN_TAKEN_MESSAGE]


def test_caller_token_is_stored_verbatim(settings, clock):
    repo = StubRepository()

    invitation = _service(settings, clock, repo).create_invitation({"token": "Welcome-2025"})

    assert invitation.token == "Welcome-2025"
    assert repo.tokens == ["Welcome-2025"]


def test_other_storage_errors_are_not_retried(settings, clock):
    repo = StubRepository(collisions=100, error=FieldError("name", "is too long"))

    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, repo).create_invitation({})

    assert len(repo.records) == 1
    assert exc_info.value.messages_for("name") == ["is too long"]


def test_generated_token_uses_configured_length(clock):
    settings = UsherSettings(_env_file=None, token_length=24)
    repo = StubRepository()

    invitation = InvitationService(None, settings, repository=repo, clock=clock).create_invitation()

    assert len(invitation.token) == 24
    assert invitation.token.isalnum()


# ---------- expiration ----------

def test_expiration_defaults_to_seven_days(settings, clock, now):
    invitation = _service(settings, clock, StubRepository()).create_invitation({})

    assert invitation.expires_at == now + timedelta(days=7)


def test_explicit_none_expiration_is_kept(settings, clock):
    invitation = _service(settings, clock, StubRepository()).create_invitation({"expires_at": None})

    assert invitation.expires_at is None


def test_explicit_expiration_is_kept(settings, clock, now):
    expires_at = now + timedelta(hours=3)

    invitation = _service(settings, clock, StubRepository()).create_invitation({"expires_at": expires_at})

    assert invitation.expires_at == expires_at


def test_naive_expiration_is_treated_as_utc(settings, clock):
    invitation = _service(settings, clock, StubRepository()).create_invitation(
        {"expires_at": datetime(2025, 2, 1, 9, 30)}
    )

    assert invitation.expires_at == datetime(2025, 2, 1, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("offset", [timedelta(0), timedelta(days=-1)])
def test_expiration_must_be_in_the_future(settings, clock, now, offset):
    repo = StubRepository()

    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, repo).create_invitation({"expires_at": now + offset})

    assert exc_info.value.messages_for("expires_at") == ["must be in the future"]
    assert repo.records == []


def test_configured_default_expiration(clock, now):
    settings = UsherSettings(_env_file=None, default_expires_in=(2, "hours"))

    invitation = _service(settings, clock, StubRepository()).create_invitation({})

    assert invitation.expires_at == now + timedelta(hours=2)


@pytest.mark.parametrize(
    "start, amount, unit, expected",
    [
        (datetime(2025, 1, 31, tzinfo=timezone.utc), 1, "month", datetime(2025, 2, 28, tzinfo=timezone.utc)),
        (datetime(2024, 1, 31, tzinfo=timezone.utc), 1, "month", datetime(2024, 2, 29, tzinfo=timezone.utc)),
        (datetime(2025, 11, 15, tzinfo=timezone.utc), 3, "month", datetime(2026, 2, 15, tzinfo=timezone.utc)),
        (datetime(2024, 2, 29, tzinfo=timezone.utc), 1, "year", datetime(2025, 2, 28, tzinfo=timezone.utc)),
        (datetime(2025, 1, 1, tzinfo=timezone.utc), 2, "week", datetime(2025, 1, 15, tzinfo=timezone.utc)),
        (datetime(2025, 1, 1, tzinfo=timezone.utc), 90, "second", datetime(2025, 1, 1, 0, 1, 30, tzinfo=timezone.utc)),
    ],
)
def test_add_duration(start, amount, unit, expected):
    assert add_duration(start, amount, unit) == expected


def test_add_duration_rejects_unknown_unit():
    with pytest.raises(ValueError):
        add_duration(datetime(2025, 1, 1, tzinfo=timezone.utc), 1, "fortnight")


# ---------- validation ----------

def test_empty_attrs_are_enough(settings, clock):
    invitation = _service(settings, clock, StubRepository()).create_invitation({})

    assert invitation.name is None
    assert invitation.token == "token0001"


@pytest.mark.parametrize("token", ["", "   ", None])
def test_blank_caller_token_is_rejected(settings, clock, token):
    repo = StubRepository()

    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, repo).create_invitation({"token": token})

    assert exc_info.value.messages_for("token")
    assert repo.records == []


def test_unknown_attributes_are_rejected(settings, clock):
    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, StubRepository()).create_invitation({"max_uses": 3})

    assert exc_info.value.messages_for("max_uses") == ["is not a permitted field"]


def test_name_required_by_settings(clock):
    settings = UsherSettings(_env_file=None, name_required=True)
    service = _service(settings, clock, StubRepository())

    with pytest.raises(InvitationValidationError) as exc_info:
        service.create_invitation({})
    assert exc_info.value.messages_for("name") == ["can't be blank"]

    # Per-call override
    assert service.create_invitation({}, require_name=False).name is None
    assert service.create_invitation({"name": "Beta testers"}).name == "Beta testers"


def test_require_name_per_call(settings, clock):
    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, StubRepository()).create_invitation({"name": "  "}, require_name=True)

    assert exc_info.value.messages_for("name") == ["can't be blank"]


def test_all_field_errors_reported_together(clock, now):
    settings = UsherSettings(_env_file=None, name_required=True)

    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, StubRepository()).create_invitation(
            {"token": "", "expires_at": now - timedelta(days=1)}
        )

    fields = {e.field for e in exc_info.value.errors}
    assert fields == {"token", "expires_at", "name"}
    payload = exc_info.value.to_dict()
    assert payload["code"] == "VALIDATION_FAILED"
    assert len(payload["errors"]) == 3


# ---------- custom attributes ----------

class TeamAttributes(BaseModel):
    team: str
    seats: int = 1


def test_generic_custom_attributes_stored_as_given(settings, clock):
    service = _service(settings, clock, StubRepository())

    invitation = service.create_invitation({"custom_attributes": {"plan": "pro", "tags": ["a"]}})

    assert invitation.custom_attributes == {"plan": "pro", "tags": ["a"]}
    assert service.load_custom_attributes(invitation) == {"plan": "pro", "tags": ["a"]}


def test_generic_custom_attributes_must_be_a_map(settings, clock):
    with pytest.raises(InvitationValidationError) as exc_info:
        _service(settings, clock, StubRepository()).create_invitation({"custom_attributes": ["a"]})

    assert exc_info.value.messages_for("custom_attributes") == ["must be a map"]


def test_typed_custom_attributes(settings, clock):
    service = _service(settings, clock, StubRepository(), custom_attributes_model=TeamAttributes)

    invitation = service.create_invitation({"custom_attributes": {"team": "growth"}})

    assert invitation.custom_attributes == {"team": "growth", "seats": 1}
    loaded = service.load_custom_attributes(invitation)
    assert isinstance(loaded, TeamAttributes)
    assert loaded.team == "growth"


def test_typed_custom_attributes_accept_model_instances(settings, clock):
    service = _service(settings, clock, StubRepository(), custom_attributes_model=TeamAttributes)

    invitation = service.create_invitation({"custom_attributes": TeamAttributes(team="ops", seats=4)})

    assert invitation.custom_attributes == {"team": "ops", "seats": 4}


def test_typed_custom_attributes_validation_errors(settings, clock):
    repo = StubRepository()
    service = _service(settings, clock, repo, custom_attributes_model=TeamAttributes)

    with pytest.raises(InvitationValidationError) as exc_info:
        service.create_invitation({"custom_attributes": {"seats": "many"}})

    fields = {e.field for e in exc_info.value.errors}
    assert fields == {"custom_attributes.team", "custom_attributes.seats"}
    assert exc_info.value.messages_for("custom_attributes.team") == ["can't be blank"]
    assert repo.records == []
