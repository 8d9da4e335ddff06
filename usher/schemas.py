# usher/schemas.py

"""
Validation layer for invitation and usage records.

Services never hand raw dicts to the repository: attributes go through the
pydantic models below and every failure is reported as FieldError values on
an InvitationValidationError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

from usher.core.errors import FieldError, InvitationValidationError

BLANK_MESSAGE = "can't be blank"


def _as_utc_aware(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def enum_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def field_errors_from(exc: ValidationError, *, prefix: Optional[str] = None) -> List[FieldError]:
    """
    Flatten a pydantic ValidationError into FieldError values.
    """
    out: List[FieldError] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())]
        if prefix:
            loc.insert(0, prefix)
        field = ".".join(loc) or "__root__"

        err_type = err.get("type")
        if err_type == "missing":
            message = BLANK_MESSAGE
        elif err_type == "extra_forbidden":
            message = "is not a permitted field"
        else:
            message = err.get("msg", "is invalid")
        out.append(FieldError(field, message))
    return out


# ---------- Custom attributes ----------

class CustomAttributesSchema:
    """
    Decides how the custom_attributes payload is validated and loaded.

    Resolved once when a service is built: either GenericCustomAttributes
    (any JSON object) or TypedCustomAttributes(model).
    """

    def dump(self, value: Any) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def load(self, stored: Optional[Dict[str, Any]]) -> Any:
        raise NotImplementedError


class GenericCustomAttributes(CustomAttributesSchema):
    def dump(self, value: Any) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        if not isinstance(value, Mapping):
            raise InvitationValidationError(
                [FieldError("custom_attributes", "must be a map")]
            )
        return dict(value)

    def load(self, stored: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return None if stored is None else dict(stored)


class TypedCustomAttributes(CustomAttributesSchema):
    def __init__(self, model: Type[BaseModel]) -> None:
        self.model = model

    def dump(self, value: Any) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        if isinstance(value, self.model):
            return value.model_dump(mode="json")
        try:
            return self.model.model_validate(value).model_dump(mode="json")
        except ValidationError as exc:
            raise InvitationValidationError(field_errors_from(exc, prefix="custom_attributes"))

    def load(self, stored: Optional[Dict[str, Any]]) -> Optional[BaseModel]:
        if stored is None:
            return None
        return self.model.model_validate(stored)


def resolve_custom_attributes(model: Optional[Type[BaseModel]] = None) -> CustomAttributesSchema:
    if model is None:
        return GenericCustomAttributes()
    return TypedCustomAttributes(model)


# ---------- Invitations ----------

class InvitationCreate(BaseModel):
    """
    Attributes accepted when creating an invitation.

    Validation context:
    - now: datetime the expiration is compared against
    """

    model_config = ConfigDict(extra="forbid")

    token: str
    name: Optional[str] = None
    expires_at: Optional[datetime] = None
    custom_attributes: Optional[Any] = None

    @field_validator("token")
    @classmethod
    def _token_not_blank(cls, v: str) -> str:
        if _is_blank(v):
            raise PydanticCustomError("blank", BLANK_MESSAGE)
        return v

    @field_validator("expires_at")
    @classmethod
    def _future_date(cls, v: Optional[datetime], info: ValidationInfo) -> Optional[datetime]:
        if v is None:
            return None
        v = _as_utc_aware(v)
        now = (info.context or {}).get("now") or datetime.now(timezone.utc)
        if v <= _as_utc_aware(now):
            raise PydanticCustomError("future_date", "must be in the future")
        return v


def validate_invitation(
    attrs: Mapping[str, Any],
    *,
    now: datetime,
    require_name: bool,
    custom_attributes: CustomAttributesSchema,
) -> InvitationCreate:
    """
    Validate candidate invitation attributes, raising InvitationValidationError
    with every field-level violation found.
    """
    errors: List[FieldError] = []
    record: Optional[InvitationCreate] = None

    try:
        record = InvitationCreate.model_validate(dict(attrs), context={"now": now})
    except ValidationError as exc:
        errors.extend(field_errors_from(exc))

    if require_name and _is_blank(attrs.get("name")):
        errors.append(FieldError("name", BLANK_MESSAGE))

    if record is not None and record.custom_attributes is not None:
        try:
            record = record.model_copy(
                update={"custom_attributes": custom_attributes.dump(record.custom_attributes)}
            )
        except InvitationValidationError as exc:
            errors.extend(exc.errors)

    if errors:
        raise InvitationValidationError(_dedupe(errors))
    return record


# ---------- Invitation usages ----------

class InvitationUsageCreate(BaseModel):
    """
    Attributes of a usage record.

    Validation context:
    - valid_entity_types: allowed entity_type values (None = any)
    - valid_actions: allowed action values (None = any)
    """

    model_config = ConfigDict(extra="forbid")

    invitation_id: str
    entity_type: str
    entity_id: str
    action: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity_type", "action", "entity_id", mode="before")
    @classmethod
    def _coerce_scalar(cls, v: Any) -> Any:
        v = enum_value(v)
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("invitation_id", "entity_type", "entity_id", "action")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if _is_blank(v):
            raise PydanticCustomError("blank", BLANK_MESSAGE)
        return v

    @field_validator("entity_type")
    @classmethod
    def _known_entity_type(cls, v: str, info: ValidationInfo) -> str:
        return _check_allowed(v, (info.context or {}).get("valid_entity_types"))

    @field_validator("action")
    @classmethod
    def _known_action(cls, v: str, info: ValidationInfo) -> str:
        return _check_allowed(v, (info.context or {}).get("valid_actions"))

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v


def _check_allowed(value: str, allowed: Optional[Sequence[str]]) -> str:
    if allowed is None or value in allowed:
        return value
    raise PydanticCustomError(
        "not_allowed",
        "must be one of: {allowed}",
        {"allowed": ", ".join(allowed)},
    )


def validate_usage(
    attrs: Mapping[str, Any],
    *,
    valid_entity_types: Optional[Sequence[str]] = None,
    valid_actions: Optional[Sequence[str]] = None,
) -> InvitationUsageCreate:
    try:
        return InvitationUsageCreate.model_validate(
            dict(attrs),
            context={"valid_entity_types": valid_entity_types, "valid_actions": valid_actions},
        )
    except ValidationError as exc:
        raise InvitationValidationError(field_errors_from(exc))


def _dedupe(errors: Sequence[FieldError]) -> List[FieldError]:
    seen = set()
    out: List[FieldError] = []
    for e in errors:
        if e in seen:
            continue
        seen.add(e)
        out.append(e)
    return out
