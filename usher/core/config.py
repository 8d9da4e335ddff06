# usher/core/config.py
from __future__ import annotations

from functools import lru_cache
from json import JSONDecodeError, loads as json_loads
from typing import Annotated, Any, List, Literal, Optional

from pydantic import BaseModel, Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from usher.core.errors import ConfigurationError

DurationUnit = Literal["second", "minute", "hour", "day", "week", "month", "year"]

DURATION_UNITS = ("second", "minute", "hour", "day", "week", "month", "year")


def _maybe_json(raw: str) -> Any:
    raw = raw.strip()
    if (raw.startswith("[") and raw.endswith("]")) or (raw.startswith("{") and raw.endswith("}")):
        try:
            return json_loads(raw)
        except JSONDecodeError:
            # Fall back to plain-text parsing if JSON is malformed
            return raw
    return raw


class DefaultExpiresIn(BaseModel):
    """
    Amount + unit added to "now" when an invitation is created without an
    explicit expiration.

    Accepted inputs:
    - DefaultExpiresIn(amount=7, unit="day")
    - (7, "day") / [7, "days"]
    - "7 day" / "7 days" / "7,day"
    - JSON: '[7, "day"]' or '{"amount": 7, "unit": "day"}'
    """

    model_config = {"frozen": True}

    amount: PositiveInt = 7
    unit: DurationUnit = "day"

    @model_validator(mode="before")
    @classmethod
    def _coerce_pair(cls, data: Any) -> Any:
        if isinstance(data, str):
            data = _maybe_json(data)

        if isinstance(data, (tuple, list)):
            if len(data) != 2:
                raise ValueError("default_expires_in must be an (amount, unit) pair")
            data = {"amount": data[0], "unit": data[1]}
        elif isinstance(data, str):
            parts = data.replace(",", " ").split()
            if len(parts) != 2:
                raise ValueError("default_expires_in must look like '7 day'")
            data = {"amount": parts[0], "unit": parts[1]}

        if isinstance(data, dict) and isinstance(data.get("unit"), str):
            unit = data["unit"].strip().lower()
            # Accept plural spellings ("days", "hours", ...)
            if unit.endswith("s") and unit[:-1] in DURATION_UNITS:
                unit = unit[:-1]
            data = {**data, "unit": unit}
        return data


class UsherSettings(BaseSettings):
    """
    Central configuration for Usher.

    Values come from keyword arguments, environment variables (USHER_*) or a
    local .env file. Components take an instance explicitly; get_settings()
    only builds the default one.
    """

    # - env_prefix: USHER_TOKEN_LENGTH, USHER_DEFAULT_EXPIRES_IN, ...
    # - extra="ignore": tolerate unrelated entries in a shared .env
    model_config = SettingsConfigDict(
        env_prefix="USHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database (used by the CLI and create_usher_engine)
    database_url: str = Field(
        default="sqlite:///./usher.db",
        description="SQLAlchemy-style DB URL (SQLite for dev, Postgres in prod).",
    )

    # Tokens
    token_length: int = Field(
        default=16,
        gt=0,
        description="Length of auto-generated invitation tokens.",
    )
    default_expires_in: Annotated[DefaultExpiresIn, NoDecode] = Field(
        default_factory=DefaultExpiresIn,
        description="Expiration applied when an invitation is created without expires_at.",
    )
    signing_secret: Optional[str] = Field(
        default=None,
        description="HMAC secret used to sign caller-supplied tokens. Required only for signing.",
    )

    # Tables (passed through to the migration engine unmodified)
    table_name: str = Field(default="usher_invitations")
    usages_table_name: str = Field(default="usher_invitation_usages")
    prefix: Optional[str] = Field(
        default=None,
        description="Database schema holding the Usher tables. None means the default schema.",
    )

    # Validations
    name_required: bool = Field(
        default=False,
        description="If true, invitations must carry a name unless require_name=False is passed.",
    )
    valid_usage_entity_types: Annotated[Optional[List[str]], NoDecode] = Field(
        default=None,
        description=(
            "Allowed entity types for usage tracking. None disables the check. "
            'Env accepts "user,company" or a JSON list.'
        ),
    )
    valid_usage_actions: Annotated[Optional[List[str]], NoDecode] = Field(
        default=None,
        description="Allowed actions for usage tracking. None disables the check.",
    )

    # DB observability
    slow_db_query_ms: float = Field(default=250.0)
    log_db_sql: bool = Field(default=False)

    @field_validator("valid_usage_entity_types", "valid_usage_actions", mode="before")
    @classmethod
    def _split_names(cls, value: Any) -> Any:
        """
        Normalize a comma-separated string or JSON array into a list of names.
        """
        if value is None:
            return None
        if isinstance(value, str):
            parsed = _maybe_json(value)
            if isinstance(parsed, list):
                value = parsed
            else:
                value = [v for v in str(parsed).split(",")]
        return [str(v).strip() for v in value if str(v).strip()]

    def signing_secret_required(self) -> str:
        """
        Return the signing secret or raise ConfigurationError if it is missing.
        """
        if not self.signing_secret:
            raise ConfigurationError(
                "No signing_secret configured for Usher. Set USHER_SIGNING_SECRET "
                "or pass signing_secret=... to UsherSettings."
            )
        return self.signing_secret

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> UsherSettings:
    """
    Cached settings instance so the environment is only parsed once.
    """
    return UsherSettings()
