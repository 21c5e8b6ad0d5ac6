"""Pydantic models for account request submissions.

These models provide:
1. Type-safe YAML/JSON parsing of account request files
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to the AccountRequest lifecycle record

Key names follow the account request file format: ``control_tower_parameters``
uses the PascalCase keys of the account factory, the other sections are
snake_case.
"""

from __future__ import annotations

import json
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .lifecycle import AccountMode, AccountRequest, SsoUser

# AWS tag limits
MAX_TAG_KEY_LENGTH = 128
MAX_TAG_VALUE_LENGTH = 256
MAX_TAGS_PER_ACCOUNT = 50

ACCOUNT_ID_PATTERN = r"^\d{12}$"


class ControlTowerParameters(BaseModel):
    """Account factory parameters for the requested account."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    account_email: str = Field(alias="AccountEmail")
    account_name: str = Field(alias="AccountName")
    managed_organizational_unit: str = Field(alias="ManagedOrganizationalUnit")
    sso_user_email: str = Field(alias="SSOUserEmail")
    sso_user_first_name: str = Field(alias="SSOUserFirstName")
    sso_user_last_name: str = Field(alias="SSOUserLastName")

    @field_validator("*")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()


class OnboardingConfig(BaseModel):
    """Selects existing-account onboarding instead of account creation."""

    model_config = {"extra": "forbid"}

    account_id: Annotated[str, Field(pattern=ACCOUNT_ID_PATTERN)]

    @field_validator("account_id", mode="before")
    @classmethod
    def coerce_account_id(cls, v: Any) -> Any:
        # YAML reads unquoted account ids as integers (and drops leading zeros)
        if isinstance(v, int) and not isinstance(v, bool):
            return f"{v:012d}"
        return v


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True)


class AccountRequestSpec(BaseModel):
    """An account request as submitted by a requester."""

    model_config = {"extra": "ignore"}

    control_tower_parameters: ControlTowerParameters
    account_tags: dict[str, str] = Field(default_factory=dict)
    # Audit metadata: stored with the request, never validated or acted upon
    change_management_parameters: dict[str, str] = Field(default_factory=dict)
    custom_fields: dict[str, str] = Field(default_factory=dict)
    account_customizations_name: str
    onboarding: OnboardingConfig | None = None

    @field_validator("account_tags")
    @classmethod
    def validate_tags(cls, v: dict[str, str]) -> dict[str, str]:
        if len(v) > MAX_TAGS_PER_ACCOUNT:
            raise ValueError(f"at most {MAX_TAGS_PER_ACCOUNT} tags are allowed")
        for key, value in v.items():
            if not key or len(key) > MAX_TAG_KEY_LENGTH:
                raise ValueError(f"tag key must be 1-{MAX_TAG_KEY_LENGTH} characters: {key!r}")
            if key.lower().startswith("aws:"):
                raise ValueError(f"tag key must not use the reserved 'aws:' prefix: {key}")
            if len(value) > MAX_TAG_VALUE_LENGTH:
                raise ValueError(f"tag value for {key} exceeds {MAX_TAG_VALUE_LENGTH} characters")
        return v

    @field_validator(
        "account_tags", "custom_fields", "change_management_parameters", mode="before"
    )
    @classmethod
    def coerce_values_to_str(cls, v: Any) -> Any:
        # Request files commonly carry numbers, booleans or nested values here
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): _stringify(val) for k, val in v.items()}
        return v

    @field_validator("account_customizations_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()

    @property
    def mode(self) -> AccountMode:
        if self.onboarding is not None:
            return AccountMode.EXISTING_ACCOUNT_ONBOARDING
        return AccountMode.NEW_ACCOUNT

    def to_request(self) -> AccountRequest:
        """Convert to a new AccountRequest in the Submitted state."""
        params = self.control_tower_parameters
        return AccountRequest(
            account_email=params.account_email,
            account_name=params.account_name,
            organizational_unit=params.managed_organizational_unit,
            sso_user=SsoUser(
                email=params.sso_user_email,
                first_name=params.sso_user_first_name,
                last_name=params.sso_user_last_name,
            ),
            customization_name=self.account_customizations_name,
            mode=self.mode,
            tags=dict(self.account_tags),
            custom_fields=dict(self.custom_fields),
            change_management=dict(self.change_management_parameters),
            existing_account_id=self.onboarding.account_id if self.onboarding else None,
        )
