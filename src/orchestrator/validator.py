"""Pre-acceptance validation of account requests.

Checks run in a fixed order and stop at the first violation:
1. Required fields are present
2. Account email is well formed and not already in use
3. Organizational unit exists
4. For onboarding: the account exists and is not already managed

The validator has no side effects. It reads a snapshot of the store, so the
store re-checks email uniqueness atomically when the request is committed.
"""

from __future__ import annotations

import logging
import re

from .collaborators import OrganizationDirectory
from .errors import ValidationError
from .lifecycle import AccountMode, AccountRequest
from .store import RequestStore

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class Validator:
    """Validates account requests against the store and the organization."""

    def __init__(self, store: RequestStore, directory: OrganizationDirectory) -> None:
        self._store = store
        self._directory = directory

    async def validate(self, request: AccountRequest) -> None:
        """Validate a request.

        Raises:
            ValidationError: For the first violated constraint.
        """
        self._check_required_fields(request)
        self._check_email(request)
        await self._check_organizational_unit(request)
        if request.mode == AccountMode.EXISTING_ACCOUNT_ONBOARDING:
            await self._check_onboarding_account(request)

        logger.debug("Request validated", extra={"request_id": request.id})

    def _check_required_fields(self, request: AccountRequest) -> None:
        required = {
            "account_email": request.account_email,
            "account_name": request.account_name,
            "organizational_unit": request.organizational_unit,
            "customization_name": request.customization_name,
            "sso_user.email": request.sso_user.email,
            "sso_user.first_name": request.sso_user.first_name,
            "sso_user.last_name": request.sso_user.last_name,
        }
        if request.mode == AccountMode.EXISTING_ACCOUNT_ONBOARDING:
            required["existing_account_id"] = request.existing_account_id or ""

        for name, value in required.items():
            if not value or not value.strip():
                raise ValidationError(
                    f"Required field is missing: {name}",
                    code="missing_field",
                    request_id=request.id,
                )

    def _check_email(self, request: AccountRequest) -> None:
        for label, email in (
            ("account_email", request.account_email),
            ("sso_user.email", request.sso_user.email),
        ):
            if not EMAIL_PATTERN.match(email.strip()):
                raise ValidationError(
                    f"Invalid email format for {label}: {email}",
                    code="invalid_email",
                    request_id=request.id,
                )

        if self._store.email_in_use(request.account_email, exclude_request_id=request.id):
            raise ValidationError(
                f"Account email already in use: {request.account_email}",
                code="duplicate_email",
                request_id=request.id,
            )

    async def _check_organizational_unit(self, request: AccountRequest) -> None:
        if not await self._directory.organizational_unit_exists(request.organizational_unit):
            raise ValidationError(
                f"Organizational unit does not exist: {request.organizational_unit}",
                code="unknown_ou",
                request_id=request.id,
            )

    async def _check_onboarding_account(self, request: AccountRequest) -> None:
        # SAFETY: existing_account_id presence is checked in _check_required_fields
        account_id = request.existing_account_id or ""
        observed = await self._directory.find_account(account_id)
        if observed is None:
            raise ValidationError(
                f"Account {account_id} does not exist in the organization",
                code="unknown_account",
                request_id=request.id,
            )

        if self._store.accounts.get(account_id) is not None:
            raise ValidationError(
                f"Account {account_id} is already managed",
                code="already_managed",
                request_id=request.id,
            )
