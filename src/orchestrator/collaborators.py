"""Interfaces to the external systems the orchestrator drives.

The orchestrator never provisions or customizes accounts itself. It calls
these collaborators, which must be idempotent for the keys documented on
each method: re-issuing a call after a timeout resolves to the same
external operation instead of starting a second one.

Implementations raise TransientExternalError for failures that are safe to
retry and TerminalExternalError for everything else.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from .lifecycle import AccountRequest, SsoUser

logger = logging.getLogger(__name__)


# "Sandbox (ou-ab12-cdef3456)", the account factory's display form of an OU
_OU_DISPLAY_PATTERN = re.compile(r"^(?P<name>.+?)\s*\((?P<id>ou-[a-z0-9]+-[a-z0-9]+)\)$")


def parse_organizational_unit(value: str) -> tuple[str | None, str | None]:
    """Split an OU reference into (name, id); either part may be None."""
    value = value.strip()
    match = _OU_DISPLAY_PATTERN.match(value)
    if match:
        return match.group("name"), match.group("id")
    if value.startswith("ou-") or value.startswith("r-"):
        return None, value
    return value, None


@dataclass(frozen=True)
class ObservedAccount:
    """Account state as reported by the organization."""

    account_id: str
    email: str
    name: str
    organizational_unit: str
    tags: dict[str, str] = field(default_factory=dict)
    status: str = "ACTIVE"
    organizational_unit_id: str | None = None

    def in_organizational_unit(self, reference: str) -> bool:
        """Check the account's parent against an OU name, id or display form."""
        name, ou_id = parse_organizational_unit(reference)
        if ou_id is not None and self.organizational_unit_id is not None:
            return ou_id == self.organizational_unit_id
        return name == self.organizational_unit or ou_id == self.organizational_unit


class OrganizationDirectory(ABC):
    """Read (and tag) access to the account organization."""

    @abstractmethod
    async def organizational_unit_exists(self, organizational_unit: str) -> bool:
        """Check whether an OU with this name or id exists."""

    @abstractmethod
    async def find_account(self, account_id: str) -> ObservedAccount | None:
        """Describe an account by id, or None if it is not in the organization."""

    @abstractmethod
    async def find_account_by_email(self, email: str) -> ObservedAccount | None:
        """Describe the account registered with ``email``, if any."""

    @abstractmethod
    async def apply_tags(
        self, account_id: str, tags: dict[str, str], remove_keys: list[str] | None = None
    ) -> None:
        """Set ``tags`` on the account and remove ``remove_keys``. Idempotent."""


class AccountProvisioner(ABC):
    """Creates new accounts or adopts existing ones."""

    @abstractmethod
    async def provision_account(self, request: AccountRequest) -> str:
        """Create the account for ``request`` and return its account id.

        Keyed on ``request.account_email``: a repeated call for the same email
        returns the account created (or being created) by the first call.
        """

    @abstractmethod
    async def import_account(self, request: AccountRequest) -> str:
        """Adopt ``request.existing_account_id`` into managed state.

        Keyed on ``request.account_email`` and the existing account id.
        """

    @abstractmethod
    async def move_account(self, account_id: str, organizational_unit: str) -> None:
        """Place a managed account in ``organizational_unit``. Idempotent."""


class IdentityCenter(ABC):
    """Identity-provider user assignment."""

    @abstractmethod
    async def assign_user(self, account_id: str, user: SsoUser) -> None:
        """Ensure ``user`` exists and has access to ``account_id``. Idempotent."""


class CustomizationExecutor(ABC):
    """Runs named customization bundles against accounts."""

    @abstractmethod
    async def run_customizations(
        self,
        account_id: str,
        customization_name: str,
        custom_fields: dict[str, str],
        idempotency_key: str,
    ) -> None:
        """Run the bundle and wait for it to finish.

        A repeated call with the same ``idempotency_key`` attaches to the run
        started by the first call.
        """


@dataclass
class Collaborators:
    """The set of external systems wired into a reconciler."""

    directory: OrganizationDirectory
    provisioner: AccountProvisioner
    customizations: CustomizationExecutor
    identity: IdentityCenter | None = None


class NoopCustomizationExecutor(CustomizationExecutor):
    """Used when no customization runner is configured; every bundle is a no-op."""

    async def run_customizations(
        self,
        account_id: str,
        customization_name: str,
        custom_fields: dict[str, str],
        idempotency_key: str,
    ) -> None:
        logger.info(
            "No customization executor configured, skipping bundle",
            extra={"account_id": account_id, "customization_name": customization_name},
        )
