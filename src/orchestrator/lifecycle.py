"""Account request lifecycle: states, allowed transitions and records.

State machine:

    Submitted -> Validated -> Provisioning | Importing -> Customizing -> Managed

Failed is reachable from every non-terminal state. Retrying is a transient
sub-state of Provisioning, Importing and Customizing; a request in Retrying
always returns to the phase recorded in ``retry_phase``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class RequestState(str, Enum):
    """Lifecycle states of an account request."""

    SUBMITTED = "Submitted"
    VALIDATED = "Validated"
    PROVISIONING = "Provisioning"
    IMPORTING = "Importing"
    CUSTOMIZING = "Customizing"
    RETRYING = "Retrying"
    MANAGED = "Managed"
    FAILED = "Failed"


class AccountMode(str, Enum):
    """How the account enters management."""

    NEW_ACCOUNT = "NewAccount"
    EXISTING_ACCOUNT_ONBOARDING = "ExistingAccountOnboarding"


TERMINAL_STATES: frozenset[RequestState] = frozenset({RequestState.MANAGED, RequestState.FAILED})

# Phases that call external collaborators and may therefore enter Retrying
RETRYABLE_PHASES: frozenset[RequestState] = frozenset(
    {RequestState.PROVISIONING, RequestState.IMPORTING, RequestState.CUSTOMIZING}
)

ALLOWED_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.SUBMITTED: frozenset({RequestState.VALIDATED, RequestState.FAILED}),
    RequestState.VALIDATED: frozenset(
        {RequestState.PROVISIONING, RequestState.IMPORTING, RequestState.FAILED}
    ),
    RequestState.PROVISIONING: frozenset(
        {RequestState.CUSTOMIZING, RequestState.RETRYING, RequestState.FAILED}
    ),
    RequestState.IMPORTING: frozenset(
        {RequestState.CUSTOMIZING, RequestState.RETRYING, RequestState.FAILED}
    ),
    RequestState.CUSTOMIZING: frozenset(
        {RequestState.MANAGED, RequestState.RETRYING, RequestState.FAILED}
    ),
    RequestState.RETRYING: frozenset(RETRYABLE_PHASES | {RequestState.FAILED}),
    RequestState.MANAGED: frozenset(),
    RequestState.FAILED: frozenset(),
}


def can_transition(from_state: RequestState, to_state: RequestState) -> bool:
    """Check whether the state machine allows ``from_state -> to_state``."""
    return to_state in ALLOWED_TRANSITIONS[from_state]


def is_terminal(state: RequestState) -> bool:
    """Managed and Failed end a request's lifecycle."""
    return state in TERMINAL_STATES


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def new_request_id() -> str:
    """Generate an opaque request identifier."""
    return f"req-{uuid.uuid4().hex}"


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness comparisons."""
    return email.strip().lower()


@dataclass(frozen=True)
class SsoUser:
    """Identity Center user granted access to the new account."""

    email: str
    first_name: str
    last_name: str

    def to_dict(self) -> dict[str, str]:
        return {"email": self.email, "first_name": self.first_name, "last_name": self.last_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SsoUser:
        return cls(
            email=data.get("email", ""),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
        )


@dataclass
class AccountRequest:
    """A request to create or onboard an account.

    Instances handed out by the store are copies; mutate persisted state only
    through ``RequestStore.update_state``.
    """

    account_email: str
    account_name: str
    organizational_unit: str
    sso_user: SsoUser
    customization_name: str
    mode: AccountMode = AccountMode.NEW_ACCOUNT
    tags: dict[str, str] = field(default_factory=dict)
    custom_fields: dict[str, str] = field(default_factory=dict)
    change_management: dict[str, str] = field(default_factory=dict)
    existing_account_id: str | None = None
    # Request file this request was loaded from, and the SHA-256 of its content
    source: str | None = None
    source_digest: str | None = None

    id: str = field(default_factory=new_request_id)
    state: RequestState = RequestState.SUBMITTED
    retry_phase: RequestState | None = None
    account_id: str | None = None
    failure_reason: str | None = None
    last_error: str | None = None
    withdrawn: bool = False
    version: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def email_key(self) -> str:
        return normalize_email(self.account_email)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)

    def copy(self, **changes: Any) -> AccountRequest:
        """Return a detached copy, optionally with fields replaced."""
        fields: dict[str, Any] = {
            "tags": dict(self.tags),
            "custom_fields": dict(self.custom_fields),
            "change_management": dict(self.change_management),
        }
        fields.update(changes)
        return replace(self, **fields)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "account_email": self.account_email,
            "account_name": self.account_name,
            "organizational_unit": self.organizational_unit,
            "sso_user": self.sso_user.to_dict(),
            "customization_name": self.customization_name,
            "mode": self.mode.value,
            "tags": dict(self.tags),
            "custom_fields": dict(self.custom_fields),
            "change_management": dict(self.change_management),
            "existing_account_id": self.existing_account_id,
            "source": self.source,
            "source_digest": self.source_digest,
            "state": self.state.value,
            "retry_phase": self.retry_phase.value if self.retry_phase else None,
            "account_id": self.account_id,
            "failure_reason": self.failure_reason,
            "last_error": self.last_error,
            "withdrawn": self.withdrawn,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountRequest:
        """Create from dictionary."""
        retry_phase = data.get("retry_phase")
        return cls(
            id=data["id"],
            account_email=data["account_email"],
            account_name=data["account_name"],
            organizational_unit=data["organizational_unit"],
            sso_user=SsoUser.from_dict(data.get("sso_user", {})),
            customization_name=data["customization_name"],
            mode=AccountMode(data.get("mode", AccountMode.NEW_ACCOUNT.value)),
            tags=dict(data.get("tags", {})),
            custom_fields=dict(data.get("custom_fields", {})),
            change_management=dict(data.get("change_management", {})),
            existing_account_id=data.get("existing_account_id"),
            source=data.get("source"),
            source_digest=data.get("source_digest"),
            state=RequestState(data["state"]),
            retry_phase=RequestState(retry_phase) if retry_phase else None,
            account_id=data.get("account_id"),
            failure_reason=data.get("failure_reason"),
            last_error=data.get("last_error"),
            withdrawn=data.get("withdrawn", False),
            version=data.get("version", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class ManagedAccount:
    """An account under management and the desired state recorded for it."""

    account_id: str
    account_email: str
    account_name: str
    request_id: str
    organizational_unit: str
    tags: dict[str, str] = field(default_factory=dict)
    customization_name: str = ""
    custom_fields: dict[str, str] = field(default_factory=dict)
    last_drift_check: datetime | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def email_key(self) -> str:
        return normalize_email(self.account_email)

    def copy(self, **changes: Any) -> ManagedAccount:
        fields: dict[str, Any] = {
            "tags": dict(self.tags),
            "custom_fields": dict(self.custom_fields),
        }
        fields.update(changes)
        return replace(self, **fields)

    @classmethod
    def from_request(cls, request: AccountRequest) -> ManagedAccount:
        """Record the desired state of a request that finished customizing."""
        if request.account_id is None:
            raise ValueError(f"Request {request.id} has no account id")
        return cls(
            account_id=request.account_id,
            account_email=request.account_email,
            account_name=request.account_name,
            request_id=request.id,
            organizational_unit=request.organizational_unit,
            tags=dict(request.tags),
            customization_name=request.customization_name,
            custom_fields=dict(request.custom_fields),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "account_email": self.account_email,
            "account_name": self.account_name,
            "request_id": self.request_id,
            "organizational_unit": self.organizational_unit,
            "tags": dict(self.tags),
            "customization_name": self.customization_name,
            "custom_fields": dict(self.custom_fields),
            "last_drift_check": (
                self.last_drift_check.isoformat() if self.last_drift_check else None
            ),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManagedAccount:
        return cls(
            account_id=data["account_id"],
            account_email=data["account_email"],
            account_name=data["account_name"],
            request_id=data["request_id"],
            organizational_unit=data["organizational_unit"],
            tags=dict(data.get("tags", {})),
            customization_name=data.get("customization_name", ""),
            custom_fields=dict(data.get("custom_fields", {})),
            last_drift_check=_parse_datetime(data.get("last_drift_check")),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
