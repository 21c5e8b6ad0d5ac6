"""Request store and managed account registry.

The store is the only place request state is mutated. Every mutation is a
short critical section, and state changes are optimistic compare-and-swap
operations: ``update_state`` succeeds only if the persisted state still
equals the caller's ``expected_state``. Concurrent reconcilers therefore
never lose updates, and there is no lock held across external calls.

Email uniqueness is enforced three times:
1. the Validator checks a snapshot before persistence;
2. ``create`` re-checks atomically when inserting;
3. the transition into Provisioning/Importing re-checks atomically.

When a state file is configured, the full store (requests and managed
accounts) is written as a JSON snapshot after every committed mutation and
reloaded at start-up.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import ConflictError, InvalidTransitionError, RequestNotFoundError, ValidationError
from .lifecycle import (
    AccountRequest,
    ManagedAccount,
    RequestState,
    can_transition,
    normalize_email,
)

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1

# Fields update_state may change alongside the state itself
_MUTABLE_FIELDS = frozenset(
    {"retry_phase", "account_id", "failure_reason", "last_error", "withdrawn"}
)


class AccountRegistry:
    """The set of accounts under management, keyed by account id.

    Shares the owning store's lock and persistence.
    """

    def __init__(self, store: RequestStore) -> None:
        self._store = store
        self._accounts: dict[str, ManagedAccount] = {}

    def upsert(self, account: ManagedAccount) -> ManagedAccount:
        """Create or replace the managed account record for ``account.account_id``."""
        with self._store._lock:
            existing = self._accounts.get(account.account_id)
            if existing is not None:
                account = account.copy(
                    created_at=existing.created_at,
                    last_drift_check=existing.last_drift_check,
                    updated_at=datetime.now(UTC),
                )
            self._accounts[account.account_id] = account.copy()
            self._store._save()
            return account.copy()

    def get(self, account_id: str) -> ManagedAccount | None:
        with self._store._lock:
            account = self._accounts.get(account_id)
            return account.copy() if account else None

    def find_by_email(self, email: str) -> ManagedAccount | None:
        key = normalize_email(email)
        with self._store._lock:
            for account in self._accounts.values():
                if account.email_key == key:
                    return account.copy()
        return None

    def list(self) -> list[ManagedAccount]:
        with self._store._lock:
            return [a.copy() for a in sorted(self._accounts.values(), key=lambda a: a.created_at)]

    def record_drift_check(self, account_id: str, checked_at: datetime | None = None) -> None:
        """Stamp the time of the latest drift check for an account."""
        with self._store._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return
            account.last_drift_check = checked_at or datetime.now(UTC)
            self._store._save()

    def update_desired_tags(self, account_id: str, tags: dict[str, str]) -> None:
        with self._store._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return
            account.tags = dict(tags)
            account.updated_at = datetime.now(UTC)
            self._store._save()

    def update_desired_organizational_unit(self, account_id: str, organizational_unit: str) -> None:
        with self._store._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return
            account.organizational_unit = organizational_unit
            account.updated_at = datetime.now(UTC)
            self._store._save()

    def __len__(self) -> int:
        return len(self._accounts)

    def _email_owner(self, key: str) -> ManagedAccount | None:
        for account in self._accounts.values():
            if account.email_key == key:
                return account
        return None


class RequestStore:
    """Durable store of account requests with optimistic state updates.

    Thread Safety:
        Every public method runs under a store-local lock and returns copies,
        so callers can never mutate persisted records directly.
    """

    def __init__(self, state_file: Path | None = None) -> None:
        self._state_file = state_file
        self._lock = threading.RLock()
        self._requests: dict[str, AccountRequest] = {}
        # normalized email -> id of the non-failed request holding it
        self._email_owners: dict[str, str] = {}
        self.accounts = AccountRegistry(self)

        if state_file is not None and state_file.exists():
            self._load(state_file)

    @classmethod
    def open_readonly(cls, state_file: Path) -> RequestStore:
        """Load a state file into a store that never writes it back."""
        store = cls()
        if state_file.exists():
            store._load(state_file)
        return store

    # ------------------------------------------------------------------
    # Request operations
    # ------------------------------------------------------------------

    def create(self, request: AccountRequest) -> AccountRequest:
        """Insert a new request.

        Requests created directly in Failed (recorded rejections) do not
        reserve their email.

        Raises:
            ValidationError: If the id exists or the email is already held by
                a non-failed request or a managed account.
        """
        with self._lock:
            if request.id in self._requests:
                raise ValidationError(
                    f"Request id already exists: {request.id}",
                    code="duplicate_id",
                    request_id=request.id,
                )

            if request.state != RequestState.FAILED:
                self._check_email_available(request)
                self._email_owners[request.email_key] = request.id

            stored = request.copy()
            self._requests[stored.id] = stored
            self._save()

        logger.info(
            "Request created",
            extra={
                "request_id": request.id,
                "account_email": request.account_email,
                "state": request.state.value,
            },
        )
        return stored.copy()

    def get(self, request_id: str) -> AccountRequest:
        """Return a copy of a request.

        Raises:
            RequestNotFoundError: If no such request exists.
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise RequestNotFoundError(f"Request not found: {request_id}")
            return request.copy()

    def update_state(
        self,
        request_id: str,
        expected_state: RequestState,
        new_state: RequestState,
        **changes: Any,
    ) -> AccountRequest:
        """Atomically move a request from ``expected_state`` to ``new_state``.

        Args:
            request_id: Request to update.
            expected_state: State the caller last observed.
            new_state: Target state; must be allowed by the state machine.
            **changes: Other request fields committed in the same step
                (account_id, retry_phase, failure_reason, last_error, withdrawn).

        Returns:
            The committed request.

        Raises:
            RequestNotFoundError: If no such request exists.
            ConflictError: If the persisted state is not ``expected_state``.
            InvalidTransitionError: If the transition is not allowed.
            ValidationError: If entering Provisioning/Importing while another
                entity holds the email.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be changed through update_state: {sorted(unknown)}")

        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise RequestNotFoundError(f"Request not found: {request_id}")

            if current.state != expected_state:
                raise ConflictError(request_id, expected_state.value, current.state.value)

            if not can_transition(current.state, new_state):
                raise InvalidTransitionError(
                    f"Transition {current.state.value} -> {new_state.value} "
                    f"is not allowed for request {request_id}"
                )

            if expected_state == RequestState.VALIDATED and new_state in (
                RequestState.PROVISIONING,
                RequestState.IMPORTING,
            ):
                self._check_email_available(current)
                self._email_owners[current.email_key] = current.id

            updated = current.copy(
                state=new_state,
                version=current.version + 1,
                updated_at=datetime.now(UTC),
                **changes,
            )
            self._requests[request_id] = updated

            if new_state == RequestState.FAILED and (
                self._email_owners.get(updated.email_key) == request_id
            ):
                del self._email_owners[updated.email_key]

            self._save()
            return updated.copy()

    def mark_withdrawn(self, request_id: str) -> AccountRequest:
        """Flag a non-terminal request as withdrawn by an operator.

        The reconciler driving the request observes the flag and fails it.

        Raises:
            RequestNotFoundError: If no such request exists.
            InvalidTransitionError: If the request already reached a terminal state.
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise RequestNotFoundError(f"Request not found: {request_id}")
            if current.is_terminal:
                raise InvalidTransitionError(
                    f"Request {request_id} is already {current.state.value}"
                )
            updated = current.copy(
                withdrawn=True, version=current.version + 1, updated_at=datetime.now(UTC)
            )
            self._requests[request_id] = updated
            self._save()
            return updated.copy()

    def list(
        self,
        state: RequestState | None = None,
        states: Iterable[RequestState] | None = None,
        email: str | None = None,
        include_terminal: bool = True,
    ) -> list[AccountRequest]:
        """Return matching requests ordered by creation time."""
        wanted = set(states) if states is not None else None
        if state is not None:
            wanted = (wanted or set()) | {state}
        email_key = normalize_email(email) if email else None

        with self._lock:
            snapshot = [r.copy() for r in self._requests.values()]

        result = [
            r
            for r in snapshot
            if (wanted is None or r.state in wanted)
            and (email_key is None or r.email_key == email_key)
            and (include_terminal or not r.is_terminal)
        ]
        return sorted(result, key=lambda r: r.created_at)

    def email_in_use(self, email: str, exclude_request_id: str | None = None) -> bool:
        """Check whether a non-failed request or managed account holds ``email``."""
        key = normalize_email(email)
        with self._lock:
            owner = self._email_owners.get(key)
            if owner is not None and owner != exclude_request_id:
                return True
            account = self.accounts._email_owner(key)
            return account is not None and account.request_id != exclude_request_id

    def __len__(self) -> int:
        return len(self._requests)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_email_available(self, request: AccountRequest) -> None:
        key = request.email_key
        owner = self._email_owners.get(key)
        if owner is not None and owner != request.id:
            owner_request = self._requests.get(owner)
            if owner_request is not None and owner_request.state != RequestState.FAILED:
                raise ValidationError(
                    f"Account email {request.account_email} is already requested by {owner}",
                    code="duplicate_email",
                    request_id=request.id,
                )

        account = self.accounts._email_owner(key)
        if account is not None and account.request_id != request.id:
            raise ValidationError(
                f"Account email {request.account_email} already belongs to managed "
                f"account {account.account_id}",
                code="duplicate_email",
                request_id=request.id,
            )

    def _save(self) -> None:
        """Write a snapshot of the store. Caller holds the lock."""
        if self._state_file is None:
            return

        data = {
            "version": STATE_FILE_VERSION,
            "requests": [r.to_dict() for r in self._requests.values()],
            "accounts": [a.to_dict() for a in self.accounts._accounts.values()],
        }
        tmp_path = self._state_file.with_name(self._state_file.name + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._state_file)

    def _load(self, path: Path) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RuntimeError(f"Failed to load state file {path}: {e}") from e

        if data.get("version") != STATE_FILE_VERSION:
            raise RuntimeError(
                f"Unsupported state file version {data.get('version')} in {path}"
            )

        for raw in data.get("requests", []):
            request = AccountRequest.from_dict(raw)
            self._requests[request.id] = request
            if request.state != RequestState.FAILED:
                self._email_owners[request.email_key] = request.id

        for raw in data.get("accounts", []):
            account = ManagedAccount.from_dict(raw)
            self.accounts._accounts[account.account_id] = account

        logger.info(
            "Loaded state file",
            extra={
                "path": str(path),
                "requests": len(self._requests),
                "accounts": len(self.accounts._accounts),
            },
        )
