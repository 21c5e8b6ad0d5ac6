"""Tests for the request store and managed account registry."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from org_mock import make_spec

from orchestrator.errors import (
    ConflictError,
    InvalidTransitionError,
    RequestNotFoundError,
    ValidationError,
)
from orchestrator.lifecycle import AccountRequest, ManagedAccount, RequestState
from orchestrator.store import RequestStore


def new_request(email: str = "a@x.com", **changes: object) -> AccountRequest:
    return make_spec(email=email).to_request().copy(**changes)


def advance(store: RequestStore, request_id: str, *states: RequestState) -> AccountRequest:
    request = store.get(request_id)
    for state in states:
        request = store.update_state(request_id, request.state, state)
    return request


class TestCreate:
    """Tests for RequestStore.create."""

    def test_create_and_get(self) -> None:
        """Test that a created request can be read back as a copy."""
        store = RequestStore()
        created = store.create(new_request())

        fetched = store.get(created.id)
        fetched.tags["mutated"] = "yes"

        assert store.get(created.id).tags == {"team": "payments"}
        assert fetched.state == RequestState.SUBMITTED

    def test_duplicate_email_rejected(self) -> None:
        """Test that a second live request for an email is rejected."""
        store = RequestStore()
        store.create(new_request("a@x.com"))

        with pytest.raises(ValidationError) as exc_info:
            store.create(new_request("A@X.com "))

        assert exc_info.value.code == "duplicate_email"

    def test_rejected_request_does_not_reserve_email(self) -> None:
        """Test that a request recorded as Failed leaves the email free."""
        store = RequestStore()
        store.create(new_request(state=RequestState.FAILED, failure_reason="invalid"))

        created = store.create(new_request())

        assert created.state == RequestState.SUBMITTED

    def test_duplicate_id_rejected(self) -> None:
        """Test that ids are unique."""
        store = RequestStore()
        request = store.create(new_request())

        with pytest.raises(ValidationError) as exc_info:
            store.create(request.copy(account_email="other@x.com"))

        assert exc_info.value.code == "duplicate_id"

    def test_get_unknown(self) -> None:
        """Test that unknown ids raise RequestNotFoundError."""
        with pytest.raises(RequestNotFoundError):
            RequestStore().get("req-missing")


class TestUpdateState:
    """Tests for the compare-and-swap state update."""

    def test_transition_commits_changes(self) -> None:
        """Test that the state and extra fields are committed together."""
        store = RequestStore()
        request = store.create(new_request())
        advance(store, request.id, RequestState.VALIDATED, RequestState.PROVISIONING)

        updated = store.update_state(
            request.id,
            RequestState.PROVISIONING,
            RequestState.CUSTOMIZING,
            account_id="123456789012",
        )

        assert updated.state == RequestState.CUSTOMIZING
        assert updated.account_id == "123456789012"
        assert updated.version == 3

    def test_stale_expected_state(self) -> None:
        """Test that a stale expected state raises ConflictError."""
        store = RequestStore()
        request = store.create(new_request())
        advance(store, request.id, RequestState.VALIDATED)

        with pytest.raises(ConflictError) as exc_info:
            store.update_state(request.id, RequestState.SUBMITTED, RequestState.VALIDATED)

        assert exc_info.value.expected == "Submitted"
        assert exc_info.value.actual == "Validated"

    def test_disallowed_transition(self) -> None:
        """Test that the state machine is enforced."""
        store = RequestStore()
        request = store.create(new_request())

        with pytest.raises(InvalidTransitionError):
            store.update_state(request.id, RequestState.SUBMITTED, RequestState.MANAGED)

    def test_terminal_states_are_final(self) -> None:
        """Test that nothing leaves Failed."""
        store = RequestStore()
        request = store.create(new_request())
        advance(store, request.id, RequestState.FAILED)

        with pytest.raises(InvalidTransitionError):
            store.update_state(request.id, RequestState.FAILED, RequestState.VALIDATED)

    def test_unknown_field_rejected(self) -> None:
        """Test that identity fields cannot be changed through update_state."""
        store = RequestStore()
        request = store.create(new_request())

        with pytest.raises(ValueError):
            store.update_state(
                request.id,
                RequestState.SUBMITTED,
                RequestState.VALIDATED,
                account_email="other@x.com",
            )

    def test_failed_request_releases_email(self) -> None:
        """Test that failing a request frees its email for a new request."""
        store = RequestStore()
        request = store.create(new_request())
        advance(store, request.id, RequestState.FAILED)

        assert not store.email_in_use("a@x.com")
        store.create(new_request())

    def test_provisioning_claim_rechecks_email(self) -> None:
        """Test that entering Provisioning fails if a managed account holds the email."""
        store = RequestStore()
        request = store.create(new_request())
        advance(store, request.id, RequestState.VALIDATED)
        store.accounts.upsert(
            ManagedAccount(
                account_id="210987654321",
                account_email="a@x.com",
                account_name="other",
                request_id="req-other",
                organizational_unit="Workload-OU",
            )
        )

        with pytest.raises(ValidationError) as exc_info:
            store.update_state(request.id, RequestState.VALIDATED, RequestState.PROVISIONING)

        assert exc_info.value.code == "duplicate_email"

    def test_concurrent_updates_single_winner(self) -> None:
        """Test that exactly one of N concurrent callers wins the swap."""
        store = RequestStore()
        request = store.create(new_request())
        barrier = threading.Barrier(8)
        results: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            try:
                store.update_state(request.id, RequestState.SUBMITTED, RequestState.VALIDATED)
                outcome = "won"
            except ConflictError:
                outcome = "conflict"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("won") == 1
        assert results.count("conflict") == 7
        assert store.get(request.id).version == 1


class TestWithdrawAndList:
    """Tests for mark_withdrawn and list."""

    def test_mark_withdrawn(self) -> None:
        """Test that the withdrawn flag is set without changing state."""
        store = RequestStore()
        request = store.create(new_request())

        updated = store.mark_withdrawn(request.id)

        assert updated.withdrawn is True
        assert updated.state == RequestState.SUBMITTED

    def test_mark_withdrawn_terminal(self) -> None:
        """Test that finished requests cannot be withdrawn."""
        store = RequestStore()
        request = store.create(new_request())
        advance(store, request.id, RequestState.FAILED)

        with pytest.raises(InvalidTransitionError):
            store.mark_withdrawn(request.id)

    def test_list_filters(self) -> None:
        """Test filtering by state, email and terminal status."""
        store = RequestStore()
        first = store.create(new_request("a@x.com"))
        second = store.create(new_request("b@x.com"))
        advance(store, second.id, RequestState.FAILED)

        assert [r.id for r in store.list()] == [first.id, second.id]
        assert [r.id for r in store.list(state=RequestState.FAILED)] == [second.id]
        assert [r.id for r in store.list(include_terminal=False)] == [first.id]
        assert [r.id for r in store.list(email="B@x.com")] == [second.id]


class TestPersistence:
    """Tests for the JSON state file."""

    def test_reload_restores_requests_and_accounts(self, tmp_path: Path) -> None:
        """Test that a new store resumes from the state file."""
        state_file = tmp_path / "state.json"
        store = RequestStore(state_file)
        request = store.create(new_request())
        advance(store, request.id, RequestState.VALIDATED, RequestState.PROVISIONING)
        store.accounts.upsert(
            ManagedAccount(
                account_id="111111111111",
                account_email="m@x.com",
                account_name="managed",
                request_id="req-m",
                organizational_unit="Workload-OU",
                tags={"team": "core"},
            )
        )

        reloaded = RequestStore(state_file)

        assert reloaded.get(request.id).state == RequestState.PROVISIONING
        assert reloaded.email_in_use("a@x.com")
        assert reloaded.email_in_use("m@x.com")
        account = reloaded.accounts.get("111111111111")
        assert account is not None
        assert account.tags == {"team": "core"}
        assert not (tmp_path / "state.json.tmp").exists()

    def test_corrupt_state_file(self, tmp_path: Path) -> None:
        """Test that an unreadable state file stops start-up."""
        state_file = tmp_path / "state.json"
        state_file.write_text("{not json")

        with pytest.raises(RuntimeError):
            RequestStore(state_file)

    def test_open_readonly_never_writes(self, tmp_path: Path) -> None:
        """Test that a read-only store does not touch the file."""
        state_file = tmp_path / "state.json"
        RequestStore(state_file).create(new_request())
        before = state_file.read_text()

        readonly = RequestStore.open_readonly(state_file)
        readonly.create(new_request("other@x.com"))

        assert state_file.read_text() == before


class TestAccountRegistry:
    """Tests for AccountRegistry."""

    def test_upsert_keeps_created_at_and_drift_stamp(self) -> None:
        """Test that replacing a record keeps its history fields."""
        store = RequestStore()
        account = ManagedAccount(
            account_id="111111111111",
            account_email="m@x.com",
            account_name="managed",
            request_id="req-m",
            organizational_unit="Workload-OU",
        )
        first = store.accounts.upsert(account)
        store.accounts.record_drift_check("111111111111")

        second = store.accounts.upsert(account.copy(tags={"team": "core"}))

        assert second.created_at == first.created_at
        assert second.last_drift_check is not None
        assert store.accounts.find_by_email("M@x.com") is not None
        assert len(store.accounts) == 1
