"""Account request reconciliation: the lifecycle state machine driver.

Each request is driven by its own asyncio task through:

    Submitted -> Validated -> Provisioning | Importing -> Customizing -> Managed

Every transition is committed to the store (and recorded in the event log)
before the next external call is made. A crash or restart therefore resumes
from the last committed state, and because every collaborator call is
idempotent, re-entering a phase is safe.

RETRIES:
Transient collaborator failures (and per-call timeouts) move the request to
Retrying, wait with exponential backoff plus jitter, and return to the phase.
Retries stop at the attempt cap or the total-time cap, whichever comes
first, and the request fails with the last error.

CONCURRENCY:
Requests are independent. Two drivers of the same request are serialized by
the store's compare-and-swap ``update_state``; the loser stops driving the
request and leaves it to the winner.

CIRCUIT BREAKER:
After MAX_CONSECUTIVE_FAILURES requests in a row fail on external errors,
the sweep stops scheduling work for CIRCUIT_BREAKER_RESET_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from .collaborators import Collaborators
from .config import Config, RetryPolicy
from .errors import (
    VALIDATION_CODES,
    ConflictError,
    InvalidTransitionError,
    RetryExhaustedError,
    TerminalExternalError,
    TransientExternalError,
    ValidationError,
)
from .events import EventKind, EventLog
from .lifecycle import (
    AccountMode,
    AccountRequest,
    ManagedAccount,
    RequestState,
    new_request_id,
)
from .models import AccountRequestSpec
from .store import RequestStore
from .validator import Validator

logger = logging.getLogger(__name__)

T = TypeVar("T")

WITHDRAWN_REASON = "withdrawn"

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    timeout_seconds: float,
    operation: str,
    on_retry: Callable[[int, float, Exception], None] | None = None,
    on_resume: Callable[[int], None] | None = None,
) -> T:
    """Run an idempotent external call, retrying transient failures.

    Args:
        call: Zero-argument coroutine function performing the call.
        policy: Backoff and cap settings.
        timeout_seconds: Timeout for each attempt; a timeout counts as transient.
        operation: Human-readable name for logs and errors.
        on_retry: Invoked after a failed attempt, before sleeping, with
            (attempt, delay_seconds, error).
        on_resume: Invoked after sleeping, before the next attempt.

    Returns:
        The call's result.

    Raises:
        TerminalExternalError: Propagated immediately, never retried.
        RetryExhaustedError: When the attempt or total-time cap is reached.
    """
    waited = 0.0
    attempt = 0

    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(call(), timeout=timeout_seconds)
        except TransientExternalError as e:
            last_error: Exception = e
        except TimeoutError:
            last_error = TransientExternalError(
                f"{operation} timed out after {timeout_seconds}s", operation
            )

        if attempt >= policy.max_attempts:
            raise RetryExhaustedError(
                f"{operation} failed after {attempt} attempts: {last_error}",
                operation,
                attempt,
                last_error,
            ) from last_error

        # Exponential backoff with jitter
        backoff = policy.backoff(attempt)
        delay = backoff + random.uniform(0, backoff * policy.jitter_ratio)
        if waited + delay > policy.max_total_seconds:
            raise RetryExhaustedError(
                f"{operation} still failing after {waited:.1f}s of retries: {last_error}",
                operation,
                attempt,
                last_error,
            ) from last_error

        logger.warning(
            "External call failed, retrying",
            extra={
                "operation": operation,
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "wait_seconds": delay,
                "error": str(last_error),
            },
        )
        if on_retry is not None:
            on_retry(attempt, delay, last_error)

        await asyncio.sleep(delay)
        waited += delay

        if on_resume is not None:
            on_resume(attempt)


class Reconciler:
    """Drives account requests through their lifecycle.

    Usage:
        reconciler = Reconciler(config, store, collaborators, events)
        request_id = await reconciler.submit(spec)
        request = await reconciler.reconcile(request_id)

    Or as a long-running loop that resumes every non-terminal request:
        await reconciler.run()
    """

    def __init__(
        self,
        config: Config,
        store: RequestStore,
        collaborators: Collaborators,
        events: EventLog,
    ) -> None:
        self._config = config
        self._store = store
        self._collaborators = collaborators
        self._events = events
        self._validator = Validator(store, collaborators.directory)

        self._tasks: dict[str, asyncio.Task[AccountRequest]] = {}
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def store(self) -> RequestStore:
        return self._store

    @property
    def events(self) -> EventLog:
        return self._events

    @property
    def collaborators(self) -> Collaborators:
        return self._collaborators

    def in_flight(self) -> set[str]:
        """Ids of requests currently being driven by a task."""
        return {rid for rid, task in self._tasks.items() if not task.done()}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        submission: AccountRequestSpec | AccountRequest,
        *,
        source: str | None = None,
        source_digest: str | None = None,
        schedule: bool = True,
    ) -> str:
        """Validate and persist a request, then schedule its reconciliation.

        A request that fails validation is still recorded (Submitted -> Failed)
        so the reason is kept with its id; the ValidationError is re-raised
        with ``request_id`` set.

        Returns:
            The new request id.

        Raises:
            ValidationError: If the request is rejected.
            TransientExternalError: If a lookup needed for validation failed;
                nothing is recorded and the caller may resubmit.
        """
        if isinstance(submission, AccountRequestSpec):
            request = submission.to_request()
        else:
            request = submission.copy()
        if source is not None:
            request = request.copy(source=source, source_digest=source_digest)

        try:
            await self._validator.validate(request)
            stored = self._store.create(request)
        except ValidationError as e:
            self._record_rejection(request, e)
            raise

        self._events.append(
            stored.id,
            EventKind.TRANSITION,
            to_state=RequestState.SUBMITTED,
            detail="submitted",
        )
        logger.info(
            "Request accepted",
            extra={
                "request_id": stored.id,
                "account_email": stored.account_email,
                "mode": stored.mode.value,
                "change_management": stored.change_management,
            },
        )

        if schedule:
            self.schedule(stored.id)
        return stored.id

    def _record_rejection(self, request: AccountRequest, error: ValidationError) -> None:
        # The submitted id belongs to another request
        request_id = new_request_id() if error.code == "duplicate_id" else request.id
        rejected = self._store.create(
            request.copy(
                id=request_id,
                state=RequestState.FAILED,
                failure_reason=str(error),
                last_error=error.code,
            )
        )
        error.request_id = rejected.id
        self._events.append(
            rejected.id,
            EventKind.TRANSITION,
            from_state=RequestState.SUBMITTED,
            to_state=RequestState.FAILED,
            detail=f"validation failed: {error}",
        )
        logger.warning(
            "Request rejected",
            extra={"request_id": rejected.id, "code": error.code, "error": str(error)},
        )

    # ------------------------------------------------------------------
    # Scheduling and cancellation
    # ------------------------------------------------------------------

    def schedule(self, request_id: str) -> asyncio.Task[AccountRequest]:
        """Start driving a request in the background (no-op if already running)."""
        task = self._tasks.get(request_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self._drive(request_id), name=f"reconcile-{request_id}")
        self._tasks[request_id] = task
        task.add_done_callback(lambda t, rid=request_id: self._task_done(rid, t))
        return task

    def _task_done(self, request_id: str, task: asyncio.Task[AccountRequest]) -> None:
        if self._tasks.get(request_id) is task:
            del self._tasks[request_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Reconcile task crashed",
                extra={"request_id": request_id, "error": str(error)},
            )

    async def _drive(self, request_id: str) -> AccountRequest:
        async with self._semaphore:
            result = await self.reconcile(request_id)
        self._record_outcome(result)
        return result

    def _record_outcome(self, request: AccountRequest) -> None:
        """Update the circuit breaker from a finished request."""
        if request.state == RequestState.MANAGED:
            # Reset on success
            self._consecutive_failures = 0
            return
        if request.state != RequestState.FAILED or request.withdrawn:
            return
        # Rejected requests say nothing about the health of the collaborators
        if request.last_error in VALIDATION_CODES:
            return

        self._consecutive_failures += 1
        if (
            self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES
            and self._circuit_open_until is None
        ):
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    @property
    def circuit_open(self) -> bool:
        """True while the circuit breaker blocks new work."""
        if self._circuit_open_until is None:
            return False
        if datetime.now(UTC) < self._circuit_open_until:
            return True
        logger.info("Circuit breaker reset, resuming reconciliation")
        self._circuit_open_until = None
        self._consecutive_failures = 0
        return False

    async def wait_idle(self) -> None:
        """Wait for every in-flight reconcile task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def withdraw(self, request_id: str) -> AccountRequest:
        """Withdraw a request that has not reached a terminal state.

        Cancels the request's in-flight task (including a retry wait) and
        fails it with reason "withdrawn". External calls that were already
        issued are not rolled back; an account created for the request is
        reported by the drift detector's orphan scan.

        Raises:
            RequestNotFoundError: If no such request exists.
            InvalidTransitionError: If the request is already terminal.
        """
        self._store.mark_withdrawn(request_id)

        task = self._tasks.get(request_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        request = self._fail(
            request_id,
            reason=WITHDRAWN_REASON,
            kind=EventKind.WITHDRAWN,
            detail="withdrawn before completion",
        )
        logger.warning(
            "Request withdrawn",
            extra={
                "request_id": request_id,
                "state": request.state.value,
                "account_id": request.account_id,
            },
        )
        return request

    async def move_account(self, request_id: str, organizational_unit: str) -> ManagedAccount:
        """Move the account of a Managed request to another organizational unit.

        Drift detection only reports OU changes; this is the explicit path for
        making one. The request stays Managed. The account's desired OU is
        updated once the move succeeds, and an ACCOUNT_MOVED event records it.

        Raises:
            RequestNotFoundError: If no such request exists.
            InvalidTransitionError: If the request is not Managed.
            ValidationError: If the organizational unit does not exist.
            TransientExternalError: If the OU lookup failed; nothing changed.
            RetryExhaustedError: If the move kept failing transiently.
            TerminalExternalError: If the move was rejected.
        """
        request = self._store.get(request_id)
        account = (
            self._store.accounts.get(request.account_id)
            if request.state == RequestState.MANAGED and request.account_id
            else None
        )
        if account is None:
            raise InvalidTransitionError(
                f"Request {request_id} is {request.state.value}; only the account of a "
                f"Managed request can be moved"
            )
        if account.organizational_unit == organizational_unit:
            return account

        if not await self._collaborators.directory.organizational_unit_exists(organizational_unit):
            raise ValidationError(
                f"Organizational unit does not exist: {organizational_unit}",
                code="unknown_ou",
                request_id=request_id,
            )

        await call_with_retry(
            lambda: self._collaborators.provisioner.move_account(
                account.account_id, organizational_unit
            ),
            policy=self._config.retry,
            timeout_seconds=self._config.external_call_timeout_seconds,
            operation="move_account",
        )
        self._store.accounts.update_desired_organizational_unit(
            account.account_id, organizational_unit
        )

        self._events.append(
            request_id,
            EventKind.ACCOUNT_MOVED,
            to_state=RequestState.MANAGED,
            detail=f"moved from {account.organizational_unit} to {organizational_unit}",
            account_id=account.account_id,
        )
        logger.info(
            "Account moved to organizational unit",
            extra={
                "request_id": request_id,
                "account_id": account.account_id,
                "from": account.organizational_unit,
                "to": organizational_unit,
            },
        )
        return account.copy(organizational_unit=organizational_unit)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def reconcile(self, request_id: str) -> AccountRequest:
        """Drive one request from its committed state to a terminal state.

        Returns early (non-terminal) only when validation lookups fail
        transiently; the next sweep picks the request up again.
        """
        request = self._store.get(request_id)

        while not request.is_terminal:
            if request.withdrawn:
                return self._fail(
                    request_id,
                    reason=WITHDRAWN_REASON,
                    kind=EventKind.WITHDRAWN,
                    detail="withdrawn before completion",
                )

            try:
                request = await self._step(request)
            except ConflictError as e:
                # Another driver committed first and owns the request from here
                logger.info(
                    "State conflict, another worker advanced the request",
                    extra={"request_id": request_id, "expected": e.expected, "actual": e.actual},
                )
                return self._store.get(request_id)
            except ValidationError as e:
                return self._fail(request_id, reason=str(e), last_error=e.code)
            except TerminalExternalError as e:
                logger.error(
                    "External collaborator reported a terminal failure",
                    extra={"request_id": request_id, "operation": e.operation, "error": str(e)},
                )
                return self._fail(request_id, reason=str(e), last_error=str(e))
            except RetryExhaustedError as e:
                logger.error(
                    "Retry cap exceeded",
                    extra={
                        "request_id": request_id,
                        "operation": e.operation,
                        "attempts": e.attempts,
                        "error": str(e.last_error),
                    },
                )
                return self._fail(
                    request_id,
                    reason=f"retry cap exceeded for {e.operation}",
                    last_error=str(e.last_error),
                )
            except TransientExternalError as e:
                # Only the validation lookups get here; provisioning phases retry internally
                logger.warning(
                    "Validation lookup failed, will retry on next sweep",
                    extra={"request_id": request_id, "error": str(e)},
                )
                return self._store.get(request_id)
            except Exception as e:
                logger.exception(
                    "Unexpected error during reconciliation",
                    extra={"request_id": request_id, "state": request.state.value},
                )
                return self._fail(
                    request_id,
                    reason=f"unexpected error: {type(e).__name__}: {e}",
                    last_error=str(e),
                )

        return request

    async def _step(self, request: AccountRequest) -> AccountRequest:
        """Advance a request by one committed transition."""
        match request.state:
            case RequestState.SUBMITTED:
                await self._validator.validate(request)
                return self._transition(request, RequestState.VALIDATED, detail="validation passed")

            case RequestState.VALIDATED:
                if request.mode == AccountMode.EXISTING_ACCOUNT_ONBOARDING:
                    return self._transition(
                        request,
                        RequestState.IMPORTING,
                        detail=f"importing account {request.existing_account_id}",
                    )
                return self._transition(
                    request, RequestState.PROVISIONING, detail="provisioning new account"
                )

            case RequestState.PROVISIONING:
                account_id = await self._run_phase(
                    request,
                    lambda: self._collaborators.provisioner.provision_account(request),
                    operation="provision_account",
                )
                return self._transition(
                    self._store.get(request.id),
                    RequestState.CUSTOMIZING,
                    detail=f"account {account_id} provisioned",
                    account_id=account_id,
                )

            case RequestState.IMPORTING:
                account_id = await self._run_phase(
                    request,
                    lambda: self._collaborators.provisioner.import_account(request),
                    operation="import_account",
                )
                return self._transition(
                    self._store.get(request.id),
                    RequestState.CUSTOMIZING,
                    detail=f"account {account_id} imported",
                    account_id=account_id,
                )

            case RequestState.CUSTOMIZING:
                await self._run_phase(
                    request,
                    lambda: self._customize(request),
                    operation="run_customizations",
                )
                self._store.accounts.upsert(ManagedAccount.from_request(request))
                return self._transition(
                    self._store.get(request.id),
                    RequestState.MANAGED,
                    detail=f"account {request.account_id} under management",
                )

            case RequestState.RETRYING:
                # Resuming after a restart that happened during a retry wait
                phase = request.retry_phase or self._default_phase(request)
                return self._transition(
                    request, phase, detail="resuming after restart", retry_phase=None
                )

            case _:
                raise ValueError(f"Cannot advance request in state {request.state.value}")

    async def _customize(self, request: AccountRequest) -> None:
        # SAFETY: account_id is committed on the transition into Customizing
        account_id = request.account_id or ""
        if request.tags:
            await self._collaborators.directory.apply_tags(account_id, request.tags)
        if self._collaborators.identity is not None:
            await self._collaborators.identity.assign_user(account_id, request.sso_user)
        await self._collaborators.customizations.run_customizations(
            account_id,
            request.customization_name,
            dict(request.custom_fields),
            idempotency_key=request.id,
        )

    async def _run_phase(
        self,
        request: AccountRequest,
        call: Callable[[], Awaitable[T]],
        operation: str,
    ) -> T:
        """Run a phase's external call with Retrying transitions around each retry."""
        phase = request.state
        current = request

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            nonlocal current
            current = self._transition(
                current,
                RequestState.RETRYING,
                kind=EventKind.RETRYING,
                detail=f"{operation} attempt {attempt} failed ({error}); retrying in {delay:.1f}s",
                retry_phase=phase,
                last_error=str(error),
            )

        def on_resume(attempt: int) -> None:
            nonlocal current
            current = self._transition(
                current,
                phase,
                detail=f"{operation} retry attempt {attempt + 1}",
                retry_phase=None,
            )

        return await call_with_retry(
            call,
            policy=self._config.retry,
            timeout_seconds=self._config.external_call_timeout_seconds,
            operation=operation,
            on_retry=on_retry,
            on_resume=on_resume,
        )

    def _default_phase(self, request: AccountRequest) -> RequestState:
        if request.account_id is not None:
            return RequestState.CUSTOMIZING
        if request.mode == AccountMode.EXISTING_ACCOUNT_ONBOARDING:
            return RequestState.IMPORTING
        return RequestState.PROVISIONING

    def _transition(
        self,
        request: AccountRequest,
        new_state: RequestState,
        *,
        detail: str = "",
        kind: EventKind = EventKind.TRANSITION,
        **changes: Any,
    ) -> AccountRequest:
        """Commit a transition and record it in the event log."""
        updated = self._store.update_state(request.id, request.state, new_state, **changes)
        self._events.append(
            request.id,
            kind,
            from_state=request.state,
            to_state=new_state,
            detail=detail,
            account_id=updated.account_id,
        )
        logger.info(
            "Request transition",
            extra={
                "request_id": request.id,
                "from_state": request.state.value,
                "to_state": new_state.value,
                "detail": detail,
            },
        )
        return updated

    def _fail(
        self,
        request_id: str,
        *,
        reason: str,
        last_error: str | None = None,
        kind: EventKind = EventKind.TRANSITION,
        detail: str | None = None,
    ) -> AccountRequest:
        """Move a request to Failed from whatever state it is committed in."""
        while True:
            current = self._store.get(request_id)
            if current.is_terminal:
                return current
            try:
                return self._transition(
                    current,
                    RequestState.FAILED,
                    kind=kind,
                    detail=detail or reason,
                    failure_reason=reason,
                    last_error=last_error if last_error is not None else current.last_error,
                    retry_phase=None,
                )
            except ConflictError:
                continue

    # ------------------------------------------------------------------
    # Long-running loop
    # ------------------------------------------------------------------

    def pending_requests(self) -> list[AccountRequest]:
        """Non-terminal requests that are not currently being driven."""
        running = self.in_flight()
        return [r for r in self._store.list(include_terminal=False) if r.id not in running]

    def resume_pending(self) -> list[str]:
        """Schedule every non-terminal request that has no task (crash recovery)."""
        scheduled = []
        for request in self.pending_requests():
            self.schedule(request.id)
            scheduled.append(request.id)
        if scheduled:
            logger.info("Resumed pending requests", extra={"count": len(scheduled)})
        return scheduled

    async def run(
        self,
        before_sweep: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Sweep for pending requests at the configured interval until shutdown.

        Args:
            before_sweep: Optional hook run at the start of every sweep
                (used to pick up new request files).
        """
        logger.info(
            "Starting reconciler",
            extra={
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent": self._config.max_concurrent_reconciles,
            },
        )

        while not self._shutdown_event.is_set():
            if before_sweep is not None:
                try:
                    await before_sweep()
                except Exception as e:
                    logger.exception("Request intake failed", extra={"error": str(e)})

            if self.circuit_open:
                logger.warning(
                    "Circuit breaker open, skipping sweep",
                    extra={"consecutive_failures": self._consecutive_failures},
                )
            else:
                self.resume_pending()

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        # In-flight work stops at its last committed state and resumes on restart
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
