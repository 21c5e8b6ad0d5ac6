"""Drift detection for managed accounts.

Periodically compares the desired state recorded in the account registry
with what the organization reports, and records a DRIFT_DETECTED event for
every mismatch. Drift never changes a request's lifecycle state: a drifted
account stays Managed.

REMEDIATION:
Depending on DRIFT_REMEDIATION, tag drift is corrected by re-applying the
desired tags (``tags``) and optionally by re-running the account's
customization bundle (``customizations``). Remediation is bounded per
account per rolling window. An account that was moved to another OU is
only reported; OU moves are made explicitly with Reconciler.move_account.

ORPHANS:
A withdrawn request whose account was already created by the provisioner
leaves an account nobody manages. The orphan scan reports each such account
once with an ORPHAN_DETECTED event. Each withdrawn request is looked up at
most once per drift interval, and only during ORPHAN_SCAN_WINDOW_SECONDS
after its withdrawal.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from .collaborators import Collaborators, ObservedAccount
from .config import Config, DriftRemediationPolicy
from .errors import RetryExhaustedError, TerminalExternalError
from .events import EventKind, EventLog
from .lifecycle import ManagedAccount, RequestState
from .reconciler import call_with_retry
from .store import RequestStore

logger = logging.getLogger(__name__)

# Rolling window for max_remediations_per_account
REMEDIATION_WINDOW_SECONDS = 86400

# Upper bound on how long the loop sleeps between looking for due accounts
DRIFT_POLL_SECONDS = 60

# How long after withdrawal a request is still scanned for an orphaned account
ORPHAN_SCAN_WINDOW_SECONDS = 7 * 86400


@dataclass(frozen=True)
class DriftReport:
    """Differences between desired and observed state of one account."""

    account_id: str
    request_id: str
    added: dict[str, str] = field(default_factory=dict)
    removed: dict[str, str] = field(default_factory=dict)
    # key -> (desired value, observed value)
    changed: dict[str, tuple[str, str]] = field(default_factory=dict)
    ou_changed: bool = False
    expected_ou: str = ""
    observed_ou: str = ""
    # Account no longer visible in the organization
    missing: bool = False

    @property
    def tags_drifted(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    @property
    def has_drift(self) -> bool:
        return self.missing or self.tags_drifted or self.ou_changed

    def summary(self) -> str:
        """One-line human-readable description of the drift."""
        if self.missing:
            return "account not found in organization"
        parts = []
        if self.added:
            parts.append(f"unexpected tags {sorted(self.added)}")
        if self.removed:
            parts.append(f"missing tags {sorted(self.removed)}")
        if self.changed:
            parts.append(f"changed tags {sorted(self.changed)}")
        if self.ou_changed:
            parts.append(f"OU {self.expected_ou} -> {self.observed_ou}")
        return "; ".join(parts) if parts else "no drift"


def diff_account(desired: ManagedAccount, observed: ObservedAccount | None) -> DriftReport:
    """Compute the drift report for one account."""
    if observed is None:
        return DriftReport(
            account_id=desired.account_id,
            request_id=desired.request_id,
            expected_ou=desired.organizational_unit,
            missing=True,
        )

    added = {k: v for k, v in observed.tags.items() if k not in desired.tags}
    removed = {k: v for k, v in desired.tags.items() if k not in observed.tags}
    changed = {
        k: (v, observed.tags[k])
        for k, v in desired.tags.items()
        if k in observed.tags and observed.tags[k] != v
    }
    return DriftReport(
        account_id=desired.account_id,
        request_id=desired.request_id,
        added=added,
        removed=removed,
        changed=changed,
        ou_changed=not observed.in_organizational_unit(desired.organizational_unit),
        expected_ou=desired.organizational_unit,
        observed_ou=observed.organizational_unit,
    )


class DriftDetector:
    """Checks managed accounts for drift on a fixed per-account interval."""

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

        # Accounts with a check running; overlapping checks are suppressed
        self._in_flight: set[str] = set()
        self._remediations: dict[str, deque[datetime]] = {}
        # withdrawn request id -> time of its last orphan scan
        self._orphan_scans: dict[str, datetime] = {}
        self._shutdown_event = asyncio.Event()

    async def check_account(self, account_id: str) -> DriftReport | None:
        """Check one managed account for drift.

        Returns:
            The drift report, or None if the account is not managed or a
            check for it is already running.

        Raises:
            RetryExhaustedError: If the organization could not be queried.
            TerminalExternalError: If the query was rejected.
        """
        if account_id in self._in_flight:
            logger.info(
                "Drift check already in flight, suppressed",
                extra={"account_id": account_id},
            )
            return None

        self._in_flight.add(account_id)
        try:
            desired = self._store.accounts.get(account_id)
            if desired is None:
                logger.warning("Account is not managed", extra={"account_id": account_id})
                return None

            observed = await call_with_retry(
                lambda: self._collaborators.directory.find_account(account_id),
                policy=self._config.retry,
                timeout_seconds=self._config.external_call_timeout_seconds,
                operation="describe_account",
            )
            report = diff_account(desired, observed)
            self._store.accounts.record_drift_check(account_id)

            if not report.has_drift:
                logger.debug("No drift", extra={"account_id": account_id})
                return report

            self._events.append(
                desired.request_id,
                EventKind.DRIFT_DETECTED,
                to_state=RequestState.MANAGED,
                detail=report.summary(),
                account_id=account_id,
            )
            logger.warning(
                "Drift detected",
                extra={
                    "account_id": account_id,
                    "request_id": desired.request_id,
                    "added": sorted(report.added),
                    "removed": sorted(report.removed),
                    "changed": sorted(report.changed),
                    "ou_changed": report.ou_changed,
                    "missing": report.missing,
                },
            )

            if report.tags_drifted:
                await self._remediate(desired, report)
            return report
        finally:
            self._in_flight.discard(account_id)

    async def _remediate(self, desired: ManagedAccount, report: DriftReport) -> bool:
        """Correct tag drift according to the configured policy."""
        policy = self._config.drift_remediation
        if policy == DriftRemediationPolicy.NONE:
            return False

        if not self._reserve_remediation(desired.account_id):
            logger.warning(
                "Remediation limit reached, drift left in place",
                extra={
                    "account_id": desired.account_id,
                    "max_remediations": self._config.max_remediations_per_account,
                    "window_seconds": REMEDIATION_WINDOW_SECONDS,
                },
            )
            return False

        directory = self._collaborators.directory
        try:
            await call_with_retry(
                lambda: directory.apply_tags(
                    desired.account_id, desired.tags, remove_keys=sorted(report.added)
                ),
                policy=self._config.retry,
                timeout_seconds=self._config.external_call_timeout_seconds,
                operation="apply_tags",
            )
            if policy == DriftRemediationPolicy.CUSTOMIZATIONS:
                # A fresh key starts a new run instead of attaching to the original one
                key = f"{desired.request_id}-drift-{int(datetime.now(UTC).timestamp())}"
                await call_with_retry(
                    lambda: self._collaborators.customizations.run_customizations(
                        desired.account_id,
                        desired.customization_name,
                        dict(desired.custom_fields),
                        idempotency_key=key,
                    ),
                    policy=self._config.retry,
                    timeout_seconds=self._config.external_call_timeout_seconds,
                    operation="run_customizations",
                )
        except (RetryExhaustedError, TerminalExternalError) as e:
            logger.error(
                "Drift remediation failed",
                extra={"account_id": desired.account_id, "policy": policy.value, "error": str(e)},
            )
            return False

        self._events.append(
            desired.request_id,
            EventKind.DRIFT_REMEDIATED,
            to_state=RequestState.MANAGED,
            detail=f"{policy.value} remediation of {report.summary()}",
            account_id=desired.account_id,
        )
        logger.info(
            "Drift remediated",
            extra={"account_id": desired.account_id, "policy": policy.value},
        )
        return True

    def _reserve_remediation(self, account_id: str) -> bool:
        now = datetime.now(UTC)
        window_start = now - timedelta(seconds=REMEDIATION_WINDOW_SECONDS)
        history = self._remediations.setdefault(account_id, deque())
        while history and history[0] < window_start:
            history.popleft()
        if len(history) >= self._config.max_remediations_per_account:
            return False
        history.append(now)
        return True

    async def scan_orphans(self, now: datetime | None = None) -> list[str]:
        """Report accounts left behind by withdrawn requests.

        Returns:
            Ids of requests newly reported as orphaned.
        """
        now = now or datetime.now(UTC)
        interval = timedelta(seconds=self._config.drift_interval_seconds)
        window = timedelta(seconds=ORPHAN_SCAN_WINDOW_SECONDS)
        reported = {e.request_id for e in self._events.events(kind=EventKind.ORPHAN_DETECTED)}
        found = []

        for request in self._store.list(state=RequestState.FAILED):
            if not request.withdrawn or request.id in reported:
                continue
            if now - request.updated_at > window:
                self._orphan_scans.pop(request.id, None)
                continue
            last_scan = self._orphan_scans.get(request.id)
            if last_scan is not None and now - last_scan < interval:
                continue

            observed = await call_with_retry(
                lambda email=request.account_email: (
                    self._collaborators.directory.find_account_by_email(email)
                ),
                policy=self._config.retry,
                timeout_seconds=self._config.external_call_timeout_seconds,
                operation="find_account_by_email",
            )
            self._orphan_scans[request.id] = now
            if observed is None or self._store.accounts.get(observed.account_id) is not None:
                continue

            self._orphan_scans.pop(request.id, None)
            self._events.append(
                request.id,
                EventKind.ORPHAN_DETECTED,
                to_state=RequestState.FAILED,
                detail=f"account {observed.account_id} exists for withdrawn request",
                account_id=observed.account_id,
            )
            logger.warning(
                "Orphaned account detected",
                extra={
                    "request_id": request.id,
                    "account_id": observed.account_id,
                    "account_email": request.account_email,
                },
            )
            found.append(request.id)

        return found

    def due_accounts(self, now: datetime | None = None) -> list[str]:
        """Managed accounts whose last check is older than the drift interval."""
        now = now or datetime.now(UTC)
        interval = timedelta(seconds=self._config.drift_interval_seconds)
        return [
            a.account_id
            for a in self._store.accounts.list()
            if a.last_drift_check is None or now - a.last_drift_check >= interval
        ]

    async def check_due(self) -> list[DriftReport]:
        """Check every due account concurrently and scan for orphans."""
        due = self.due_accounts()
        results = await asyncio.gather(
            *(self.check_account(account_id) for account_id in due),
            return_exceptions=True,
        )

        reports = []
        for account_id, result in zip(due, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Drift check failed",
                    extra={"account_id": account_id, "error": str(result)},
                )
            elif result is not None:
                reports.append(result)

        try:
            await self.scan_orphans()
        except (RetryExhaustedError, TerminalExternalError) as e:
            logger.error("Orphan scan failed", extra={"error": str(e)})

        return reports

    async def run(self) -> None:
        """Run drift checks until shutdown."""
        poll_seconds = min(self._config.drift_interval_seconds, DRIFT_POLL_SECONDS)
        logger.info(
            "Starting drift detector",
            extra={
                "interval_seconds": self._config.drift_interval_seconds,
                "remediation": self._config.drift_remediation.value,
            },
        )

        while not self._shutdown_event.is_set():
            await self.check_due()

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=poll_seconds)
            except TimeoutError:
                pass

        logger.info("Drift detector shutdown complete")

    def shutdown(self) -> None:
        """Signal the drift detector to stop."""
        self._shutdown_event.set()
