"""Request intake from the requests directory.

Each request file is submitted once, identified by the SHA-256 digest of its
content. A file whose content matches a Failed request is submitted again
when it was written after that request failed, so putting the same file back
(or touching it) retries a failed request. Deleting the file of a request
that has not finished withdraws the request.

Editing the file of a Managed request updates the desired tags that drift
detection compares against and, when ManagedOrganizationalUnit changed,
moves the account to the new OU. Editing the file of an in-flight request is
ignored until it finishes.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .errors import (
    InvalidTransitionError,
    RetryExhaustedError,
    TerminalExternalError,
    TransientExternalError,
    ValidationError,
)
from .lifecycle import AccountRequest, RequestState
from .models import AccountRequestSpec
from .reconciler import Reconciler
from .spec_loader import REQUEST_FILE_SUFFIXES, SpecLoadError, load_request

logger = logging.getLogger(__name__)


def file_digest(path: Path) -> str:
    """SHA-256 of a file's content."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def file_written_at(path: Path) -> datetime:
    """Last modification time of a file."""
    return datetime.fromtimestamp(path.stat().st_mtime, UTC)


@dataclass
class IntakeResult:
    """What one intake pass did."""

    submitted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    withdrawn: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    moved: list[str] = field(default_factory=list)


class RequestIntake:
    """Synchronizes the requests directory with the request store."""

    def __init__(self, requests_dir: Path, reconciler: Reconciler) -> None:
        self._requests_dir = requests_dir
        self._reconciler = reconciler
        # source path -> (digest, modification time) already handled in this process
        self._seen: dict[str, tuple[str, datetime]] = {}

    async def sync(self) -> IntakeResult:
        """Submit new request files and withdraw requests whose file was removed."""
        result = IntakeResult()
        store = self._reconciler.store

        # list() is ordered by creation time, so the last one wins
        latest: dict[str, AccountRequest] = {}
        by_digest: dict[str, AccountRequest] = {}
        for request in store.list():
            if request.source_digest:
                by_digest[request.source_digest] = request
            if request.source:
                latest[request.source] = request

        present: set[str] = set()
        for path in sorted(self._requests_dir.iterdir()):
            if not path.is_file() or path.suffix.lower() not in REQUEST_FILE_SUFFIXES:
                continue
            source = str(path)
            present.add(source)

            try:
                digest = file_digest(path)
                written_at = file_written_at(path)
            except OSError as e:
                logger.error("Failed to read request file", extra={"path": source, "error": str(e)})
                continue

            if self._seen.get(source) == (digest, written_at):
                continue
            self._seen[source] = (digest, written_at)

            handled = by_digest.get(digest)
            if handled is not None and not self._is_resubmission(handled, written_at):
                logger.info(
                    "Request file already handled, skipping",
                    extra={"path": source, "request_id": handled.id, "state": handled.state.value},
                )
                continue

            await self._handle_file(path, digest, latest.get(source), result)

        for source in set(self._seen) - present:
            del self._seen[source]

        for source, request in latest.items():
            if source in present or request.is_terminal or request.withdrawn:
                continue
            logger.info(
                "Request file removed, withdrawing request",
                extra={"path": source, "request_id": request.id},
            )
            try:
                await self._reconciler.withdraw(request.id)
            except InvalidTransitionError:
                # Finished between listing and withdrawal
                continue
            result.withdrawn.append(request.id)

        if any((result.submitted, result.rejected, result.withdrawn, result.updated, result.moved)):
            logger.info(
                "Request intake complete",
                extra={
                    "submitted": len(result.submitted),
                    "rejected": len(result.rejected),
                    "withdrawn": len(result.withdrawn),
                    "updated": len(result.updated),
                    "moved": len(result.moved),
                },
            )
        return result

    @staticmethod
    def _is_resubmission(handled: AccountRequest, written_at: datetime) -> bool:
        """A file matching a Failed request counts as new once written after the failure."""
        return handled.state == RequestState.FAILED and written_at > handled.updated_at

    async def _handle_file(
        self,
        path: Path,
        digest: str,
        previous: AccountRequest | None,
        result: IntakeResult,
    ) -> None:
        source = str(path)
        try:
            spec = load_request(path)
        except SpecLoadError as e:
            logger.error("Rejected request file", extra={"path": source, "error": str(e)})
            result.rejected.append(source)
            return

        if previous is not None and previous.state == RequestState.MANAGED:
            await self._update_managed(source, previous, spec, result)
            return

        if previous is not None and not previous.is_terminal:
            logger.warning(
                "Request file changed while its request is in flight, ignoring",
                extra={"path": source, "request_id": previous.id, "state": previous.state.value},
            )
            return

        try:
            request_id = await self._reconciler.submit(
                spec, source=source, source_digest=digest
            )
        except ValidationError as e:
            result.rejected.append(source)
            logger.warning(
                "Request file failed validation",
                extra={"path": source, "request_id": e.request_id, "code": e.code},
            )
            return
        except TransientExternalError as e:
            # Nothing was recorded; try again on the next pass
            del self._seen[source]
            logger.warning(
                "Could not validate request file, will retry",
                extra={"path": source, "error": str(e)},
            )
            return

        result.submitted.append(request_id)

    async def _update_managed(
        self,
        source: str,
        request: AccountRequest,
        spec: AccountRequestSpec,
        result: IntakeResult,
    ) -> None:
        """Apply an edited request file to the account of a Managed request."""
        # SAFETY: Managed requests always carry their account id
        account_id = request.account_id or ""
        accounts = self._reconciler.store.accounts
        accounts.update_desired_tags(account_id, spec.account_tags)
        logger.info(
            "Desired tags updated from request file",
            extra={"path": source, "account_id": account_id},
        )
        result.updated.append(account_id)

        target = spec.control_tower_parameters.managed_organizational_unit
        desired = accounts.get(account_id)
        if desired is None or desired.organizational_unit == target:
            return

        try:
            await self._reconciler.move_account(request.id, target)
        except TransientExternalError as e:
            # The OU lookup failed before anything changed; try again on the next pass
            del self._seen[source]
            logger.warning(
                "Could not check organizational unit, will retry",
                extra={"path": source, "account_id": account_id, "error": str(e)},
            )
            return
        except (ValidationError, RetryExhaustedError, TerminalExternalError) as e:
            result.rejected.append(source)
            logger.error(
                "Organizational unit change failed",
                extra={
                    "path": source,
                    "account_id": account_id,
                    "organizational_unit": target,
                    "error": str(e),
                },
            )
            return

        result.moved.append(account_id)
