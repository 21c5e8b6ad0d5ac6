"""boto3 implementations of the collaborator interfaces.

- OrganizationsDirectory: OU and account lookups, tag application
- OrganizationsProvisioner: account creation and adoption
- IdentityCenterAssigner: IAM Identity Center user and account assignment
- StepFunctionsCustomizations: customization bundles as Step Functions runs

boto3 clients are synchronous; every call runs in the default executor so
the event loop keeps driving other requests. botocore errors are mapped to
TransientExternalError (throttling, service-side and connection failures)
or TerminalExternalError (everything else).
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
from collections.abc import Callable
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from .collaborators import (
    AccountProvisioner,
    Collaborators,
    CustomizationExecutor,
    IdentityCenter,
    NoopCustomizationExecutor,
    ObservedAccount,
    OrganizationDirectory,
    parse_organizational_unit,
)
from .config import Config
from .errors import ExternalError, TerminalExternalError, TransientExternalError
from .lifecycle import AccountRequest, SsoUser

logger = logging.getLogger(__name__)

# Error codes that describe a temporary condition on the AWS side
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalServerException",
        "ConcurrentModificationException",
        "ConflictException",
    }
)

# CreateAccountStatus.FailureReason values worth retrying
TRANSIENT_CREATE_FAILURES = frozenset({"CONCURRENT_ACCOUNT_MODIFICATION", "INTERNAL_FAILURE"})

DEFAULT_POLL_INTERVAL_SECONDS = 10.0

# Step Functions execution names: 1-80 characters from this set
_EXECUTION_NAME_INVALID = re.compile(r"[^A-Za-z0-9_-]")
MAX_EXECUTION_NAME_LENGTH = 80


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def classify_error(error: Exception, operation: str) -> ExternalError:
    """Map a botocore exception to the orchestrator's error taxonomy."""
    if isinstance(error, ClientError):
        code = error_code(error)
        message = f"{operation} failed ({code}): {error}"
        if code in TRANSIENT_ERROR_CODES:
            return TransientExternalError(message, operation)
        return TerminalExternalError(message, operation)
    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return TransientExternalError(f"{operation} connection failed: {error}", operation)
    return TerminalExternalError(f"{operation} failed: {error}", operation)


class AwsClients:
    """Lazily created boto3 clients sharing one session.

    Args:
        region: Region for regional services (Identity Center, Step Functions).
        session: Optional preconfigured boto3 session.
        clients: Prebuilt clients by service name, used instead of the session.
    """

    def __init__(
        self,
        region: str,
        session: boto3.session.Session | None = None,
        clients: dict[str, Any] | None = None,
    ) -> None:
        self._region = region
        self._session = session
        self._clients: dict[str, Any] = dict(clients or {})

    def get(self, service_name: str) -> Any:
        if service_name not in self._clients:
            if self._session is None:
                self._session = boto3.session.Session(region_name=self._region)
            self._clients[service_name] = self._session.client(
                service_name,
                region_name=self._region,
                config=BotoConfig(retries={"mode": "standard", "max_attempts": 3}),
            )
        return self._clients[service_name]


async def call_aws(func: Callable[..., Any], operation: str, **kwargs: Any) -> Any:
    """Run a synchronous boto3 call in the executor, translating its errors."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, functools.partial(func, **kwargs))
    except (ClientError, BotoCoreError) as e:
        raise classify_error(e, operation) from e


async def paginate(client: Any, method: str, key: str, **kwargs: Any) -> list[Any]:
    """Collect every item under ``key`` from a paginated boto3 operation."""

    def collect() -> list[Any]:
        items: list[Any] = []
        for page in client.get_paginator(method).paginate(**kwargs):
            items.extend(page.get(key, []))
        return items

    return await call_aws(collect, method)


def execution_name(idempotency_key: str) -> str:
    """Derive a valid, deterministic Step Functions execution name."""
    return _EXECUTION_NAME_INVALID.sub("-", idempotency_key)[:MAX_EXECUTION_NAME_LENGTH]


class OrganizationsDirectory(OrganizationDirectory):
    """AWS Organizations view of OUs, accounts and account tags."""

    def __init__(self, clients: AwsClients) -> None:
        self._clients = clients
        # OU name -> OU id, rebuilt on a miss
        self._ou_ids: dict[str, str] = {}

    @property
    def _org(self) -> Any:
        return self._clients.get("organizations")

    async def resolve_organizational_unit(self, reference: str) -> str | None:
        """Return the OU id for a name, id or "Name (ou-id)" reference."""
        name, ou_id = parse_organizational_unit(reference)
        if ou_id is not None:
            try:
                await call_aws(
                    self._org.describe_organizational_unit,
                    "describe_organizational_unit",
                    OrganizationalUnitId=ou_id,
                )
            except TerminalExternalError as e:
                cause = e.__cause__
                if isinstance(cause, ClientError) and error_code(cause) in (
                    "OrganizationalUnitNotFoundException",
                    "InvalidInputException",
                ):
                    return None
                raise
            return ou_id

        if name not in self._ou_ids:
            await self._index_organizational_units()
        return self._ou_ids.get(name or "")

    async def _index_organizational_units(self) -> None:
        index: dict[str, str] = {}
        roots = await paginate(self._org, "list_roots", "Roots")
        pending = [root["Id"] for root in roots]
        while pending:
            parent_id = pending.pop()
            children = await paginate(
                self._org,
                "list_organizational_units_for_parent",
                "OrganizationalUnits",
                ParentId=parent_id,
            )
            for ou in children:
                # Nested OUs with the same name: the first one found wins
                index.setdefault(ou["Name"], ou["Id"])
                pending.append(ou["Id"])
        self._ou_ids = index
        logger.debug("Indexed organizational units", extra={"count": len(index)})

    async def organizational_unit_exists(self, organizational_unit: str) -> bool:
        return await self.resolve_organizational_unit(organizational_unit) is not None

    async def parent_of(self, account_id: str) -> tuple[str, str]:
        """Return (parent id, parent name) of an account."""
        parents = await paginate(self._org, "list_parents", "Parents", ChildId=account_id)
        if not parents:
            raise TerminalExternalError(f"Account {account_id} has no parent", "list_parents")
        parent = parents[0]
        if parent["Type"] == "ROOT":
            return parent["Id"], "Root"
        response = await call_aws(
            self._org.describe_organizational_unit,
            "describe_organizational_unit",
            OrganizationalUnitId=parent["Id"],
        )
        return parent["Id"], response["OrganizationalUnit"]["Name"]

    async def find_account(self, account_id: str) -> ObservedAccount | None:
        try:
            response = await call_aws(
                self._org.describe_account, "describe_account", AccountId=account_id
            )
        except TerminalExternalError as e:
            cause = e.__cause__
            if isinstance(cause, ClientError) and error_code(cause) == "AccountNotFoundException":
                return None
            raise

        account = response["Account"]
        parent_id, parent_name = await self.parent_of(account_id)
        tags = await paginate(
            self._org, "list_tags_for_resource", "Tags", ResourceId=account_id
        )
        return ObservedAccount(
            account_id=account["Id"],
            email=account["Email"],
            name=account["Name"],
            organizational_unit=parent_name,
            organizational_unit_id=parent_id,
            tags={t["Key"]: t["Value"] for t in tags},
            status=account.get("Status", "ACTIVE"),
        )

    async def find_account_by_email(self, email: str) -> ObservedAccount | None:
        wanted = email.strip().lower()
        accounts = await paginate(self._org, "list_accounts", "Accounts")
        for account in accounts:
            if account["Email"].lower() == wanted:
                return await self.find_account(account["Id"])
        return None

    async def apply_tags(
        self, account_id: str, tags: dict[str, str], remove_keys: list[str] | None = None
    ) -> None:
        if tags:
            await call_aws(
                self._org.tag_resource,
                "tag_resource",
                ResourceId=account_id,
                Tags=[{"Key": k, "Value": v} for k, v in sorted(tags.items())],
            )
        if remove_keys:
            await call_aws(
                self._org.untag_resource,
                "untag_resource",
                ResourceId=account_id,
                TagKeys=list(remove_keys),
            )
        logger.info(
            "Applied account tags",
            extra={"account_id": account_id, "tags": sorted(tags), "removed": remove_keys or []},
        )


class OrganizationsProvisioner(AccountProvisioner):
    """Creates accounts with CreateAccount and places them in their OU.

    Idempotency: before creating, the provisioner looks for an account that
    already has the email, then for an in-progress CreateAccount request for
    the same account name, and waits for that instead of starting another.
    """

    def __init__(
        self,
        clients: AwsClients,
        directory: OrganizationsDirectory,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._clients = clients
        self._directory = directory
        self._poll_interval = poll_interval_seconds

    @property
    def _org(self) -> Any:
        return self._clients.get("organizations")

    async def provision_account(self, request: AccountRequest) -> str:
        existing = await self._directory.find_account_by_email(request.account_email)
        if existing is not None:
            logger.info(
                "Account already exists for email",
                extra={"request_id": request.id, "account_id": existing.account_id},
            )
            account_id = existing.account_id
        else:
            status_id = await self._in_progress_request(request.account_name)
            if status_id is None:
                response = await call_aws(
                    self._org.create_account,
                    "create_account",
                    Email=request.account_email,
                    AccountName=request.account_name,
                    IamUserAccessToBilling="DENY",
                )
                status_id = response["CreateAccountStatus"]["Id"]
                logger.info(
                    "Account creation started",
                    extra={"request_id": request.id, "create_request_id": status_id},
                )
            account_id = await self._wait_for_creation(status_id, request)

        await self._ensure_in_organizational_unit(account_id, request.organizational_unit)
        return account_id

    async def import_account(self, request: AccountRequest) -> str:
        account_id = request.existing_account_id or ""
        observed = await self._directory.find_account(account_id)
        if observed is None:
            raise TerminalExternalError(
                f"Account {account_id} is not in the organization", "import_account"
            )
        if observed.email.lower() != request.email_key:
            raise TerminalExternalError(
                f"Account {account_id} is registered to {observed.email}, "
                f"not {request.account_email}",
                "import_account",
            )

        await self._ensure_in_organizational_unit(account_id, request.organizational_unit)
        logger.info(
            "Existing account adopted",
            extra={"request_id": request.id, "account_id": account_id},
        )
        return account_id

    async def move_account(self, account_id: str, organizational_unit: str) -> None:
        await self._ensure_in_organizational_unit(account_id, organizational_unit)

    async def _in_progress_request(self, account_name: str) -> str | None:
        statuses = await paginate(
            self._org,
            "list_create_account_status",
            "CreateAccountStatuses",
            States=["IN_PROGRESS"],
        )
        for status in statuses:
            if status.get("AccountName") == account_name:
                return status["Id"]
        return None

    async def _wait_for_creation(self, status_id: str, request: AccountRequest) -> str:
        while True:
            response = await call_aws(
                self._org.describe_create_account_status,
                "describe_create_account_status",
                CreateAccountRequestId=status_id,
            )
            status = response["CreateAccountStatus"]
            state = status["State"]

            if state == "SUCCEEDED":
                return status["AccountId"]

            if state == "FAILED":
                reason = status.get("FailureReason", "UNKNOWN")
                if reason == "EMAIL_ALREADY_EXISTS":
                    existing = await self._directory.find_account_by_email(request.account_email)
                    if existing is not None:
                        return existing.account_id
                message = f"Account creation failed: {reason}"
                if reason in TRANSIENT_CREATE_FAILURES:
                    raise TransientExternalError(message, "create_account")
                raise TerminalExternalError(message, "create_account")

            await asyncio.sleep(self._poll_interval)

    async def _ensure_in_organizational_unit(self, account_id: str, reference: str) -> None:
        target = await self._directory.resolve_organizational_unit(reference)
        if target is None:
            raise TerminalExternalError(
                f"Organizational unit does not exist: {reference}", "move_account"
            )
        parent_id, _ = await self._directory.parent_of(account_id)
        if parent_id == target:
            return
        await call_aws(
            self._org.move_account,
            "move_account",
            AccountId=account_id,
            SourceParentId=parent_id,
            DestinationParentId=target,
        )
        logger.info(
            "Moved account into organizational unit",
            extra={"account_id": account_id, "from": parent_id, "to": target},
        )


class IdentityCenterAssigner(IdentityCenter):
    """Creates the SSO user if needed and assigns it a permission set."""

    def __init__(
        self,
        clients: AwsClients,
        identity_store_id: str,
        instance_arn: str,
        permission_set_arn: str,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._clients = clients
        self._identity_store_id = identity_store_id
        self._instance_arn = instance_arn
        self._permission_set_arn = permission_set_arn
        self._poll_interval = poll_interval_seconds

    async def assign_user(self, account_id: str, user: SsoUser) -> None:
        user_id = await self._ensure_user(user)
        sso_admin = self._clients.get("sso-admin")

        assignments = await paginate(
            sso_admin,
            "list_account_assignments",
            "AccountAssignments",
            InstanceArn=self._instance_arn,
            AccountId=account_id,
            PermissionSetArn=self._permission_set_arn,
        )
        if any(
            a.get("PrincipalType") == "USER" and a.get("PrincipalId") == user_id
            for a in assignments
        ):
            logger.debug(
                "User already assigned", extra={"account_id": account_id, "user_id": user_id}
            )
            return

        response = await call_aws(
            sso_admin.create_account_assignment,
            "create_account_assignment",
            InstanceArn=self._instance_arn,
            TargetId=account_id,
            TargetType="AWS_ACCOUNT",
            PermissionSetArn=self._permission_set_arn,
            PrincipalType="USER",
            PrincipalId=user_id,
        )
        status = response["AccountAssignmentCreationStatus"]
        while status["Status"] == "IN_PROGRESS":
            await asyncio.sleep(self._poll_interval)
            response = await call_aws(
                sso_admin.describe_account_assignment_creation_status,
                "describe_account_assignment_creation_status",
                InstanceArn=self._instance_arn,
                AccountAssignmentCreationRequestId=status["RequestId"],
            )
            status = response["AccountAssignmentCreationStatus"]

        if status["Status"] == "FAILED":
            raise TerminalExternalError(
                f"Account assignment failed: {status.get('FailureReason', 'unknown')}",
                "create_account_assignment",
            )
        logger.info("SSO user assigned", extra={"account_id": account_id, "user_id": user_id})

    async def _ensure_user(self, user: SsoUser) -> str:
        identity_store = self._clients.get("identitystore")
        user_id = await self._find_user(user.email)
        if user_id is not None:
            return user_id

        try:
            response = await call_aws(
                identity_store.create_user,
                "create_user",
                IdentityStoreId=self._identity_store_id,
                UserName=user.email,
                DisplayName=f"{user.first_name} {user.last_name}",
                Name={"GivenName": user.first_name, "FamilyName": user.last_name},
                Emails=[{"Value": user.email, "Type": "work", "Primary": True}],
            )
        except TransientExternalError:
            # ConflictException: created concurrently, look it up again
            user_id = await self._find_user(user.email)
            if user_id is None:
                raise
            return user_id

        logger.info("SSO user created", extra={"user_id": response["UserId"]})
        return response["UserId"]

    async def _find_user(self, email: str) -> str | None:
        identity_store = self._clients.get("identitystore")
        try:
            response = await call_aws(
                identity_store.get_user_id,
                "get_user_id",
                IdentityStoreId=self._identity_store_id,
                AlternateIdentifier={
                    "UniqueAttribute": {"AttributePath": "userName", "AttributeValue": email}
                },
            )
        except TerminalExternalError as e:
            cause = e.__cause__
            if isinstance(cause, ClientError) and error_code(cause) == "ResourceNotFoundException":
                return None
            raise
        return response["UserId"]


class StepFunctionsCustomizations(CustomizationExecutor):
    """Runs a customization bundle as one execution of a state machine.

    The execution name is derived from the idempotency key, so starting the
    same run twice attaches to the first execution.
    """

    def __init__(
        self,
        clients: AwsClients,
        state_machine_arn: str,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._clients = clients
        self._state_machine_arn = state_machine_arn
        self._poll_interval = poll_interval_seconds

    def execution_arn(self, name: str) -> str:
        base = self._state_machine_arn.replace(":stateMachine:", ":execution:", 1)
        return f"{base}:{name}"

    async def run_customizations(
        self,
        account_id: str,
        customization_name: str,
        custom_fields: dict[str, str],
        idempotency_key: str,
    ) -> None:
        sfn = self._clients.get("stepfunctions")
        name = execution_name(idempotency_key)
        payload = json.dumps(
            {
                "account_id": account_id,
                "customization_name": customization_name,
                "custom_fields": custom_fields,
            },
            sort_keys=True,
        )

        try:
            response = await call_aws(
                sfn.start_execution,
                "start_execution",
                stateMachineArn=self._state_machine_arn,
                name=name,
                input=payload,
            )
            arn = response["executionArn"]
            logger.info(
                "Customization run started",
                extra={"account_id": account_id, "execution_arn": arn},
            )
        except TerminalExternalError as e:
            cause = e.__cause__
            already_started = (
                isinstance(cause, ClientError) and error_code(cause) == "ExecutionAlreadyExists"
            )
            if not already_started:
                raise
            arn = self.execution_arn(name)
            logger.info(
                "Attaching to existing customization run",
                extra={"account_id": account_id, "execution_arn": arn},
            )

        while True:
            response = await call_aws(
                sfn.describe_execution, "describe_execution", executionArn=arn
            )
            status = response["status"]
            if status == "SUCCEEDED":
                logger.info(
                    "Customization run succeeded",
                    extra={"account_id": account_id, "execution_arn": arn},
                )
                return
            if status != "RUNNING":
                detail = response.get("error") or response.get("cause") or status
                raise TerminalExternalError(
                    f"Customization {customization_name} ended {status}: {detail}",
                    "run_customizations",
                )
            await asyncio.sleep(self._poll_interval)


def build_collaborators(config: Config, clients: AwsClients | None = None) -> Collaborators:
    """Wire the AWS collaborators described by ``config``."""
    clients = clients or AwsClients(config.region)
    directory = OrganizationsDirectory(clients)

    customizations: CustomizationExecutor
    if config.customization_state_machine_arn:
        customizations = StepFunctionsCustomizations(
            clients, config.customization_state_machine_arn
        )
    else:
        customizations = NoopCustomizationExecutor()

    identity: IdentityCenter | None = None
    if config.identity_store_id and config.sso_instance_arn and config.sso_permission_set_arn:
        identity = IdentityCenterAssigner(
            clients,
            config.identity_store_id,
            config.sso_instance_arn,
            config.sso_permission_set_arn,
        )

    return Collaborators(
        directory=directory,
        provisioner=OrganizationsProvisioner(clients, directory),
        customizations=customizations,
        identity=identity,
    )
