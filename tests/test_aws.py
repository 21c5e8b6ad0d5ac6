"""Tests for the boto3 collaborators.

Clients are replaced with MagicMock objects; one test exercises a real
botocore client through Stubber to pin the request and error shapes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError
from botocore.stub import Stubber
from org_mock import make_spec

from orchestrator.aws import (
    AwsClients,
    IdentityCenterAssigner,
    OrganizationsDirectory,
    OrganizationsProvisioner,
    StepFunctionsCustomizations,
    build_collaborators,
    call_aws,
    classify_error,
    execution_name,
)
from orchestrator.collaborators import NoopCustomizationExecutor
from orchestrator.config import Config
from orchestrator.errors import TerminalExternalError, TransientExternalError
from orchestrator.lifecycle import AccountRequest, SsoUser

ROOT_ID = "r-ab12"
WORKLOAD_OU = "ou-ab12-11111111"
SANDBOX_OU = "ou-ab12-22222222"
ACCOUNT_ID = "123456789012"


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def with_pages(client: MagicMock, pages: dict[str, Callable[[dict[str, Any]], list[Any]]]) -> None:
    """Route get_paginator(method).paginate(**kwargs) to ``pages[method](kwargs)``."""

    def get_paginator(method: str) -> MagicMock:
        paginator = MagicMock()
        paginator.paginate.side_effect = lambda **kwargs: pages[method](kwargs)
        return paginator

    client.get_paginator.side_effect = get_paginator


def organizations_client(
    accounts: list[dict[str, str]] | None = None,
    parent: tuple[str, str] = (WORKLOAD_OU, "ORGANIZATIONAL_UNIT"),
    tags: dict[str, str] | None = None,
    in_progress: list[dict[str, str]] | None = None,
) -> MagicMock:
    """An Organizations client with a root, two OUs and the given accounts."""
    client = MagicMock()
    ous = {
        ROOT_ID: [
            {"Id": WORKLOAD_OU, "Name": "Workload-OU"},
            {"Id": SANDBOX_OU, "Name": "Sandbox"},
        ]
    }
    names = {WORKLOAD_OU: "Workload-OU", SANDBOX_OU: "Sandbox"}
    accounts = accounts or []

    with_pages(
        client,
        {
            "list_roots": lambda kw: [{"Roots": [{"Id": ROOT_ID}]}],
            "list_organizational_units_for_parent": lambda kw: [
                {"OrganizationalUnits": ous.get(kw["ParentId"], [])}
            ],
            "list_accounts": lambda kw: [{"Accounts": accounts}],
            "list_parents": lambda kw: [{"Parents": [{"Id": parent[0], "Type": parent[1]}]}],
            "list_tags_for_resource": lambda kw: [
                {"Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()]}
            ],
            "list_create_account_status": lambda kw: [
                {"CreateAccountStatuses": in_progress or []}
            ],
        },
    )

    def describe_ou(OrganizationalUnitId: str) -> dict[str, Any]:
        if OrganizationalUnitId not in names:
            raise client_error("OrganizationalUnitNotFoundException")
        return {
            "OrganizationalUnit": {"Id": OrganizationalUnitId, "Name": names[OrganizationalUnitId]}
        }

    def describe_account(AccountId: str) -> dict[str, Any]:
        for account in accounts:
            if account["Id"] == AccountId:
                return {"Account": account}
        raise client_error("AccountNotFoundException")

    client.describe_organizational_unit.side_effect = describe_ou
    client.describe_account.side_effect = describe_account
    return client


def request(**kwargs: Any) -> AccountRequest:
    return make_spec(**kwargs).to_request()


def directory_for(client: MagicMock) -> OrganizationsDirectory:
    return OrganizationsDirectory(AwsClients("us-east-1", clients={"organizations": client}))


class TestErrorMapping:
    """Tests for classify_error and call_aws."""

    def test_throttling_is_transient(self) -> None:
        """Test that throttling codes are retried."""
        error = classify_error(client_error("ThrottlingException"), "create_account")

        assert isinstance(error, TransientExternalError)
        assert error.operation == "create_account"

    def test_access_denied_is_terminal(self) -> None:
        """Test that other service errors are terminal."""
        assert isinstance(
            classify_error(client_error("AccessDeniedException"), "op"), TerminalExternalError
        )

    def test_connection_errors_are_transient(self) -> None:
        """Test that network failures are retried."""
        error = EndpointConnectionError(endpoint_url="https://organizations.amazonaws.com")

        assert isinstance(classify_error(error, "op"), TransientExternalError)

    def test_missing_credentials_are_terminal(self) -> None:
        """Test that configuration problems are not retried."""
        assert isinstance(classify_error(NoCredentialsError(), "op"), TerminalExternalError)

    @pytest.mark.asyncio
    async def test_call_aws_translates_errors(self) -> None:
        """Test that errors raised in the executor keep their cause."""
        func = MagicMock(side_effect=client_error("TooManyRequestsException"))

        with pytest.raises(TransientExternalError) as exc_info:
            await call_aws(func, "list_accounts", MaxResults=20)

        func.assert_called_once_with(MaxResults=20)
        assert isinstance(exc_info.value.__cause__, ClientError)

    def test_execution_name(self) -> None:
        """Test that execution names are sanitized and bounded."""
        assert execution_name("req-abc.def/1") == "req-abc-def-1"
        assert len(execution_name("x" * 200)) == 80


class TestOrganizationsDirectory:
    """Tests for OrganizationsDirectory."""

    @pytest.mark.asyncio
    async def test_resolve_by_name_and_id(self) -> None:
        """Test OU references by name, id and display form."""
        directory = directory_for(organizations_client())

        assert await directory.resolve_organizational_unit("Sandbox") == SANDBOX_OU
        assert await directory.resolve_organizational_unit(WORKLOAD_OU) == WORKLOAD_OU
        assert (
            await directory.resolve_organizational_unit(f"Workload ({WORKLOAD_OU})")
            == WORKLOAD_OU
        )
        assert await directory.organizational_unit_exists("Nope") is False
        assert await directory.organizational_unit_exists("ou-ab12-99999999") is False

    @pytest.mark.asyncio
    async def test_find_account(self) -> None:
        """Test that an account is described with its OU and tags."""
        client = organizations_client(
            accounts=[{"Id": ACCOUNT_ID, "Email": "a@x.com", "Name": "A", "Status": "ACTIVE"}],
            tags={"team": "payments"},
        )
        directory = directory_for(client)

        observed = await directory.find_account(ACCOUNT_ID)

        assert observed is not None
        assert observed.organizational_unit == "Workload-OU"
        assert observed.organizational_unit_id == WORKLOAD_OU
        assert observed.tags == {"team": "payments"}
        assert observed.in_organizational_unit("Workload-OU")

    @pytest.mark.asyncio
    async def test_find_account_missing(self) -> None:
        """Test that an unknown account id is None rather than an error."""
        directory = directory_for(organizations_client())

        assert await directory.find_account(ACCOUNT_ID) is None

    @pytest.mark.asyncio
    async def test_find_account_by_email_is_case_insensitive(self) -> None:
        """Test email lookups across the account list."""
        client = organizations_client(
            accounts=[{"Id": ACCOUNT_ID, "Email": "A@X.com", "Name": "A", "Status": "ACTIVE"}],
            parent=(ROOT_ID, "ROOT"),
        )
        directory = directory_for(client)

        observed = await directory.find_account_by_email("a@x.com ")

        assert observed is not None
        assert observed.account_id == ACCOUNT_ID
        assert observed.organizational_unit == "Root"

    @pytest.mark.asyncio
    async def test_apply_tags(self) -> None:
        """Test that tags are set and unexpected keys removed."""
        client = organizations_client()
        directory = directory_for(client)

        await directory.apply_tags(ACCOUNT_ID, {"team": "payments"}, remove_keys=["owner"])

        client.tag_resource.assert_called_once_with(
            ResourceId=ACCOUNT_ID, Tags=[{"Key": "team", "Value": "payments"}]
        )
        client.untag_resource.assert_called_once_with(ResourceId=ACCOUNT_ID, TagKeys=["owner"])

    @pytest.mark.asyncio
    async def test_stubbed_client_shapes(self) -> None:
        """Test the describe_organizational_unit request against botocore's model."""
        client = boto3.client(
            "organizations",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        directory = directory_for(client)

        with Stubber(client) as stubber:
            stubber.add_response(
                "describe_organizational_unit",
                {
                    "OrganizationalUnit": {
                        "Id": WORKLOAD_OU,
                        "Arn": f"arn:aws:organizations::111111111111:ou/o-abc/{WORKLOAD_OU}",
                        "Name": "Workload-OU",
                    }
                },
                {"OrganizationalUnitId": WORKLOAD_OU},
            )
            stubber.add_client_error(
                "describe_organizational_unit",
                service_error_code="OrganizationalUnitNotFoundException",
                expected_params={"OrganizationalUnitId": SANDBOX_OU},
            )

            assert await directory.organizational_unit_exists(WORKLOAD_OU) is True
            assert await directory.organizational_unit_exists(SANDBOX_OU) is False
            stubber.assert_no_pending_responses()


class TestOrganizationsProvisioner:
    """Tests for OrganizationsProvisioner."""

    def _provisioner(self, client: MagicMock) -> OrganizationsProvisioner:
        clients = AwsClients("us-east-1", clients={"organizations": client})
        return OrganizationsProvisioner(
            clients, OrganizationsDirectory(clients), poll_interval_seconds=0
        )

    @pytest.mark.asyncio
    async def test_creates_and_moves_account(self) -> None:
        """Test the create, poll and move sequence for a new account."""
        client = organizations_client(parent=(ROOT_ID, "ROOT"))
        client.create_account.return_value = {"CreateAccountStatus": {"Id": "car-1"}}
        client.describe_create_account_status.side_effect = [
            {"CreateAccountStatus": {"Id": "car-1", "State": "IN_PROGRESS"}},
            {"CreateAccountStatus": {"Id": "car-1", "State": "SUCCEEDED", "AccountId": ACCOUNT_ID}},
        ]

        account_id = await self._provisioner(client).provision_account(request())

        assert account_id == ACCOUNT_ID
        client.create_account.assert_called_once_with(
            Email="a@x.com", AccountName="Workload A", IamUserAccessToBilling="DENY"
        )
        client.move_account.assert_called_once_with(
            AccountId=ACCOUNT_ID, SourceParentId=ROOT_ID, DestinationParentId=WORKLOAD_OU
        )

    @pytest.mark.asyncio
    async def test_existing_email_is_reused(self) -> None:
        """Test that an account already holding the email is not created again."""
        client = organizations_client(
            accounts=[{"Id": ACCOUNT_ID, "Email": "a@x.com", "Name": "A", "Status": "ACTIVE"}]
        )

        account_id = await self._provisioner(client).provision_account(request())

        assert account_id == ACCOUNT_ID
        client.create_account.assert_not_called()
        client.move_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_in_progress_creation_is_awaited(self) -> None:
        """Test that an unfinished CreateAccount for the same name is not started twice."""
        client = organizations_client(
            in_progress=[{"Id": "car-9", "AccountName": "Workload A", "State": "IN_PROGRESS"}]
        )
        client.describe_create_account_status.return_value = {
            "CreateAccountStatus": {"Id": "car-9", "State": "SUCCEEDED", "AccountId": ACCOUNT_ID}
        }

        account_id = await self._provisioner(client).provision_account(request())

        assert account_id == ACCOUNT_ID
        client.create_account.assert_not_called()
        client.describe_create_account_status.assert_called_with(CreateAccountRequestId="car-9")

    @pytest.mark.asyncio
    async def test_failure_reasons(self) -> None:
        """Test that creation failures are classified by reason."""
        client = organizations_client()
        client.create_account.return_value = {"CreateAccountStatus": {"Id": "car-1"}}
        client.describe_create_account_status.side_effect = [
            {"CreateAccountStatus": {"State": "FAILED", "FailureReason": "INTERNAL_FAILURE"}},
            {"CreateAccountStatus": {"State": "FAILED", "FailureReason": "ACCOUNT_LIMIT_EXCEEDED"}},
        ]
        provisioner = self._provisioner(client)

        with pytest.raises(TransientExternalError):
            await provisioner.provision_account(request())
        with pytest.raises(TerminalExternalError):
            await provisioner.provision_account(request())

    @pytest.mark.asyncio
    async def test_import_checks_email(self) -> None:
        """Test that onboarding refuses an account registered to another email."""
        client = organizations_client(
            accounts=[{"Id": ACCOUNT_ID, "Email": "other@x.com", "Name": "A", "Status": "ACTIVE"}]
        )

        with pytest.raises(TerminalExternalError):
            await self._provisioner(client).import_account(
                request(onboarding_account_id=ACCOUNT_ID)
            )

    @pytest.mark.asyncio
    async def test_import_moves_account(self) -> None:
        """Test that an adopted account is placed in the requested OU."""
        client = organizations_client(
            accounts=[{"Id": ACCOUNT_ID, "Email": "a@x.com", "Name": "A", "Status": "ACTIVE"}],
            parent=(SANDBOX_OU, "ORGANIZATIONAL_UNIT"),
        )

        account_id = await self._provisioner(client).import_account(
            request(onboarding_account_id=ACCOUNT_ID)
        )

        assert account_id == ACCOUNT_ID
        client.move_account.assert_called_once_with(
            AccountId=ACCOUNT_ID, SourceParentId=SANDBOX_OU, DestinationParentId=WORKLOAD_OU
        )

    @pytest.mark.asyncio
    async def test_move_account(self) -> None:
        """Test that a managed account is moved between OUs."""
        client = organizations_client(parent=(SANDBOX_OU, "ORGANIZATIONAL_UNIT"))

        await self._provisioner(client).move_account(ACCOUNT_ID, "Workload-OU")

        client.move_account.assert_called_once_with(
            AccountId=ACCOUNT_ID, SourceParentId=SANDBOX_OU, DestinationParentId=WORKLOAD_OU
        )

    @pytest.mark.asyncio
    async def test_move_account_already_in_place(self) -> None:
        """Test that an account already in the OU is left alone."""
        client = organizations_client()

        await self._provisioner(client).move_account(ACCOUNT_ID, "Workload-OU")

        client.move_account.assert_not_called()


class TestIdentityCenterAssigner:
    """Tests for IdentityCenterAssigner."""

    USER = SsoUser("owner@x.com", "Ada", "Lovelace")

    def _assigner(self, identity_store: MagicMock, sso_admin: MagicMock) -> IdentityCenterAssigner:
        clients = AwsClients(
            "us-east-1", clients={"identitystore": identity_store, "sso-admin": sso_admin}
        )
        return IdentityCenterAssigner(
            clients, "d-1234567890", "arn:sso:instance", "arn:sso:ps", poll_interval_seconds=0
        )

    @pytest.mark.asyncio
    async def test_existing_assignment_is_kept(self) -> None:
        """Test that nothing is created when the user is already assigned."""
        identity_store = MagicMock()
        identity_store.get_user_id.return_value = {"UserId": "u-1"}
        sso_admin = MagicMock()
        with_pages(
            sso_admin,
            {
                "list_account_assignments": lambda kw: [
                    {"AccountAssignments": [{"PrincipalType": "USER", "PrincipalId": "u-1"}]}
                ]
            },
        )

        await self._assigner(identity_store, sso_admin).assign_user(ACCOUNT_ID, self.USER)

        identity_store.create_user.assert_not_called()
        sso_admin.create_account_assignment.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_user_and_assignment(self) -> None:
        """Test the create user, assign and poll sequence."""
        identity_store = MagicMock()
        identity_store.get_user_id.side_effect = client_error("ResourceNotFoundException")
        identity_store.create_user.return_value = {"UserId": "u-2"}
        sso_admin = MagicMock()
        with_pages(sso_admin, {"list_account_assignments": lambda kw: [{"AccountAssignments": []}]})
        sso_admin.create_account_assignment.return_value = {
            "AccountAssignmentCreationStatus": {"Status": "IN_PROGRESS", "RequestId": "rq-1"}
        }
        sso_admin.describe_account_assignment_creation_status.return_value = {
            "AccountAssignmentCreationStatus": {"Status": "SUCCEEDED", "RequestId": "rq-1"}
        }

        await self._assigner(identity_store, sso_admin).assign_user(ACCOUNT_ID, self.USER)

        assert identity_store.create_user.call_args.kwargs["UserName"] == "owner@x.com"
        assert sso_admin.create_account_assignment.call_args.kwargs["PrincipalId"] == "u-2"
        sso_admin.describe_account_assignment_creation_status.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_assignment_is_terminal(self) -> None:
        """Test that a FAILED assignment status is not retried."""
        identity_store = MagicMock()
        identity_store.get_user_id.return_value = {"UserId": "u-1"}
        sso_admin = MagicMock()
        with_pages(sso_admin, {"list_account_assignments": lambda kw: [{"AccountAssignments": []}]})
        sso_admin.create_account_assignment.return_value = {
            "AccountAssignmentCreationStatus": {"Status": "FAILED", "FailureReason": "denied"}
        }

        with pytest.raises(TerminalExternalError):
            await self._assigner(identity_store, sso_admin).assign_user(ACCOUNT_ID, self.USER)


class TestStepFunctionsCustomizations:
    """Tests for StepFunctionsCustomizations."""

    MACHINE = "arn:aws:states:us-east-1:111111111111:stateMachine:baseline"

    def _executor(self, sfn: MagicMock) -> StepFunctionsCustomizations:
        clients = AwsClients("us-east-1", clients={"stepfunctions": sfn})
        return StepFunctionsCustomizations(clients, self.MACHINE, poll_interval_seconds=0)

    @pytest.mark.asyncio
    async def test_runs_to_success(self) -> None:
        """Test that the execution is named after the idempotency key."""
        sfn = MagicMock()
        sfn.start_execution.return_value = {"executionArn": "arn:exec"}
        sfn.describe_execution.side_effect = [{"status": "RUNNING"}, {"status": "SUCCEEDED"}]

        await self._executor(sfn).run_customizations(ACCOUNT_ID, "baseline", {}, "req-1")

        assert sfn.start_execution.call_args.kwargs["name"] == "req-1"
        sfn.describe_execution.assert_called_with(executionArn="arn:exec")

    @pytest.mark.asyncio
    async def test_attaches_to_existing_execution(self) -> None:
        """Test that a repeated key waits on the original execution."""
        sfn = MagicMock()
        sfn.start_execution.side_effect = client_error("ExecutionAlreadyExists")
        sfn.describe_execution.return_value = {"status": "SUCCEEDED"}

        await self._executor(sfn).run_customizations(ACCOUNT_ID, "baseline", {}, "req-1")

        sfn.describe_execution.assert_called_once_with(
            executionArn="arn:aws:states:us-east-1:111111111111:execution:baseline:req-1"
        )

    @pytest.mark.asyncio
    async def test_failed_execution_is_terminal(self) -> None:
        """Test that a failed bundle fails the call."""
        sfn = MagicMock()
        sfn.start_execution.return_value = {"executionArn": "arn:exec"}
        sfn.describe_execution.return_value = {"status": "FAILED", "error": "States.TaskFailed"}

        with pytest.raises(TerminalExternalError) as exc_info:
            await self._executor(sfn).run_customizations(ACCOUNT_ID, "baseline", {}, "req-1")

        assert "States.TaskFailed" in str(exc_info.value)


class TestBuildCollaborators:
    """Tests for build_collaborators."""

    def test_optional_collaborators(self, config: Config) -> None:
        """Test that unset ARNs leave customizations as a no-op and skip SSO."""
        collaborators = build_collaborators(config, AwsClients("us-east-1", clients={}))

        assert isinstance(collaborators.customizations, NoopCustomizationExecutor)
        assert collaborators.identity is None
        assert isinstance(collaborators.provisioner, OrganizationsProvisioner)
