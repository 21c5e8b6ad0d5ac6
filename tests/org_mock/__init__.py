"""In-memory organization for orchestrator tests.

Provides fake collaborators (organization directory, account provisioner,
identity center, customization executor) over shared in-memory state, with
fault injection for transient and terminal failures and a call log to
assert idempotency.

Usage:
    from org_mock import MockOrganization, create_mock_collaborators

    org = MockOrganization()
    org.fail("provision_account", TransientExternalError("throttled"))
    reconciler = Reconciler(config, store, create_mock_collaborators(org), events)

    # Assert on organization state
    assert org.accounts_with_email("a@x.com") == 1
"""

from .organization import (
    DEFAULT_OUS,
    MockAccount,
    MockCustomizations,
    MockDirectory,
    MockIdentityCenter,
    MockOrganization,
    MockProvisioner,
    create_mock_collaborators,
)
from .requests import make_spec, request_body

__all__ = [
    "DEFAULT_OUS",
    "MockAccount",
    "MockCustomizations",
    "MockDirectory",
    "MockIdentityCenter",
    "MockOrganization",
    "MockProvisioner",
    "create_mock_collaborators",
    "make_spec",
    "request_body",
]
