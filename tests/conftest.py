# ABOUTME: Pytest fixtures and configuration for OIDC provisioner tests
# ABOUTME: Provides an in-memory control plane mirroring AzureClient

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Callable

import pytest

from oidc_provisioner.config import ProvisionerSettings, RepositoryConfig, RetryPolicy
from oidc_provisioner.naming import FederatedCredential
from oidc_provisioner.provisioner import RepositoryProvisioner
from oidc_provisioner.utils.azure import AzureCliError, AzureSession
from oidc_provisioner.utils.logging import AuditLogger

SUBSCRIPTION_ID = "00000000-aaaa-bbbb-cccc-000000000001"
TENANT_ID = "00000000-aaaa-bbbb-cccc-000000000002"

CREATE_METHODS = (
    "group_create",
    "app_create",
    "sp_create",
    "role_assignment_create",
    "federated_credential_create",
    "permission_add",
    "admin_consent",
)


@dataclass
class _Failure:
    error: Exception
    when: Callable[..., bool] | None
    times: int | None

    def triggers(self, args: tuple[Any, ...]) -> bool:
        if self.times == 0:
            return False
        if self.when is not None and not self.when(*args):
            return False
        if self.times is not None:
            self.times -= 1
        return True


class FakeAzureClient:
    """In-memory stand-in for AzureClient with the same method signatures."""

    def __init__(self) -> None:
        self.account = {
            "id": SUBSCRIPTION_ID,
            "tenantId": TENANT_ID,
            "user": {"name": "ops@example.com"},
        }
        self.groups: dict[str, str] = {}
        self.apps: list[dict[str, Any]] = []
        self.service_principals: list[dict[str, Any]] = []
        self.role_assignments: list[dict[str, Any]] = []
        self.federated_credentials: dict[str, list[dict[str, Any]]] = {}
        self.permissions: dict[str, list[dict[str, Any]]] = {}
        self.consented: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._failures: dict[str, list[_Failure]] = {}
        self._ids = itertools.count(1)

    # -- test helpers ---------------------------------------------------------

    def fail(
        self,
        method: str,
        error: Exception | None = None,
        when: Callable[..., bool] | None = None,
        times: int | None = None,
    ) -> None:
        """Make `method` raise `error` (optionally only for matching args / N times)."""
        error = error or AzureCliError([method], 1, f"ERROR: simulated {method} failure")
        self._failures.setdefault(method, []).append(_Failure(error, when, times))

    def creations(self) -> list[str]:
        return [name for name, _ in self.calls if name in CREATE_METHODS]

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        for failure in self._failures.get(method, []):
            if failure.triggers(args):
                raise failure.error

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):04d}"

    # -- AzureClient interface ------------------------------------------------

    def account_show(self, subscription_id: str | None = None) -> dict[str, Any]:
        self._record("account_show", subscription_id)
        return self.account

    def open_session(self, subscription_id: str | None = None) -> AzureSession:
        return AzureSession.from_account(self.account_show(subscription_id))

    def group_exists(self, name: str, subscription_id: str) -> bool:
        self._record("group_exists", name, subscription_id)
        return name in self.groups

    def group_create(self, name: str, location: str, subscription_id: str) -> dict[str, Any]:
        self._record("group_create", name, location, subscription_id)
        self.groups[name] = location
        return {"name": name, "location": location}

    def app_list(self, display_name: str) -> list[dict[str, Any]]:
        self._record("app_list", display_name)
        return [app for app in self.apps if app["displayName"] == display_name]

    def app_create(self, display_name: str) -> dict[str, Any]:
        self._record("app_create", display_name)
        app = {"appId": self._new_id("app"), "id": self._new_id("appobj"), "displayName": display_name}
        self.apps.append(app)
        return app

    def sp_list(self, app_id: str) -> list[dict[str, Any]]:
        self._record("sp_list", app_id)
        return [sp for sp in self.service_principals if sp["appId"] == app_id]

    def sp_create(self, app_id: str) -> dict[str, Any]:
        self._record("sp_create", app_id)
        sp = {"id": self._new_id("sp"), "appId": app_id}
        self.service_principals.append(sp)
        return sp

    def role_assignment_list(
        self, assignee: str, role: str, scope: str, subscription_id: str
    ) -> list[dict[str, Any]]:
        self._record("role_assignment_list", assignee, role, scope, subscription_id)
        object_ids = {sp["id"] for sp in self.service_principals if sp["appId"] == assignee}
        return [
            ra
            for ra in self.role_assignments
            if ra["principalId"] in object_ids and ra["role"] == role and ra["scope"] == scope
        ]

    def role_assignment_create(
        self, assignee_object_id: str, role: str, scope: str, subscription_id: str
    ) -> dict[str, Any]:
        self._record("role_assignment_create", assignee_object_id, role, scope, subscription_id)
        assignment = {"principalId": assignee_object_id, "role": role, "scope": scope}
        self.role_assignments.append(assignment)
        return assignment

    def federated_credential_list(self, app_id: str) -> list[dict[str, Any]]:
        self._record("federated_credential_list", app_id)
        return list(self.federated_credentials.get(app_id, []))

    def federated_credential_create(self, app_id: str, credential: FederatedCredential) -> dict[str, Any]:
        self._record("federated_credential_create", app_id, credential)
        body = credential.to_parameters()
        self.federated_credentials.setdefault(app_id, []).append(body)
        return body

    def permission_list(self, app_id: str) -> list[dict[str, Any]]:
        self._record("permission_list", app_id)
        return list(self.permissions.get(app_id, []))

    def permission_add(self, app_id: str, api: str, permission_id: str, permission_type: str) -> None:
        self._record("permission_add", app_id, api, permission_id, permission_type)
        self.permissions.setdefault(app_id, []).append(
            {"resourceAppId": api, "resourceAccess": [{"id": permission_id, "type": permission_type}]}
        )

    def admin_consent(self, app_id: str) -> None:
        self._record("admin_consent", app_id)
        self.consented.add(app_id)


@pytest.fixture
def fake_client() -> FakeAzureClient:
    return FakeAzureClient()


@pytest.fixture
def session() -> AzureSession:
    return AzureSession(subscription_id=SUBSCRIPTION_ID, tenant_id=TENANT_ID, user="ops@example.com")


@pytest.fixture
def settings() -> ProvisionerSettings:
    """Settings with all waits set to zero."""
    return ProvisionerSettings(
        replication_delay=0,
        retry=RetryPolicy(max_attempts=5, initial_delay=0, max_delay=0, jitter=0, deadline=300),
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def provisioner(
    fake_client: FakeAzureClient,
    session: AzureSession,
    settings: ProvisionerSettings,
    sleeps: list[float],
) -> RepositoryProvisioner:
    return RepositoryProvisioner(
        fake_client,  # type: ignore[arg-type]
        session,
        settings,
        audit=AuditLogger(),
        sleep=sleeps.append,
    )


@pytest.fixture
def svc_a() -> RepositoryConfig:
    return RepositoryConfig(org="Acme", repo_name="svc-a", region="westeurope")


@pytest.fixture
def svc_b() -> RepositoryConfig:
    return RepositoryConfig(org="Acme", repo_name="svc-b", region="westeurope")


@pytest.fixture
def svc_c() -> RepositoryConfig:
    return RepositoryConfig(org="Acme", repo_name="svc-c", region="northeurope")
