# ABOUTME: Per-repository provisioner ensuring RG, identity, role and OIDC trust exist
# ABOUTME: Each step looks the object up by its deterministic name before creating it

"""
Per-repository provisioning.

For one repository the provisioner ensures, in order:

1. resource group       rg-<repo>, in the repository's region
2. app registration     sp-<repo>-github
3. service principal    for that app registration
4. role assignment      Owner on rg-<repo>, and nowhere else
5. federated creds      main branch and pull requests of <org>/<repo>

Every step is lookup-then-create: present objects are logged and skipped,
absent ones are created. Nothing is ever updated or deleted, and a failure
leaves whatever was already created in place; a re-run picks up where the
failed run stopped.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
)

from oidc_provisioner import naming
from oidc_provisioner.utils.azure import AzureCliError
from oidc_provisioner.utils.logging import AuditLogger
from oidc_provisioner.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from oidc_provisioner.config import ProvisionerSettings, RepositoryConfig, RetryPolicy
    from oidc_provisioner.utils.azure import AzureClient, AzureSession

logger = structlog.get_logger(__name__)


class StepResult(str, Enum):
    CREATED = "created"
    EXISTS = "exists"


class ProvisioningError(Exception):
    """A provisioning step could not complete; the repository run is aborted."""

    def __init__(self, step: str, reason: str, repo: str | None = None) -> None:
        self.step = step
        self.reason = reason
        self.repo = repo
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.step}: {self.reason}"


@dataclass(frozen=True)
class ProvisionedIdentity:
    """What a successful run produced, including the values CI needs."""

    repo: str
    app_display_name: str
    app_id: str
    service_principal_id: str
    tenant_id: str
    subscription_id: str
    role_scope: str
    resource_group: str | None = None

    def secrets(self) -> dict[str, str]:
        """Values to store as GitHub Actions secrets for azure/login."""
        return {
            "AZURE_CLIENT_ID": self.app_id,
            "AZURE_TENANT_ID": self.tenant_id,
            "AZURE_SUBSCRIPTION_ID": self.subscription_id,
        }


def build_retrying(policy: RetryPolicy, sleep: Callable[[float], None]) -> Retrying:
    """Translate a RetryPolicy into a tenacity Retrying controller."""
    return Retrying(
        retry=retry_if_exception_type(AzureCliError),
        stop=stop_after_attempt(policy.max_attempts) | stop_after_delay(policy.deadline),
        wait=wait_exponential_jitter(
            initial=policy.initial_delay,
            max=policy.max_delay,
            exp_base=policy.exp_base,
            jitter=policy.jitter,
        ),
        sleep=sleep,
        before_sleep=lambda state: logger.warning(
            "Retrying after eventual-consistency failure",
            attempt=state.attempt_number,
            error=str(state.outcome.exception()) if state.outcome else None,
        ),
    )


class RepositoryProvisioner:
    """
    Runs the provisioning steps for one repository at a time.

    Args:
        client: control-plane client; every remote call goes through it.
        session: subscription and tenant the run targets.
        settings: timing and retry configuration.
        audit: audit trail; a structlog-backed one is used when omitted.
        guard: least-privilege check on role scopes.
        sleep: injected so tests do not wait for replication pauses.
    """

    def __init__(
        self,
        client: AzureClient,
        session: AzureSession,
        settings: ProvisionerSettings,
        audit: AuditLogger | None = None,
        guard: SafetyGuard | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._session = session
        self._settings = settings
        self._audit = audit or AuditLogger()
        self._guard = guard or SafetyGuard()
        self._sleep = sleep

    @property
    def session(self) -> AzureSession:
        return self._session

    def role_scope(self, repo: RepositoryConfig) -> str:
        """Scope Owner is granted on: the repository's own resource group."""
        return naming.resource_group_scope(
            self._session.subscription_id, naming.resource_group_name(repo.repo_name)
        )

    def provision(self, repo: RepositoryConfig) -> ProvisionedIdentity:
        """
        Ensure every object for `repo` exists.

        Raises:
            ProvisioningError: The first step that failed; later steps were
                not attempted.
        """
        log = logger.bind(repo=repo.full_name)
        log.info("Provisioning repository", region=repo.region)

        group = naming.resource_group_name(repo.repo_name)
        self._step(repo, "resource_group", lambda: self.ensure_resource_group(group, repo.region))
        identity = self._ensure_identity(repo, resource_group=group)

        log.info("Repository provisioned", app_id=identity.app_id, scope=identity.role_scope)
        return identity

    def _ensure_identity(self, repo: RepositoryConfig, resource_group: str | None) -> ProvisionedIdentity:
        """App registration, service principal, role assignment, federated credentials.

        The role scope is checked against the resource group this run
        ensured, or the subscription when there is none.
        """
        display_name = naming.app_display_name(repo.repo_name)
        scope = self.role_scope(repo)
        subscription = self._session.subscription_id
        if resource_group:
            allowed = naming.resource_group_scope(subscription, resource_group)
        else:
            allowed = naming.subscription_scope(subscription)

        app = self._step(repo, "app_registration", lambda: self.ensure_app_registration(display_name))
        app_id = app["appId"]
        sp = self._step(repo, "service_principal", lambda: self.ensure_service_principal(app_id))
        sp_object_id = sp["id"]
        self._step(
            repo,
            "role_assignment",
            lambda: self.ensure_role_assignment(app_id, sp_object_id, scope, allowed),
        )
        self._step(
            repo,
            "federated_credentials",
            lambda: self.ensure_federated_credentials(app_id, repo.org, repo.repo_name),
        )

        return ProvisionedIdentity(
            repo=repo.full_name,
            app_display_name=display_name,
            app_id=app_id,
            service_principal_id=sp_object_id,
            tenant_id=self._session.tenant_id,
            subscription_id=self._session.subscription_id,
            role_scope=scope,
            resource_group=resource_group,
        )

    def _step(self, repo: RepositoryConfig, step: str, action: Callable[[], Any]) -> Any:
        """Run one step; any failure becomes a ProvisioningError naming repo and step."""
        try:
            return action()
        except ProvisioningError as e:
            e.repo = e.repo or repo.full_name
            error: ProvisioningError = e
        except Exception as e:
            error = ProvisioningError(step, str(e), repo=repo.full_name)
            error.__cause__ = e

        self._audit.log_error(error.step, repo.full_name, error.reason)
        logger.error("Provisioning step failed", repo=repo.full_name, step=error.step, error=error.reason)
        raise error

    # =========================================================================
    # STEPS
    # =========================================================================

    def ensure_resource_group(self, name: str, region: str) -> StepResult:
        subscription = self._session.subscription_id
        if self._client.group_exists(name, subscription):
            self._audit.log_exists("resource_group", name)
            logger.info("Resource group exists", name=name)
            return StepResult.EXISTS

        self._client.group_create(name, region, subscription)
        self._audit.log_created("resource_group", name, {"region": region})
        logger.info("Resource group created", name=name, region=region)
        return StepResult.CREATED

    def ensure_app_registration(self, display_name: str) -> dict[str, Any]:
        """Return the app registration, creating it if absent.

        After creation the provisioner pauses for `replication_delay`
        seconds so the new appId has a chance to replicate before the
        service principal step looks it up.
        """
        existing = self._client.app_list(display_name)
        if existing:
            if len(existing) > 1:
                logger.warning(
                    "Several app registrations share a display name; using the first",
                    display_name=display_name,
                    app_ids=[app.get("appId") for app in existing],
                )
            self._audit.log_exists("app_registration", display_name)
            logger.info("App registration exists", display_name=display_name, app_id=existing[0]["appId"])
            return existing[0]

        app = self._client.app_create(display_name)
        self._audit.log_created("app_registration", display_name, {"app_id": app["appId"]})
        logger.info("App registration created", display_name=display_name, app_id=app["appId"])
        if self._settings.replication_delay:
            logger.info("Waiting for directory replication", seconds=self._settings.replication_delay)
            self._sleep(self._settings.replication_delay)
        return app

    def ensure_service_principal(self, app_id: str) -> dict[str, Any]:
        """Return the service principal for `app_id`, creating it under the retry policy.

        Raises:
            ProvisioningError: If every attempt within the policy failed.
        """
        existing = self._client.sp_list(app_id)
        if existing:
            self._audit.log_exists("service_principal", app_id)
            logger.info("Service principal exists", app_id=app_id, object_id=existing[0]["id"])
            return existing[0]

        try:
            for attempt in build_retrying(self._settings.retry, self._sleep):
                with attempt:
                    sp = self._client.sp_create(app_id)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise ProvisioningError(
                "service_principal",
                f"creation failed after {e.last_attempt.attempt_number} attempts: {last}",
            ) from last

        self._audit.log_created("service_principal", app_id, {"object_id": sp["id"]})
        logger.info("Service principal created", app_id=app_id, object_id=sp["id"])
        return sp

    def ensure_role_assignment(
        self,
        app_id: str,
        sp_object_id: str,
        scope: str,
        allowed_scope: str,
    ) -> StepResult:
        """Grant Owner on `scope`.

        Raises:
            OperationBlocked: If `scope` is not exactly `allowed_scope`.
        """
        self._guard.check_role_scope(scope, allowed_scope)

        subscription = self._session.subscription_id
        target = f"{naming.OWNER_ROLE}@{scope}"
        if self._client.role_assignment_list(app_id, naming.OWNER_ROLE, scope, subscription):
            self._audit.log_exists("role_assignment", target)
            logger.info("Role assignment exists", role=naming.OWNER_ROLE, scope=scope)
            return StepResult.EXISTS

        try:
            self._client.role_assignment_create(sp_object_id, naming.OWNER_ROLE, scope, subscription)
        except AzureCliError as e:
            if not e.already_exists:
                raise
            # Created by someone else between the lookup and the create.
            self._audit.log_exists("role_assignment", target)
            logger.info("Role assignment already present on create", scope=scope)
            return StepResult.EXISTS

        self._audit.log_created("role_assignment", target, {"assignee": sp_object_id})
        logger.info("Role assignment created", role=naming.OWNER_ROLE, scope=scope)
        return StepResult.CREATED

    def ensure_federated_credentials(self, app_id: str, org: str, repo_name: str) -> dict[str, StepResult]:
        """Ensure the main-branch and pull-request credentials exist, by name."""
        present = {cred.get("name") for cred in self._client.federated_credential_list(app_id)}
        results: dict[str, StepResult] = {}

        for credential in naming.federated_credentials(org, repo_name):
            target = f"{app_id}/{credential.name}"
            if credential.name in present:
                self._audit.log_exists("federated_credential", target)
                logger.info("Federated credential exists", name=credential.name)
                results[credential.name] = StepResult.EXISTS
                continue

            self._client.federated_credential_create(app_id, credential)
            self._audit.log_created("federated_credential", target, {"subject": credential.subject})
            logger.info("Federated credential created", name=credential.name, subject=credential.subject)
            results[credential.name] = StepResult.CREATED

        return results
