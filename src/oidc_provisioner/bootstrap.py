# ABOUTME: One-time bootstrap of the automation's own GitHub identity
# ABOUTME: Subscription-wide Owner plus Graph Application.ReadWrite.All with admin consent

"""Self-onboarding for the repository that runs the batch provisioner.

The batch provisioner itself runs in GitHub Actions, so it needs an identity
that can create resource groups anywhere in the subscription and create app
registrations in the directory. Bootstrapping that identity differs from a
regular repository in three ways:

- no resource group of its own
- Owner on the whole subscription instead of one resource group
- Microsoft Graph Application.ReadWrite.All, followed by admin consent

Admin consent needs a directory administrator. If whoever runs the bootstrap
is not one, consent fails; by default that is reported as a warning so the
rest of the identity is still usable once an administrator grants consent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from oidc_provisioner import naming
from oidc_provisioner.provisioner import (
    ProvisionedIdentity,
    ProvisioningError,
    RepositoryProvisioner,
    StepResult,
)
from oidc_provisioner.utils.azure import AzureCliError

if TYPE_CHECKING:
    from oidc_provisioner.config import RepositoryConfig

logger = structlog.get_logger(__name__)


@dataclass
class BootstrapResult:
    identity: ProvisionedIdentity
    permission: StepResult
    consent_granted: bool
    warnings: list[str] = field(default_factory=list)


class BootstrapProvisioner(RepositoryProvisioner):
    """RepositoryProvisioner variant for the automation's own identity."""

    def role_scope(self, repo: RepositoryConfig) -> str:  # noqa: ARG002
        return naming.subscription_scope(self.session.subscription_id)

    def bootstrap(self, repo: RepositoryConfig) -> BootstrapResult:
        """
        Ensure the bootstrap identity exists and try to grant it Graph access.

        Raises:
            ProvisioningError: If any identity step fails, or if admin consent
                fails while `bootstrap.require_admin_consent` is set.
        """
        log = logger.bind(repo=repo.full_name)
        log.info("Bootstrapping automation identity")

        identity = self._ensure_identity(repo, resource_group=None)
        permission = self._step(repo, "graph_permission", lambda: self.ensure_graph_permission(identity.app_id))

        warnings: list[str] = []
        consent_granted = self.grant_admin_consent(identity.app_id)
        if not consent_granted:
            message = (
                f"Admin consent for Microsoft Graph Application.ReadWrite.All was not granted to "
                f"{identity.app_display_name} ({identity.app_id}). The batch provisioner cannot create "
                f"app registrations until a directory administrator runs: "
                f"az ad app permission admin-consent --id {identity.app_id}"
            )
            if self._settings.bootstrap.require_admin_consent:
                self._audit.log_error("admin_consent", identity.app_id, message)
                raise ProvisioningError("admin_consent", message, repo=repo.full_name)
            self._audit.log_warning("admin_consent", identity.app_id, message)
            log.warning("Admin consent not granted", app_id=identity.app_id)
            warnings.append(message)

        log.info("Bootstrap complete", app_id=identity.app_id, consent_granted=consent_granted)
        return BootstrapResult(
            identity=identity,
            permission=permission,
            consent_granted=consent_granted,
            warnings=warnings,
        )

    def ensure_graph_permission(self, app_id: str) -> StepResult:
        """Add Application.ReadWrite.All on Microsoft Graph unless already requested."""
        permission_type = self._settings.bootstrap.graph_permission_type
        permission_id = naming.APPLICATION_READWRITE_ALL[permission_type]
        target = f"{app_id}/{naming.MICROSOFT_GRAPH_APP_ID}/{permission_id}"

        for resource in self._client.permission_list(app_id):
            if resource.get("resourceAppId") != naming.MICROSOFT_GRAPH_APP_ID:
                continue
            if any(access.get("id") == permission_id for access in resource.get("resourceAccess", [])):
                self._audit.log_exists("graph_permission", target)
                logger.info("Graph permission already requested", permission_type=permission_type)
                return StepResult.EXISTS

        self._client.permission_add(app_id, naming.MICROSOFT_GRAPH_APP_ID, permission_id, permission_type)
        self._audit.log_created("graph_permission", target, {"type": permission_type})
        logger.info("Graph permission requested", permission_type=permission_type)
        return StepResult.CREATED

    def grant_admin_consent(self, app_id: str) -> bool:
        """Attempt admin consent; report failure instead of raising."""
        try:
            self._client.admin_consent(app_id)
        except AzureCliError as e:
            logger.warning("Admin consent failed", app_id=app_id, error=str(e))
            return False
        self._audit.log_created("admin_consent", app_id)
        logger.info("Admin consent granted", app_id=app_id)
        return True
