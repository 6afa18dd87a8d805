# ABOUTME: Azure CLI runner and control-plane client with typed errors
# ABOUTME: Wraps every az call the provisioner needs behind one method each

"""
Azure control-plane access through the Azure CLI.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The provisioner never talks to Azure Resource Manager or Microsoft Graph
directly. Every remote operation is one `az` invocation:

    az group exists --name rg-svc-a --subscription <sub>
    az ad app create --display-name sp-svc-a-github
    az ad app federated-credential create --id <appId> --parameters {...}

This module has three layers:

1. AzureCli: runs `az <args> --output json --only-show-errors` as a
   subprocess, parses stdout as JSON, and converts failures into exceptions.
   Timeouts are retried with exponential backoff (tenacity).

2. Errors: one exception type per failure category the provisioner cares
   about. A missing executable or a logged-out CLI is fatal for the whole
   run; any other failure is fatal only for the current repository.

3. AzureClient: one small method per control-plane operation. Methods do
   no decision-making; the provisioner decides when to look up and when to
   create.

=============================================================================
WHY AN EXPLICIT SESSION?
=============================================================================

`az` keeps an ambient "current subscription" that any other shell can
change with `az account set`. The provisioner resolves the subscription
once into an AzureSession and passes it to every ARM command as
`--subscription`, so the target of a run is fixed when the run starts.
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from oidc_provisioner.naming import FederatedCredential
    from oidc_provisioner.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


# =============================================================================
# SECRET MASKING
# =============================================================================

# az output can carry credentials (client secrets on app objects, tokens in
# error text). Anything logged or put into an exception message passes
# through mask_secrets first.
SECRET_PATTERNS = [
    (re.compile(r"(\"?(?:secretText|password|clientSecret)\"?\s*[:=]\s*\"?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(\"?(?:accessToken|access_token|refresh_token)\"?\s*[:=]\s*\"?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]


def mask_secrets(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# =============================================================================
# ERRORS
# =============================================================================


class AzureCliError(Exception):
    """
    A failed az invocation.

    Carries the command (without the az executable), the exit code, and the
    CLI's error text. The text is masked before it is stored.
    """

    # az phrases that mean "the thing you asked to create is already there".
    CONFLICT_MARKERS = ("already exists", "conflict", "roleassignmentexists")

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = mask_secrets(stderr.strip())
        super().__init__(str(self))

    def __str__(self) -> str:
        cmd = " ".join(["az", *self.command[:4]])
        detail = self.stderr.splitlines()[0] if self.stderr else "no error output"
        return f"az command failed ({self.returncode}): {cmd}: {detail}"

    @property
    def already_exists(self) -> bool:
        lowered = self.stderr.lower()
        return any(marker in lowered for marker in self.CONFLICT_MARKERS)


class AzureCliNotFoundError(AzureCliError):
    """The az executable is not installed or not on PATH."""

    def __init__(self, az_path: str) -> None:
        self.az_path = az_path
        super().__init__([], 127, f"Azure CLI executable '{az_path}' not found")

    def __str__(self) -> str:
        return f"Azure CLI executable '{self.az_path}' not found; install it or set OIDC_PROVISIONER_AZ_PATH"


class AzureAuthError(AzureCliError):
    """The CLI has no usable login."""

    def __str__(self) -> str:
        return f"Azure CLI is not logged in; run 'az login' ({self.stderr or 'no account'})"


# =============================================================================
# CLI RUNNER
# =============================================================================


class AzureCli:
    """
    Runs az commands and returns their parsed JSON output.

    Every command gets `--output json --only-show-errors` appended, so
    warnings (preview notices, upgrade nags) do not pollute stdout or stderr.
    Before running, the command is checked by the SafetyGuard, which blocks
    anything destructive.
    """

    def __init__(
        self,
        az_path: str = "az",
        timeout: float = 120.0,
        guard: SafetyGuard | None = None,
    ) -> None:
        self._az_path = az_path
        self._timeout = timeout
        self._guard = guard

    def executable(self) -> str:
        """Resolve the az executable, raising if it is not installed."""
        resolved = shutil.which(self._az_path)
        if not resolved:
            raise AzureCliNotFoundError(self._az_path)
        return resolved

    @retry(
        retry=retry_if_exception_type(subprocess.TimeoutExpired),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _execute(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=False,
        )

    def run(self, *args: str) -> Any:
        """
        Run one az command.

        Args:
            *args: az arguments without the executable, e.g.
                ("group", "exists", "--name", "rg-svc-a").

        Returns:
            Parsed JSON output, or None when the command printed nothing.

        Raises:
            OperationBlocked: If the SafetyGuard refuses the command.
            AzureCliNotFoundError: If az is not installed.
            AzureCliError: On non-zero exit, repeated timeouts, or
                output that is not JSON.
        """
        command = [*args, "--output", "json", "--only-show-errors"]
        if self._guard:
            self._guard.check_command(command)

        log = logger.bind(command=" ".join(["az", *args[:4]]))
        log.debug("Running az command")

        try:
            completed = self._execute([self._az_path, *command])
        except FileNotFoundError as e:
            raise AzureCliNotFoundError(self._az_path) from e
        except subprocess.TimeoutExpired as e:
            raise AzureCliError(list(args), -1, f"timed out after {self._timeout}s") from e

        if completed.returncode != 0:
            error = AzureCliError(list(args), completed.returncode, completed.stderr or completed.stdout)
            log.debug("az command failed", returncode=completed.returncode, stderr=error.stderr[:200])
            raise error

        stdout = completed.stdout.strip()
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise AzureCliError(list(args), 0, f"unparseable output: {mask_secrets(stdout[:200])}") from e


# =============================================================================
# SESSION
# =============================================================================


@dataclass(frozen=True)
class AzureSession:
    """The subscription, tenant and signed-in principal a run operates as."""

    subscription_id: str
    tenant_id: str
    user: str = ""

    @classmethod
    def from_account(cls, account: dict[str, Any]) -> AzureSession:
        """Build from `az account show` output."""
        return cls(
            subscription_id=account.get("id", ""),
            tenant_id=account.get("tenantId", ""),
            user=account.get("user", {}).get("name", ""),
        )


# =============================================================================
# CONTROL-PLANE CLIENT
# =============================================================================


class AzureClient:
    """
    One method per control-plane operation the provisioner uses.

    Lookups return lists (empty when nothing matches) or booleans; creations
    return the created object as az prints it. Nothing here retries or
    decides; see RepositoryProvisioner for that.
    """

    def __init__(self, cli: AzureCli) -> None:
        self._cli = cli

    # -------------------------------------------------------------------------
    # ACCOUNT
    # -------------------------------------------------------------------------

    def account_show(self, subscription_id: str | None = None) -> dict[str, Any]:
        """
        Return the signed-in account, optionally for a specific subscription.

        Raises:
            AzureCliNotFoundError: If az is not installed.
            AzureAuthError: If the CLI is not logged in or cannot see the
                requested subscription.
        """
        self._cli.executable()
        args = ["account", "show"]
        if subscription_id:
            args += ["--subscription", subscription_id]
        try:
            account = self._cli.run(*args)
        except AzureCliNotFoundError:
            raise
        except AzureCliError as e:
            raise AzureAuthError(e.command, e.returncode, e.stderr) from e
        if not isinstance(account, dict) or not account.get("id"):
            raise AzureAuthError(args, 1, "az account show returned no subscription")
        return account

    def open_session(self, subscription_id: str | None = None) -> AzureSession:
        """Resolve the session once, up front, before any provisioning."""
        session = AzureSession.from_account(self.account_show(subscription_id))
        logger.info(
            "Azure session opened",
            subscription=session.subscription_id,
            tenant=session.tenant_id,
            user=session.user,
        )
        return session

    # -------------------------------------------------------------------------
    # RESOURCE GROUPS
    # -------------------------------------------------------------------------

    def group_exists(self, name: str, subscription_id: str) -> bool:
        return bool(self._cli.run("group", "exists", "--name", name, "--subscription", subscription_id))

    def group_create(self, name: str, location: str, subscription_id: str) -> dict[str, Any]:
        return self._cli.run(
            "group", "create",
            "--name", name,
            "--location", location,
            "--subscription", subscription_id,
        )

    # -------------------------------------------------------------------------
    # APP REGISTRATIONS AND SERVICE PRINCIPALS
    # -------------------------------------------------------------------------

    def app_list(self, display_name: str) -> list[dict[str, Any]]:
        return self._cli.run("ad", "app", "list", "--display-name", display_name) or []

    def app_create(self, display_name: str) -> dict[str, Any]:
        return self._cli.run("ad", "app", "create", "--display-name", display_name)

    def sp_list(self, app_id: str) -> list[dict[str, Any]]:
        return self._cli.run("ad", "sp", "list", "--filter", f"appId eq '{app_id}'") or []

    def sp_create(self, app_id: str) -> dict[str, Any]:
        return self._cli.run("ad", "sp", "create", "--id", app_id)

    # -------------------------------------------------------------------------
    # ROLE ASSIGNMENTS
    # -------------------------------------------------------------------------

    def role_assignment_list(
        self,
        assignee: str,
        role: str,
        scope: str,
        subscription_id: str,
    ) -> list[dict[str, Any]]:
        return self._cli.run(
            "role", "assignment", "list",
            "--assignee", assignee,
            "--role", role,
            "--scope", scope,
            "--subscription", subscription_id,
        ) or []

    def role_assignment_create(
        self,
        assignee_object_id: str,
        role: str,
        scope: str,
        subscription_id: str,
    ) -> dict[str, Any]:
        # Assigning by object id skips a Graph lookup of the new principal,
        # which may not have replicated yet.
        return self._cli.run(
            "role", "assignment", "create",
            "--assignee-object-id", assignee_object_id,
            "--assignee-principal-type", "ServicePrincipal",
            "--role", role,
            "--scope", scope,
            "--subscription", subscription_id,
        )

    # -------------------------------------------------------------------------
    # FEDERATED CREDENTIALS
    # -------------------------------------------------------------------------

    def federated_credential_list(self, app_id: str) -> list[dict[str, Any]]:
        return self._cli.run("ad", "app", "federated-credential", "list", "--id", app_id) or []

    def federated_credential_create(self, app_id: str, credential: FederatedCredential) -> dict[str, Any]:
        return self._cli.run(
            "ad", "app", "federated-credential", "create",
            "--id", app_id,
            "--parameters", json.dumps(credential.to_parameters()),
        )

    # -------------------------------------------------------------------------
    # API PERMISSIONS
    # -------------------------------------------------------------------------

    def permission_list(self, app_id: str) -> list[dict[str, Any]]:
        return self._cli.run("ad", "app", "permission", "list", "--id", app_id) or []

    def permission_add(self, app_id: str, api: str, permission_id: str, permission_type: str) -> None:
        self._cli.run(
            "ad", "app", "permission", "add",
            "--id", app_id,
            "--api", api,
            "--api-permissions", f"{permission_id}={permission_type}",
        )

    def admin_consent(self, app_id: str) -> None:
        self._cli.run("ad", "app", "permission", "admin-consent", "--id", app_id)
