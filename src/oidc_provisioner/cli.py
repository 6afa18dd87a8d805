# ABOUTME: Command-line entry point for the OIDC provisioner
# ABOUTME: Wires settings, logging, the Azure session and the provisioners together

"""oidc-provisioner command line."""

from __future__ import annotations

import argparse
import json
import sys
from enum import IntEnum
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from oidc_provisioner import __version__, naming
from oidc_provisioner.batch import run_batch
from oidc_provisioner.bootstrap import BootstrapProvisioner
from oidc_provisioner.config import (
    DEFAULT_REGION,
    ManifestError,
    ProvisionerSettings,
    RepositoryConfig,
    load_manifest,
    load_settings,
)
from oidc_provisioner.provisioner import ProvisioningError, RepositoryProvisioner
from oidc_provisioner.utils.azure import AzureAuthError, AzureCli, AzureCliNotFoundError, AzureClient
from oidc_provisioner.utils.logging import AuditLogger, configure_logging
from oidc_provisioner.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import Sequence

    from oidc_provisioner.config import ProvisioningManifest
    from oidc_provisioner.utils.azure import AzureSession

logger = structlog.get_logger(__name__)


class ExitCode(IntEnum):
    OK = 0
    FAILURES = 1
    PREREQUISITE = 2
    CONFIG = 3
    INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oidc-provisioner",
        description="Provision Azure identities with GitHub Actions OIDC trust, one per repository.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL")
    parser.add_argument("--json-logs", action="store_true", default=None, help="emit JSON log lines")
    parser.add_argument("--audit-log", help="append a JSON-lines audit trail to this file")
    parser.add_argument("--subscription", help="subscription id (default: the az CLI's active one)")

    commands = parser.add_subparsers(dest="command", required=True)

    provision = commands.add_parser("provision", help="provision every repository in a manifest")
    provision.add_argument("--manifest", required=True, help="YAML manifest of repositories")
    provision.add_argument("--only", nargs="+", metavar="REPO", help="provision only these repositories")
    provision.add_argument("--json", action="store_true", help="print the report as JSON")

    bootstrap = commands.add_parser("bootstrap", help="onboard the automation's own repository")
    bootstrap.add_argument("--org", required=True, help="GitHub organization")
    bootstrap.add_argument("--repo", required=True, help="repository running the provisioner")
    bootstrap.add_argument("--region", default=DEFAULT_REGION, help="recorded region for the identity")
    bootstrap.add_argument(
        "--require-consent",
        action="store_true",
        default=None,
        help="fail when admin consent cannot be granted",
    )

    plan = commands.add_parser("plan", help="show what would be provisioned, without calling Azure")
    plan.add_argument("--manifest", required=True, help="YAML manifest of repositories")

    commands.add_parser("check", help="verify the az CLI is installed and logged in")
    return parser


def apply_overrides(settings: ProvisionerSettings, args: argparse.Namespace) -> ProvisionerSettings:
    """Command-line flags win over environment settings."""
    updates: dict[str, object] = {}
    if args.log_level:
        updates["log_level"] = args.log_level.upper()
    if args.json_logs:
        updates["json_logs"] = True
    if args.audit_log:
        updates["audit_log"] = args.audit_log
    if args.subscription:
        updates["subscription_id"] = args.subscription
    if getattr(args, "require_consent", None):
        updates["bootstrap"] = {**settings.bootstrap.model_dump(), "require_admin_consent": True}
    # Validate merged values the same way as environment input.
    return ProvisionerSettings.model_validate({**settings.model_dump(), **updates})


def build_client(settings: ProvisionerSettings) -> AzureClient:
    cli = AzureCli(az_path=settings.az_path, timeout=settings.command_timeout, guard=SafetyGuard())
    return AzureClient(cli)


def open_session(client: AzureClient, settings: ProvisionerSettings) -> AzureSession | None:
    """Resolve the session, or report why provisioning cannot start."""
    try:
        return client.open_session(settings.subscription_id)
    except AzureCliNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
    except AzureAuthError as e:
        print(f"ERROR: {e}", file=sys.stderr)
    return None


def select_repositories(manifest: ProvisioningManifest, only: Sequence[str] | None) -> list[RepositoryConfig]:
    repos = manifest.repositories()
    if not only:
        return repos
    known = {repo.repo_name for repo in repos}
    unknown = [name for name in only if name not in known]
    if unknown:
        raise ManifestError("--only", f"not in manifest: {', '.join(unknown)}")
    return [repo for repo in repos if repo.repo_name in set(only)]


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_check(settings: ProvisionerSettings) -> ExitCode:
    session = open_session(build_client(settings), settings)
    if session is None:
        return ExitCode.PREREQUISITE
    print(f"Azure CLI ready: subscription {session.subscription_id}, tenant {session.tenant_id}, user {session.user}")
    return ExitCode.OK


def cmd_plan(settings: ProvisionerSettings, args: argparse.Namespace) -> ExitCode:
    manifest = load_manifest(args.manifest)
    subscription = settings.subscription_id or "<subscription>"
    for repo in manifest.repositories():
        group = naming.resource_group_name(repo.repo_name)
        print(f"{repo.full_name} ({repo.region})")
        print(f"  resource group     {group}")
        print(f"  app registration   {naming.app_display_name(repo.repo_name)}")
        print(f"  role assignment    {naming.OWNER_ROLE} on {naming.resource_group_scope(subscription, group)}")
        for credential in naming.federated_credentials(repo.org, repo.repo_name):
            print(f"  credential         {credential.name}: {credential.subject}")
    return ExitCode.OK


def cmd_provision(settings: ProvisionerSettings, args: argparse.Namespace) -> ExitCode:
    repos = select_repositories(load_manifest(args.manifest), args.only)

    client = build_client(settings)
    session = open_session(client, settings)
    if session is None:
        return ExitCode.PREREQUISITE

    provisioner = RepositoryProvisioner(client, session, settings, audit=AuditLogger(settings.audit_log))
    report = run_batch(repos, provisioner)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render())
        for status in report.statuses:
            if status.identity:
                print(f"\nSecrets for {status.repo.full_name}:")
                for key, value in status.identity.secrets().items():
                    print(f"  {key}={value}")
    return ExitCode.OK if report.ok else ExitCode.FAILURES


def cmd_bootstrap(settings: ProvisionerSettings, args: argparse.Namespace) -> ExitCode:
    repo = RepositoryConfig(org=args.org, repo_name=args.repo, region=args.region)

    client = build_client(settings)
    session = open_session(client, settings)
    if session is None:
        return ExitCode.PREREQUISITE

    provisioner = BootstrapProvisioner(client, session, settings, audit=AuditLogger(settings.audit_log))
    try:
        result = provisioner.bootstrap(repo)
    except ProvisioningError as e:
        print(f"Bootstrap of {repo.full_name} failed: {e}", file=sys.stderr)
        return ExitCode.FAILURES

    print(f"Bootstrap identity {result.identity.app_display_name} ready (Owner on {result.identity.role_scope})")
    for key, value in result.identity.secrets().items():
        print(f"  {key}={value}")
    for warning in result.warnings:
        banner = "!" * 78
        print(f"\n{banner}\nWARNING: {warning}\n{banner}", file=sys.stderr)
    return ExitCode.OK


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run one command, return its exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = apply_overrides(load_settings(), args)
    except ValidationError as e:
        print(f"ERROR: invalid settings: {e}", file=sys.stderr)
        return ExitCode.CONFIG

    configure_logging(level=settings.log_level, json_output=settings.json_logs)

    try:
        if args.command == "check":
            return cmd_check(settings)
        if args.command == "plan":
            return cmd_plan(settings, args)
        if args.command == "provision":
            return cmd_provision(settings, args)
        return cmd_bootstrap(settings, args)
    except (ManifestError, ValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return ExitCode.CONFIG
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return ExitCode.INTERRUPTED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
