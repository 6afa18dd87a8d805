# ABOUTME: Batch driver running the provisioner over every configured repository
# ABOUTME: Sequential, never aborts early, and reports a per-repository summary

"""Batch provisioning across a manifest's repositories."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from oidc_provisioner.utils.logging import new_correlation_id, set_correlation_id

if TYPE_CHECKING:
    from oidc_provisioner.config import RepositoryConfig
    from oidc_provisioner.provisioner import ProvisionedIdentity, RepositoryProvisioner

logger = structlog.get_logger(__name__)


@dataclass
class RepositoryStatus:
    """Outcome of one repository in a batch."""

    repo: RepositoryConfig
    correlation_id: str
    identity: ProvisionedIdentity | None = None
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.identity is not None

    def describe(self) -> str:
        """Status column text; multi-line reasons are joined onto one line."""
        if self.succeeded:
            return "Success"
        reason = "; ".join(line.strip() for line in (self.reason or "").splitlines() if line.strip())
        return f"Failed({reason})"


@dataclass
class BatchReport:
    """Per-repository statuses in processing order."""

    statuses: list[RepositoryStatus] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for status in self.statuses if status.succeeded)

    @property
    def failed(self) -> int:
        return len(self.statuses) - self.succeeded

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def render(self) -> str:
        """Summary line followed by a table of every repository."""
        lines = [f"Provisioning summary: {self.succeeded} succeeded / {self.failed} failed"]
        if not self.statuses:
            return lines[0]

        width = max(len(status.repo.full_name) for status in self.statuses)
        width = max(width, len("Repository"))
        lines.append("")
        lines.append(f"{'Repository':<{width}}  Status")
        lines.append(f"{'-' * width}  ------")
        for status in self.statuses:
            lines.append(f"{status.repo.full_name:<{width}}  {status.describe()}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "repositories": [
                {
                    "repository": status.repo.full_name,
                    "correlation_id": status.correlation_id,
                    "status": "success" if status.succeeded else "failed",
                    "reason": status.reason,
                    "resource_group": status.identity.resource_group if status.identity else None,
                    "secrets": status.identity.secrets() if status.identity else None,
                }
                for status in self.statuses
            ],
        }


def run_batch(repos: Iterable[RepositoryConfig], provisioner: RepositoryProvisioner) -> BatchReport:
    """
    Provision every repository in order, one at a time.

    A repository's failure is recorded in its status and the loop moves on;
    nothing raised by the provisioner escapes this function. Each repository
    gets its own correlation ID so its log lines can be pulled out of the
    combined output.
    """
    report = BatchReport()

    for repo in repos:
        cid = new_correlation_id()
        set_correlation_id(cid)
        status = RepositoryStatus(repo=repo, correlation_id=cid)
        try:
            status.identity = provisioner.provision(repo)
        except Exception as e:
            status.reason = str(e) or type(e).__name__
            logger.error("Repository failed", repo=repo.full_name, reason=status.reason)
        report.statuses.append(status)

    set_correlation_id("")
    logger.info("Batch complete", succeeded=report.succeeded, failed=report.failed)
    return report
