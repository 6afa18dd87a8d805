# ABOUTME: Deterministic names, scopes and federated credential shapes
# ABOUTME: Every remote object is addressed by a name derived from the repository name

"""Deterministic naming for everything the provisioner creates.

Idempotence rests on this module: because every resource group, app
registration and federated credential has a name computed purely from the
repository name, a re-run can always look the object up before creating it.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
AZURE_AD_TOKEN_EXCHANGE_AUDIENCE = "api://AzureADTokenExchange"

OWNER_ROLE = "Owner"

# Microsoft Graph and its Application.ReadWrite.All permission.
MICROSOFT_GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
APPLICATION_READWRITE_ALL = {
    "Scope": "bdfbf15f-ee85-4955-8675-146e8e5296b5",
    "Role": "1bfefb4e-e0b5-418b-a88f-73c46d2cc8e9",
}

MAIN_BRANCH_CREDENTIAL = "github-main"
PULL_REQUEST_CREDENTIAL = "github-pull-request"


def resource_group_name(repo_name: str) -> str:
    return f"rg-{repo_name}"


def app_display_name(repo_name: str) -> str:
    """Display name shared by the app registration and its service principal."""
    return f"sp-{repo_name}-github"


def subscription_scope(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


def resource_group_scope(subscription_id: str, group_name: str) -> str:
    return f"{subscription_scope(subscription_id)}/resourceGroups/{group_name}"


class FederatedCredential(BaseModel):
    """A GitHub Actions trust binding on an app registration."""

    model_config = {"frozen": True}

    name: str
    issuer: str = GITHUB_OIDC_ISSUER
    subject: str
    description: str
    audiences: list[str] = Field(default_factory=lambda: [AZURE_AD_TOKEN_EXCHANGE_AUDIENCE])

    def to_parameters(self) -> dict[str, object]:
        """Body accepted by `az ad app federated-credential create --parameters`."""
        return {
            "name": self.name,
            "issuer": self.issuer,
            "subject": self.subject,
            "description": self.description,
            "audiences": list(self.audiences),
        }


def main_branch_subject(org: str, repo_name: str) -> str:
    return f"repo:{org}/{repo_name}:ref:refs/heads/main"


def pull_request_subject(org: str, repo_name: str) -> str:
    return f"repo:{org}/{repo_name}:pull_request"


def federated_credentials(org: str, repo_name: str) -> list[FederatedCredential]:
    """The two credentials every repository gets: main branch, then pull requests."""
    return [
        FederatedCredential(
            name=MAIN_BRANCH_CREDENTIAL,
            subject=main_branch_subject(org, repo_name),
            description=f"GitHub Actions on main of {org}/{repo_name}",
        ),
        FederatedCredential(
            name=PULL_REQUEST_CREDENTIAL,
            subject=pull_request_subject(org, repo_name),
            description=f"GitHub Actions on pull requests of {org}/{repo_name}",
        ),
    ]
