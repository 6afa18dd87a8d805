# ABOUTME: Unit tests for deterministic naming
# ABOUTME: Tests resource names, scopes, and federated credential bodies

import pytest

from oidc_provisioner import naming


@pytest.mark.unit
class TestNames:
    """Tests for names derived from the repository name."""

    def test_resource_group_name(self):
        """Test the rg-<repo> convention."""
        assert naming.resource_group_name("svc-a") == "rg-svc-a"

    def test_app_display_name(self):
        """Test the sp-<repo>-github convention."""
        assert naming.app_display_name("svc-a") == "sp-svc-a-github"

    def test_scopes(self):
        """Test ARM scope strings."""
        assert naming.subscription_scope("sub-1") == "/subscriptions/sub-1"
        assert naming.resource_group_scope("sub-1", "rg-svc-a") == "/subscriptions/sub-1/resourceGroups/rg-svc-a"


@pytest.mark.unit
class TestFederatedCredentials:
    """Tests for the federated credential shapes."""

    def test_subjects(self):
        """Test the main-branch and pull-request subjects."""
        assert naming.main_branch_subject("Acme", "svc-a") == "repo:Acme/svc-a:ref:refs/heads/main"
        assert naming.pull_request_subject("Acme", "svc-a") == "repo:Acme/svc-a:pull_request"

    def test_two_credentials_in_order(self):
        """Test that every repository gets main first, then pull requests."""
        creds = naming.federated_credentials("Acme", "svc-a")

        assert [c.name for c in creds] == ["github-main", "github-pull-request"]
        assert [c.subject for c in creds] == [
            "repo:Acme/svc-a:ref:refs/heads/main",
            "repo:Acme/svc-a:pull_request",
        ]

    def test_parameters_body(self):
        """Test the exact body passed to az federated-credential create."""
        main, _ = naming.federated_credentials("Acme", "svc-a")

        assert main.to_parameters() == {
            "name": "github-main",
            "issuer": "https://token.actions.githubusercontent.com",
            "subject": "repo:Acme/svc-a:ref:refs/heads/main",
            "description": "GitHub Actions on main of Acme/svc-a",
            "audiences": ["api://AzureADTokenExchange"],
        }

    def test_names_stable_across_calls(self):
        """Test that credential names do not depend on anything but the repository."""
        assert naming.federated_credentials("Acme", "svc-a") == naming.federated_credentials("Acme", "svc-a")
