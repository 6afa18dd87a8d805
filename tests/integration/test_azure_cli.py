# ABOUTME: Integration tests for the Azure client against a real, logged-in az CLI
# ABOUTME: Read-only: looks objects up by deterministic names, never creates anything

"""Integration tests for AzureClient against the installed Azure CLI.

These tests require:
- az available in PATH
- an active `az login` session

Only lookups are issued, so running them against a production subscription
is safe. Names are chosen so nothing is expected to exist.
"""

from __future__ import annotations

import shutil
import subprocess

import pytest

from oidc_provisioner import naming
from oidc_provisioner.utils.azure import AzureCli, AzureClient, AzureSession
from oidc_provisioner.utils.safety import SafetyGuard

PROBE_REPO = "oidc-provisioner-integration-probe-does-not-exist"


def _az_logged_in() -> bool:
    if not shutil.which("az"):
        return False
    try:
        result = subprocess.run(
            ["az", "account", "show", "--output", "none"],
            capture_output=True,
            timeout=60,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


requires_az = pytest.mark.skipif(not _az_logged_in(), reason="az CLI not installed or not logged in")


@pytest.fixture(scope="module")
def client() -> AzureClient:
    return AzureClient(AzureCli(guard=SafetyGuard()))


@pytest.fixture(scope="module")
def session(client: AzureClient) -> AzureSession:
    return client.open_session()


@requires_az
@pytest.mark.integration
class TestAzureClientIntegration:
    """Read-only checks against the live control plane."""

    def test_open_session(self, session):
        """Test that the session resolves subscription and tenant."""
        assert session.subscription_id
        assert session.tenant_id

    def test_group_absent(self, client, session):
        """Test a resource group lookup for a name that should not exist."""
        name = naming.resource_group_name(PROBE_REPO)

        assert client.group_exists(name, session.subscription_id) is False

    def test_app_absent(self, client):
        """Test an app registration lookup by display name."""
        assert client.app_list(naming.app_display_name(PROBE_REPO)) == []
