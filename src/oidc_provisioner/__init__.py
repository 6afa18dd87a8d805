# ABOUTME: OIDC provisioner package initialization
# ABOUTME: Exposes version information

"""
oidc-provisioner: Azure identities for GitHub Actions, one per repository.

Given a manifest of repository names, the provisioner ensures that each
repository has its own resource group, app registration and service
principal, an Owner role assignment scoped to that resource group only, and
federated credentials trusting GitHub Actions runs on main and on pull
requests. Workflows then sign in with azure/login using OIDC, without any
stored client secret.

Package layout:

oidc_provisioner/
├── __init__.py       <- version
├── config.py         <- manifest models, settings, retry policy
├── naming.py         <- deterministic names and credential shapes
├── provisioner.py    <- per-repository provisioning steps
├── bootstrap.py      <- self-onboarding of the automation identity
├── batch.py          <- sequential batch driver and summary report
├── cli.py            <- command-line entry point
└── utils/
    ├── azure.py      <- az CLI runner and control-plane client
    ├── logging.py    <- structlog setup, correlation IDs, audit trail
    └── safety.py     <- destructive-command and role-scope guards
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
