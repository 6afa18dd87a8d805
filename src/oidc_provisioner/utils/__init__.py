# ABOUTME: Utilities package initialization for the OIDC provisioner
# ABOUTME: Contains the Azure CLI client, logging, and safety guards

"""
OIDC provisioner utilities

Shared utilities:
    - azure.py: az CLI runner, typed errors, control-plane client
    - logging.py: Structured logging with correlation IDs and audit trail
    - safety.py: Destructive-command and role-scope guards
"""
