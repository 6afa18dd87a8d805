# ABOUTME: Configuration management for the OIDC provisioner
# ABOUTME: Handles the repository manifest, environment settings, and retry policy

"""
Configuration management using pydantic and pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two kinds of configuration flow into a provisioning run:

1. THE MANIFEST: a declarative YAML document naming the GitHub organization,
   the default Azure region, and the ordered list of repositories to onboard.
   It describes WHAT should exist.

2. THE SETTINGS: process-level knobs read from environment variables
   (OIDC_PROVISIONER_*, OIDC_RETRY_*, OIDC_BOOTSTRAP_*). They describe HOW the
   run behaves: which `az` executable to call, how long to wait for directory
   replication, where the audit log goes.

=============================================================================
MANIFEST FORMAT
=============================================================================

    organization: Acme
    region: westeurope
    repositories:
      - svc-a
      - svc-b
      - name: svc-eu-north
        region: northeurope

Plain strings inherit the manifest region. Mapping entries may override it.
JSON is accepted too, since every JSON document is valid YAML.

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Process settings:
    OIDC_PROVISIONER_AZ_PATH           -> Azure CLI executable (default: az)
    OIDC_PROVISIONER_SUBSCRIPTION_ID   -> Explicit subscription for the session
    OIDC_PROVISIONER_COMMAND_TIMEOUT   -> Per-command timeout in seconds
    OIDC_PROVISIONER_REPLICATION_DELAY -> Pause after app registration creation
    OIDC_PROVISIONER_LOG_LEVEL         -> DEBUG / INFO / WARNING / ERROR / CRITICAL
    OIDC_PROVISIONER_JSON_LOGS         -> Emit JSON log lines
    OIDC_PROVISIONER_AUDIT_LOG         -> Path to JSON-lines audit log

Retry policy (service principal creation):
    OIDC_RETRY_MAX_ATTEMPTS  -> Attempts before giving up (default: 5)
    OIDC_RETRY_INITIAL_DELAY -> First wait in seconds (default: 10)
    OIDC_RETRY_MAX_DELAY     -> Upper bound for a single wait (default: 60)
    OIDC_RETRY_EXP_BASE      -> Backoff growth factor (default: 2)
    OIDC_RETRY_JITTER        -> Random extra wait, up to this many seconds
    OIDC_RETRY_DEADLINE      -> Overall time budget in seconds (default: 300)

Bootstrap:
    OIDC_BOOTSTRAP_REQUIRE_ADMIN_CONSENT -> Treat consent failure as fatal
    OIDC_BOOTSTRAP_GRAPH_PERMISSION_TYPE -> "Scope" (delegated) or "Role"
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# GitHub accepts letters, digits, hyphen, underscore and dot in org/repo names.
GITHUB_NAME_PATTERN = r"^[A-Za-z0-9._-]+$"

DEFAULT_REGION = "westeurope"


class ManifestError(Exception):
    """Raised when the repository manifest cannot be read or validated."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Invalid manifest {self.path}: {self.reason}"


# =============================================================================
# MANIFEST MODELS
# =============================================================================


class RepositoryConfig(BaseModel):
    """
    One repository to provision, with all defaults already applied.

    This is what the provisioner consumes. It is frozen because nothing is
    allowed to change a target half-way through a run: the deterministic
    names derived from it (rg-<repo>, sp-<repo>-github) must stay stable.
    """

    model_config = {"frozen": True}

    org: Annotated[str, Field(pattern=GITHUB_NAME_PATTERN)]
    repo_name: Annotated[str, Field(pattern=GITHUB_NAME_PATTERN)]
    region: Annotated[str, Field(min_length=1)]

    @property
    def full_name(self) -> str:
        """GitHub-style owner/name, as used in OIDC subjects."""
        return f"{self.org}/{self.repo_name}"


class RepositoryEntry(BaseModel):
    """Mapping form of a manifest entry: a name plus an optional region override."""

    model_config = {"extra": "forbid"}

    name: Annotated[str, Field(pattern=GITHUB_NAME_PATTERN)]
    region: str | None = None


class ProvisioningManifest(BaseModel):
    """
    The declarative list of repositories to onboard.

    Entries are normalized by `repositories()`: string entries become
    RepositoryEntry objects, and missing regions fall back to the manifest's
    default region. Order is preserved because the batch driver processes
    repositories exactly in manifest order.
    """

    model_config = {"extra": "ignore"}

    organization: Annotated[str, Field(pattern=GITHUB_NAME_PATTERN)]
    region: Annotated[str, Field(min_length=1)] = DEFAULT_REGION
    entries: list[RepositoryEntry] = Field(default_factory=list, alias="repositories")

    @field_validator("entries", mode="before")
    @classmethod
    def normalize_entries(cls, value: object) -> object:
        """Accept bare repository names alongside mapping entries."""
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("repositories must be a list")
        return [{"name": item} if isinstance(item, str) else item for item in value]

    @model_validator(mode="after")
    def reject_duplicates(self) -> ProvisioningManifest:
        seen: set[str] = set()
        for entry in self.entries:
            key = entry.name.lower()
            if key in seen:
                raise ValueError(f"repository '{entry.name}' is listed more than once")
            seen.add(key)
        return self

    def repositories(self) -> list[RepositoryConfig]:
        """Return the repositories in manifest order with defaults applied."""
        return [
            RepositoryConfig(
                org=self.organization,
                repo_name=entry.name,
                region=entry.region or self.region,
            )
            for entry in self.entries
        ]


def load_manifest(path: Path | str) -> ProvisioningManifest:
    """
    Read and validate a manifest file.

    Every failure mode (missing file, YAML syntax error, schema violation)
    surfaces as a ManifestError naming the file, so the CLI can report it
    with a single exit code before touching Azure.

    Raises:
        ManifestError: If the file cannot be read or is invalid.
    """
    manifest_path = Path(path)
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(manifest_path, e.strerror or str(e)) from e

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestError(manifest_path, f"not valid YAML ({e})") from e

    if not isinstance(document, dict):
        raise ManifestError(manifest_path, "expected a mapping at the top level")

    try:
        return ProvisioningManifest.model_validate(document)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'manifest'}: {err['msg']}"
            for err in e.errors()
        )
        raise ManifestError(manifest_path, problems) from e


# =============================================================================
# RETRY POLICY
# =============================================================================


class RetryPolicy(BaseSettings):
    """
    Backoff policy for eventual-consistency gaps.

    After an app registration is created, Microsoft Entra ID may take a while
    before the new appId is visible to the service principal endpoint. The
    provisioner retries service principal creation under this policy.

    The wait before attempt N+1 is:

        min(initial_delay * exp_base ** (N - 1), max_delay) + uniform(0, jitter)

    and retrying stops at whichever comes first: max_attempts, or deadline
    seconds since the first attempt. Setting exp_base=1 and jitter=0 gives
    a plain fixed-delay loop.
    """

    model_config = SettingsConfigDict(env_prefix="OIDC_RETRY_", extra="ignore")

    max_attempts: int = Field(default=5, ge=1, description="Attempts before giving up")
    initial_delay: float = Field(default=10.0, ge=0, description="First wait in seconds")
    max_delay: float = Field(default=60.0, ge=0, description="Largest single wait in seconds")
    exp_base: float = Field(default=2.0, ge=1, description="Backoff growth factor")
    jitter: float = Field(default=2.0, ge=0, description="Maximum random extra wait in seconds")
    deadline: float = Field(default=300.0, gt=0, description="Overall retry budget in seconds")


class BootstrapSettings(BaseSettings):
    """Settings that only apply to the self-onboarding bootstrap identity."""

    model_config = SettingsConfigDict(env_prefix="OIDC_BOOTSTRAP_", extra="ignore")

    require_admin_consent: bool = Field(
        default=False,
        description="Fail the bootstrap when admin consent cannot be granted",
    )
    # Without consent the batch driver cannot create app registrations, but an
    # administrator can grant it later in the portal, so the default is to warn.

    graph_permission_type: Literal["Scope", "Role"] = Field(
        default="Scope",
        description="Grant Application.ReadWrite.All as delegated (Scope) or application (Role)",
    )


# =============================================================================
# PROCESS SETTINGS
# =============================================================================


class ProvisionerSettings(BaseSettings):
    """
    Top-level process configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.retry.max_attempts      # 5
        settings.bootstrap.require_admin_consent
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDC_PROVISIONER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    az_path: str = Field(default="az", description="Azure CLI executable")

    subscription_id: str | None = Field(
        default=None,
        description="Subscription to provision into; defaults to the CLI's active one",
    )
    # Passed explicitly as --subscription on every ARM call, so a user who
    # switches `az account set` mid-run cannot redirect the provisioning.

    command_timeout: float = Field(default=120.0, gt=0, description="Seconds per az call")

    replication_delay: float = Field(
        default=15.0,
        ge=0,
        description="Pause after creating an app registration",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    audit_log: Path | None = Field(default=None, description="Path to JSON-lines audit log")

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    bootstrap: BootstrapSettings = Field(default_factory=BootstrapSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v


def load_settings() -> ProvisionerSettings:
    """
    Load settings from the environment.

    If OIDC_PROVISIONER_ENV_FILE is set, variables are also read from that
    file (handy for local runs against a sandbox subscription). The nested
    retry and bootstrap groups have their own prefixes, so each is loaded
    from the same file explicitly.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    env_file = os.environ.get("OIDC_PROVISIONER_ENV_FILE")
    return ProvisionerSettings(
        _env_file=env_file,
        retry=RetryPolicy(_env_file=env_file),
        bootstrap=BootstrapSettings(_env_file=env_file),
    )
