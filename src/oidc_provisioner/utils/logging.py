# ABOUTME: Structured logging with per-repository correlation IDs
# ABOUTME: Implements the provisioning audit trail and console/JSON output

"""
Structured logging, correlation IDs and the provisioning audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A batch run touches many repositories, and each repository goes through
several provisioning steps. Every log line therefore needs to answer two
questions: which repository was this about, and which step?

1. STRUCTURED LOGGING: structlog turns `logger.info("step", repo="svc-a")`
   into either a readable console line or a JSON object.

2. CORRELATION IDs: the batch driver assigns a short id to each repository
   run. All log lines and audit entries emitted while provisioning that
   repository carry it, so `jq 'select(.correlation_id == "3fa1c2d0")'`
   yields one repository's full story.

3. AUDIT TRAIL: one record per provisioning step saying what was checked,
   and whether it was created, already present, or failed. With a path
   configured it is written as JSON lines; otherwise it goes through
   structlog like every other event.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Generate an 8-character id (first block of a UUID4)."""
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a repository run (startup, prerequisite checks)
    still gets an id, so its logs remain correlatable.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context (an empty string resets it)."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor stamping every event with the correlation ID."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup; calling again
    reconfigures (the CLI does this after reading its flags).

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound with structlog.contextvars (repo name)
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: per-repository run id
    5. Renderer: JSON lines for CI systems, colored console otherwise

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: Emit one JSON object per line instead of console text.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        # stdout carries the provisioning report; logs go to stderr.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Not cached: configure_logging may run again once CLI flags are known,
        # and module-level loggers must pick up the new configuration.
        cache_logger_on_first_use=False,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger recording the outcome of every provisioning step.

    ENTRY SHAPE:
    ------------
    {"timestamp": "2025-03-01T10:30:00+00:00", "correlation_id": "3fa1c2d0",
     "action": "resource_group", "target": "rg-svc-a", "result": "created",
     "details": {"region": "westeurope"}}

    RESULT VALUES:
    --------------
    - "created": the object was absent and has been created
    - "exists": the object was already present; creation skipped
    - "warning": non-fatal problem (bootstrap admin consent)
    - "error": the step failed and the repository run aborted
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Args:
            log_path: JSON-lines file to append to, or None to log through
                structlog. The file is appended to, never truncated.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record one auditable step outcome."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_created(self, action: str, target: str, details: dict[str, Any] | None = None) -> None:
        self.log(action, target, "created", details)

    def log_exists(self, action: str, target: str) -> None:
        self.log(action, target, "exists")

    def log_warning(self, action: str, target: str, warning: str) -> None:
        self.log(action, target, "warning", {"warning": warning})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})
