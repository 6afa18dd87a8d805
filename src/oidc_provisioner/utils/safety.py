# ABOUTME: Safety utilities for the OIDC provisioner
# ABOUTME: Blocks destructive az commands and over-broad role assignments

"""Safety guards keeping provisioning additive and least-privilege."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

logger = structlog.get_logger(__name__)

DESTRUCTIVE_VERBS = frozenset({"delete", "remove", "reset", "purge"})


class OperationBlocked(Exception):
    """Raised when a safety check refuses an operation."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format blocked message for the operator."""
        return f"OPERATION BLOCKED: {self.operation}\nReason: {self.reason}"


class SafetyGuard:
    """Guard checked before every az invocation and every role assignment."""

    def __init__(self, destructive_verbs: frozenset[str] = DESTRUCTIVE_VERBS) -> None:
        self._destructive_verbs = destructive_verbs

    def check_command(self, args: Sequence[str]) -> None:
        """Refuse az commands that would delete or reset anything.

        Only positional words are inspected, so option values such as a
        description containing "remove" do not trip the guard.

        Raises:
            OperationBlocked: If a destructive verb appears in the command.
        """
        words = []
        for arg in args:
            if arg.startswith("-"):
                break
            words.append(arg)

        for word in words:
            if word.lower() in self._destructive_verbs:
                logger.warning("Blocked destructive command", command=" ".join(words))
                raise OperationBlocked(
                    operation=" ".join(["az", *words]),
                    reason=f"'{word}' is a destructive verb; provisioning never deletes or resets",
                )

    def check_role_scope(self, scope: str, allowed_scope: str) -> None:
        """Refuse a role assignment outside the scope this identity is entitled to.

        Raises:
            OperationBlocked: If scope differs from allowed_scope.
        """
        if scope.rstrip("/").lower() != allowed_scope.rstrip("/").lower():
            logger.warning("Blocked role assignment", scope=scope, allowed=allowed_scope)
            raise OperationBlocked(
                operation="role assignment",
                reason=f"scope '{scope}' is outside the allowed scope '{allowed_scope}'",
            )
