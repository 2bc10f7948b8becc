"""
Error taxonomy for tool store operations.

Every error carries a human-readable message, whether the condition is
transient, and an optional remediation hint shown to the user.
"""

from __future__ import annotations


class ToolStoreError(Exception):
    """
    Base exception for tool store errors.

    Attributes:
        message: Human-readable error message
        retryable: Whether this error can be retried
        remediation: Suggested fix for the error
    """
    def __init__(
        self,
        message: str,
        retryable: bool = False,
        remediation: str | None = None,
    ):
        self.message = message
        self.retryable = retryable
        self.remediation = remediation
        super().__init__(message)


class InvalidSpec(ToolStoreError):
    """Malformed tool name, version or spec string."""


class UnsupportedPlatform(ToolStoreError):
    """No release artifact exists for the running OS/architecture."""


class PolicyNotFound(ToolStoreError):
    """No built-in source policy for the requested tool."""


class NetworkFailure(ToolStoreError):
    """Transport error or non-success HTTP status."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retryable: bool = False,
        remediation: str | None = None,
    ):
        super().__init__(message, retryable=retryable, remediation=remediation)
        self.status = status


class QuotaBlocked(NetworkFailure):
    """Release API answered 403; further calls are suppressed for this process."""


class IntegrityMismatch(ToolStoreError):
    """Downloaded artifact digest does not match the published digest."""


class ExtractionFailure(ToolStoreError):
    """Archive was downloaded but no executable could be selected from it."""


class LockContention(ToolStoreError):
    """The per-scope lock file could not be opened or locked."""


class PermissionDenied(ToolStoreError):
    """Scope directories are not writable by the current user."""


class ActivationFailure(ToolStoreError):
    """Writing the bin entry or the current pointer failed."""


class SelfUpdateHealthCheckFailed(ToolStoreError):
    """The freshly activated self binary failed its version probe."""

    def __init__(self, message: str, rollback_applied: bool, remediation: str | None = None):
        super().__init__(message, remediation=remediation)
        self.rollback_applied = rollback_applied


class SourceResolutionError(ToolStoreError):
    """Every source method for a tool failed."""

    def __init__(self, tool_name: str, attempts: list[tuple[str, str]]):
        lines = "\n".join(f"- {method}: {reason}" for method, reason in attempts)
        super().__init__(
            f"failed to resolve source for `{tool_name}` via automatic policies:\n{lines}",
            remediation=(
                "if your network requires a proxy, set HTTPS_PROXY/HTTP_PROXY "
                "(and optional NO_PROXY)"
            ),
        )
        self.tool_name = tool_name
        self.attempts = list(attempts)


class SyncFailure(ToolStoreError):
    """One or more tools in a sync manifest failed."""

    def __init__(self, failures: list[str]):
        lines = "\n".join(f"- {f}" for f in failures)
        super().__init__(f"sync completed with {len(failures)} failure(s):\n{lines}")
        self.failures = list(failures)


class StoreWriteFailure(ToolStoreError):
    """Copying an executable or its manifest into the store failed."""


class CorruptActiveState(ToolStoreError):
    """A current pointer names a version whose executable is missing."""


class ToolNotActive(ToolStoreError):
    """No managed or PATH executable exists for a tool."""
