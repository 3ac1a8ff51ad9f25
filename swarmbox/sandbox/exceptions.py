"""Sandbox-layer exception hierarchy.

All sandbox exceptions inherit from ``SandboxError`` so that callers at
the orchestration boundary can catch the whole family with a single
``except SandboxError``.

Task-level failures (non-zero exit, timeout, OOM) are normally reported
as data on a failed ``ExecutionResult``; the exception types for those
cases exist so the result metadata can name them and so internal code can
raise them between layers.
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base exception for all sandbox failures."""

    __slots__ = ()


class RuntimeUnavailableError(SandboxError):
    """Raised when the container runtime binary or daemon cannot be reached."""

    __slots__ = ("binary", "detail")

    def __init__(self, binary: str, detail: str = "") -> None:
        msg = f"Container runtime {binary!r} unavailable"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.binary = binary
        self.detail = detail


class ConfigurationError(SandboxError):
    """Raised when a merged sandbox configuration is invalid."""

    __slots__ = ("key",)

    def __init__(self, detail: str, *, key: str = "") -> None:
        super().__init__(f"Invalid sandbox configuration: {detail}")
        self.key = key


class ContainerCreationError(SandboxError):
    """Raised when the runtime reports a non-zero exit for ``create``.

    Attributes
    ----------
    container_name : str
        The name the container was to be created under.
    exit_code : int
        Runtime exit code.
    stderr : str
        Runtime diagnostic output (truncated).
    """

    __slots__ = ("container_name", "exit_code", "stderr")

    def __init__(self, container_name: str, exit_code: int, stderr: str = "") -> None:
        super().__init__(
            f"Failed to create container {container_name!r} "
            f"(exit {exit_code}): {stderr.strip()[:500]}"
        )
        self.container_name = container_name
        self.exit_code = exit_code
        self.stderr = stderr


class ContainerStartError(SandboxError):
    """Raised when the runtime reports a non-zero exit for ``start``."""

    __slots__ = ("container_id", "exit_code", "stderr")

    def __init__(self, container_id: str, exit_code: int, stderr: str = "") -> None:
        super().__init__(
            f"Failed to start container {container_id[:12]!r} "
            f"(exit {exit_code}): {stderr.strip()[:500]}"
        )
        self.container_id = container_id
        self.exit_code = exit_code
        self.stderr = stderr


class ExecutionTimeoutError(SandboxError):
    """Raised when a task exceeds its configured timeout."""

    __slots__ = ("container_id", "timeout")

    def __init__(self, container_id: str, timeout: float) -> None:
        super().__init__(
            f"Execution in container {container_id[:12]!r} timed out after {timeout:g}s"
        )
        self.container_id = container_id
        self.timeout = timeout


class ResourceLimitExceededError(SandboxError):
    """Raised when a non-zero exit is correlated with an out-of-memory kill."""

    __slots__ = ("container_id", "exit_code", "limit")

    def __init__(self, container_id: str, exit_code: int, limit: str = "") -> None:
        msg = f"Container {container_id[:12]!r} exceeded its resource limits (exit {exit_code})"
        if limit:
            msg += f"; memory limit {limit}"
        super().__init__(msg)
        self.container_id = container_id
        self.exit_code = exit_code
        self.limit = limit


class CleanupError(SandboxError):
    """Raised (and collected, never propagated) when one cleanup step fails.

    Attributes
    ----------
    step : str
        Cleanup step name: ``stop``, ``remove``, ``network``, ``volume``
        or ``registry``.
    resource_id : str
        Identifier of the resource the step operated on.
    """

    __slots__ = ("detail", "resource_id", "step")

    def __init__(self, step: str, resource_id: str, detail: str = "") -> None:
        super().__init__(f"Cleanup step {step!r} failed for {resource_id!r}: {detail}")
        self.step = step
        self.resource_id = resource_id
        self.detail = detail


class SecurityPolicyViolation(SandboxError):
    """A failed security-policy check.

    Recorded through ``SecurityManager`` and counted; never raised past
    the manager boundary.
    """

    __slots__ = ("detail", "policy")

    def __init__(self, policy: str, detail: str = "") -> None:
        super().__init__(f"Security policy {policy!r} violated: {detail}")
        self.policy = policy
        self.detail = detail


class SandboxInvariantError(SandboxError):
    """Raised when an internal sandbox invariant is violated.

    Unlike assertions (which can be stripped with ``python -O``), this
    exception always fires.
    """

    __slots__ = ("invariant",)

    def __init__(self, invariant: str, detail: str = "") -> None:
        msg = f"Sandbox invariant violated: {invariant}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.invariant = invariant


class RuntimeCommandTimeout(SandboxError):
    """Raised when a single runtime CLI invocation exceeds its deadline."""

    __slots__ = ("command", "timeout")

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Runtime command {command!r} timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


class IsolationResourceError(SandboxError):
    """Raised when a per-session network or volume cannot be allocated."""

    __slots__ = ("kind", "name", "stderr")

    def __init__(self, kind: str, name: str, stderr: str = "") -> None:
        super().__init__(f"Failed to create {kind} {name!r}: {stderr.strip()[:300]}")
        self.kind = kind
        self.name = name
        self.stderr = stderr
