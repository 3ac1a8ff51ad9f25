"""Plain data contracts shared with the orchestration layer.

The orchestrator hands the sandbox a ``Task`` and an ``AgentState`` and
receives an ``ExecutionResult``.  None of these carry behaviour beyond
validation; the sandbox never mutates them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

__all__ = [
    "AgentState",
    "ExecutionResult",
    "ResourceUsage",
    "RetryPolicy",
    "Task",
    "TrustLevel",
]


class TrustLevel(StrEnum):
    """How much the orchestrator trusts an agent's generated instructions."""

    UNTRUSTED = "untrusted"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retries for infrastructure failures (create/start), not task failures.

    Attributes:
        max_retries: Additional attempts after the first (0 = no retry).
        backoff: Seconds to wait before attempt ``n`` is ``backoff * n``.
    """

    max_retries: int = 0
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.backoff < 0:
            raise ValueError(f"backoff must be >= 0, got {self.backoff}")


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of work to run inside a sandbox.

    Attributes:
        id: Orchestrator-assigned task identifier.
        description: Natural-language description; also the fallback command.
        command: Explicit argument vector to execute.  When ``None`` the
            configured command builder derives one from ``description``.
        timeout: Wall-clock limit in seconds (``None`` = configured default).
        retry_policy: Retries for create/start failures.
        environment: Requested environment; filtered by the whitelist.
        task_type: Free-form category stamped into ``TASK_TYPE``.
    """

    id: str
    description: str = ""
    command: tuple[str, ...] | None = None
    timeout: float | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    environment: dict[str, str] = field(default_factory=dict)
    task_type: str = "general"

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Task.id must be non-empty")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Task.timeout must be > 0, got {self.timeout}")
        if self.command is not None:
            object.__setattr__(self, "command", tuple(self.command))


@dataclass(frozen=True, slots=True)
class AgentState:
    """The agent on whose behalf a task runs."""

    id: str
    type: str
    capabilities: frozenset[str] = frozenset()
    trust_level: TrustLevel = TrustLevel.UNTRUSTED

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("AgentState.id must be non-empty")
        if not self.type:
            raise ValueError("AgentState.type must be non-empty")
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))


@dataclass(frozen=True, slots=True)
class ResourceUsage:
    """One resource-usage snapshot.  All values are non-negative.

    ``cpu_time`` is the CPU utilisation percentage over the sampling window
    (may exceed 100 on multi-core hosts).
    """

    cpu_time: float = 0.0
    peak_memory_bytes: int = 0
    disk_io_bytes: int = 0
    network_io_bytes: int = 0
    file_handles: int = 0

    def __post_init__(self) -> None:
        for name in (
            "cpu_time",
            "peak_memory_bytes",
            "disk_io_bytes",
            "network_io_bytes",
            "file_handles",
        ):
            if getattr(self, name) < 0:
                object.__setattr__(self, name, type(getattr(self, name))(0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_time": self.cpu_time,
            "peak_memory_bytes": self.peak_memory_bytes,
            "disk_io_bytes": self.disk_io_bytes,
            "network_io_bytes": self.network_io_bytes,
            "file_handles": self.file_handles,
        }


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one task execution.

    Task-level failures (non-zero exit, timeout, OOM) are reported here
    with ``success=False`` and a populated ``error``; they are never raised.

    ``metadata`` carries the container id/name, network id, volume id and,
    on failure, ``error_type`` naming the sandbox exception class.
    """

    success: bool
    output: str = ""
    error: str = ""
    exit_code: int = 0
    duration: float = 0.0
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    artifacts: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "exit_code": self.exit_code,
            "duration": self.duration,
            "resource_usage": self.resource_usage.to_dict(),
            "artifacts": dict(self.artifacts),
            "metadata": dict(self.metadata),
        }
