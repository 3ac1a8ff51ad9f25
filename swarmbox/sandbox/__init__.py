"""Sandbox layer: container configuration, isolation and lifecycle.

Modules:
- container: declarative ``ContainerConfig`` and its builder
- isolation: per-session network/volume managers and the security manager
- lifecycle: create → start → exec → stop → remove, with guaranteed cleanup
- resources: parsers for runtime-reported resource strings
- runtime: runtime CLI wrapper
- events: typed lifecycle event bus
- commands: injectable in-container command builders
- state_machine: container lifecycle states and transitions

``lifecycle`` depends on ``swarmbox.config`` and is imported directly
(``from swarmbox.sandbox.lifecycle import ContainerLifecycleManager``).
"""

from swarmbox.sandbox.container import (
    ContainerConfig,
    ContainerConfigBuilder,
    Mount,
    MountType,
    build_create_args,
)
from swarmbox.sandbox.exceptions import (
    CleanupError,
    ConfigurationError,
    ContainerCreationError,
    ContainerStartError,
    ExecutionTimeoutError,
    ResourceLimitExceededError,
    RuntimeUnavailableError,
    SandboxError,
    SecurityPolicyViolation,
)
from swarmbox.sandbox.state_machine import ContainerEvent, ContainerState

__all__ = [
    "CleanupError",
    "ConfigurationError",
    "ContainerConfig",
    "ContainerConfigBuilder",
    "ContainerCreationError",
    "ContainerEvent",
    "ContainerStartError",
    "ContainerState",
    "ExecutionTimeoutError",
    "Mount",
    "MountType",
    "ResourceLimitExceededError",
    "RuntimeUnavailableError",
    "SandboxError",
    "SecurityPolicyViolation",
    "build_create_args",
]
