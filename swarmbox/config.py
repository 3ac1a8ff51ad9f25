"""Sandbox configuration.

``SandboxSettings`` is environment-driven (prefix ``SWARMBOX_``, optional
``.env`` file).  Complex fields (lists, mappings, nested models) are read
from JSON-encoded environment values, e.g.::

    SWARMBOX_ULIMITS='[{"name": "nofile", "soft": 2048, "hard": 2048}]'

Per-request overrides go through ``SandboxSettings.merged()``, which
rejects unknown keys and re-runs validation.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from swarmbox.sandbox.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT_WHITELIST: list[str] = [
    "NODE_ENV",
    "SWARM_MODE",
    "AGENT_TYPE",
    "TASK_TYPE",
    "CONTAINER_ID",
    "NETWORK_MODE",
    "CODER_MODE",
    "ALLOW_CODE_EXECUTION",
]


class Ulimit(BaseModel):
    """A single ``--ulimit name=soft:hard`` entry."""

    name: str
    soft: int
    hard: int

    @model_validator(mode="after")
    def _soft_not_above_hard(self) -> Ulimit:
        if self.soft < 0 or self.hard < 0:
            raise ValueError(f"ulimit {self.name}: limits must be >= 0")
        if self.soft > self.hard:
            raise ValueError(f"ulimit {self.name}: soft {self.soft} exceeds hard {self.hard}")
        return self


class VolumeMount(BaseModel):
    """An operator-declared bind mount.  Read-only unless stated otherwise."""

    source: str
    target: str
    read_only: bool = True

    @field_validator("target")
    @classmethod
    def _absolute_target(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"mount target must be absolute, got {value!r}")
        return value


class AgentProfile(BaseModel):
    """Resource and environment overrides for one agent type."""

    memory: str | None = None
    cpus: float | None = None
    cpu_quota: int | None = None
    environment: dict[str, str] = {}


DEFAULT_AGENT_PROFILES: dict[str, AgentProfile] = {
    "coder": AgentProfile(
        memory="512m",
        cpus=1.0,
        cpu_quota=100000,
        environment={"CODER_MODE": "true", "ALLOW_CODE_EXECUTION": "true"},
    ),
    "tester": AgentProfile(memory="256m", cpus=0.5),
    "reviewer": AgentProfile(memory="128m", cpus=0.25),
    "researcher": AgentProfile(memory="256m", cpus=0.5),
    "planner": AgentProfile(memory="128m", cpus=0.25),
}


class SandboxSettings(BaseSettings):
    """Environment-driven settings for the sandbox engine."""

    # Runtime
    runtime_binary: str = "docker"
    max_concurrent_runtime_calls: int = 16
    runtime_call_timeout: float = 60.0
    max_output_bytes: int = 10 * 1024 * 1024

    # Image
    image: str = "swarmbox-agent"
    image_tag: str = "latest"
    registry: str = ""

    # Network
    network_mode: str = "bridge"
    network_internal: bool = True

    # Security
    security_opts: list[str] = []
    read_only_root: bool = True
    no_new_privileges: bool = True
    user: str = "swarm:swarm"
    cap_add: list[str] = []
    cap_drop: list[str] = ["ALL"]

    # Resources
    memory: str = "512m"
    cpus: float = 0.5
    cpu_quota: int = 50000
    memory_swappiness: int = 0
    oom_score_adj: int = 1000
    pids_limit: int = 256
    ulimits: list[Ulimit] = [
        Ulimit(name="nofile", soft=1024, hard=1024),
        Ulimit(name="nproc", soft=32, hard=32),
    ]

    # Filesystem
    tmpfs: dict[str, str] = {"/tmp": "rw,noexec,nosuid,size=100m"}
    volume_mounts: list[VolumeMount] = []
    workspace_path: str = "/workspace"
    collect_artifacts: bool = True
    artifacts_root: Path = Path(tempfile.gettempdir()) / "swarmbox-artifacts"

    # Environment
    environment_whitelist: list[str] = list(DEFAULT_ENVIRONMENT_WHITELIST)

    # Execution
    task_timeout: float = 300.0
    stop_grace_seconds: int = 10

    # Pool
    pool_size: int = 2
    warm_agent_types: list[str] = []
    auto_scaling: bool = True
    min_pool_size: int = 1
    max_pool_size: int = 10
    container_ttl: float = 3600.0
    idle_timeout: float = 1800.0
    maintenance_interval: float = 30.0
    agent_profiles: dict[str, AgentProfile] = dict(DEFAULT_AGENT_PROFILES)

    model_config = {"env_prefix": "SWARMBOX_", "env_file": ".env", "extra": "ignore"}

    @field_validator(
        "task_timeout",
        "runtime_call_timeout",
        "container_ttl",
        "idle_timeout",
        "maintenance_interval",
        "cpus",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"must be > 0, got {value}")
        return value

    @field_validator("stop_grace_seconds", "pool_size", "min_pool_size", "pids_limit")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"must be >= 0, got {value}")
        return value

    @field_validator("max_concurrent_runtime_calls", "max_output_bytes")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"must be >= 1, got {value}")
        return value

    @field_validator("memory_swappiness")
    @classmethod
    def _swappiness_range(cls, value: int) -> int:
        if not 0 <= value <= 100:
            raise ValueError(f"memory_swappiness must be in [0, 100], got {value}")
        return value

    @field_validator("oom_score_adj")
    @classmethod
    def _oom_range(cls, value: int) -> int:
        if not -1000 <= value <= 1000:
            raise ValueError(f"oom_score_adj must be in [-1000, 1000], got {value}")
        return value

    @field_validator("tmpfs")
    @classmethod
    def _absolute_tmpfs(cls, value: dict[str, str]) -> dict[str, str]:
        for target in value:
            if not target.startswith("/"):
                raise ValueError(f"tmpfs target must be absolute, got {target!r}")
        return value

    @model_validator(mode="after")
    def _pool_bounds(self) -> SandboxSettings:
        if self.max_pool_size < self.min_pool_size:
            raise ValueError(
                f"max_pool_size ({self.max_pool_size}) < min_pool_size ({self.min_pool_size})"
            )
        return self

    # -- helpers --------------------------------------------------------

    @property
    def image_ref(self) -> str:
        """Fully-qualified ``[registry/]image:tag`` reference."""
        name = f"{self.image}:{self.image_tag}"
        return f"{self.registry.rstrip('/')}/{name}" if self.registry else name

    def profile_for(self, agent_type: str) -> AgentProfile | None:
        return self.agent_profiles.get(agent_type)

    def merged(self, **overrides: Any) -> SandboxSettings:
        """Return a new settings object with *overrides* applied.

        Raises
        ------
        ConfigurationError
            If an override key is unknown or the merged values fail
            validation.
        """
        if not overrides:
            return self
        unknown = sorted(set(overrides) - set(type(self).model_fields))
        if unknown:
            raise ConfigurationError(f"unknown option(s): {', '.join(unknown)}", key=unknown[0])
        data = self.model_dump()
        data.update(overrides)
        try:
            return type(self).model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc


def load_settings(**overrides: Any) -> SandboxSettings:
    """Read settings from the environment and apply *overrides*."""
    try:
        settings = SandboxSettings()
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
    settings = settings.merged(**overrides)
    logger.debug(
        "Sandbox settings: image=%s network=%s pool_size=%d",
        settings.image_ref,
        settings.network_mode,
        settings.pool_size,
    )
    return settings
