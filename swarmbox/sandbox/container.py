"""Declarative container configuration and its builder.

``ContainerConfigBuilder`` turns a (task, agent) pair plus merged settings
into an immutable ``ContainerConfig``; ``build_create_args`` renders that
config into the argument vector for the runtime's ``create`` call.

Secure defaults, applied unless the settings explicitly say otherwise:

- read-only root filesystem, ``no-new-privileges``, unprivileged named user
- every capability dropped, none added
- ``/tmp`` as a size-bounded tmpfs with ``rw,noexec,nosuid``
- a dedicated read-write volume at the task workspace path
- an environment filtered against a whitelist
- labels carrying session/task/agent identifiers for orphan discovery

All resource limits are part of the ``create`` arguments, so they are in
force before the container is started.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import TYPE_CHECKING

from swarmbox.sandbox.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from swarmbox.config import SandboxSettings
    from swarmbox.models import AgentState, Task

__all__ = [
    "Capabilities",
    "ContainerConfig",
    "ContainerConfigBuilder",
    "Mount",
    "MountType",
    "NetworkConfig",
    "ResourceLimits",
    "SecurityConfig",
    "build_create_args",
    "harden_tmpfs_options",
]

logger = logging.getLogger(__name__)

LABEL_PREFIX = "swarmbox"
MANAGED_LABEL = f"{LABEL_PREFIX}.managed"
KEEP_ALIVE_COMMAND: tuple[str, ...] = ("sleep", "infinity")
DEFAULT_TMPFS_SIZE = "100m"

#: Basenames of runtime control sockets that must never be mounted.
RUNTIME_SOCKETS = frozenset({"docker.sock", "podman.sock", "containerd.sock"})
_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")

#: Set once at create time; a task cannot override them on exec.
_CONTAINER_STAMPS = frozenset({"SWARM_MODE", "CONTAINER_ID", "NETWORK_MODE"})


class MountType(StrEnum):
    BIND = "bind"
    VOLUME = "volume"
    TMPFS = "tmpfs"


@dataclass(frozen=True, slots=True)
class Mount:
    """One filesystem mount.

    For ``TMPFS`` mounts ``source`` is empty and ``options`` holds the
    mount flags (always including ``noexec`` and ``nosuid``).
    """

    type: MountType
    target: str
    source: str = ""
    read_only: bool = False
    options: str = ""


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    mode: str = "bridge"
    network_id: str | None = None

    @property
    def attach_to(self) -> str:
        """Value passed to ``--network``."""
        return self.network_id or self.mode


@dataclass(frozen=True, slots=True)
class Capabilities:
    add: tuple[str, ...] = ()
    drop: tuple[str, ...] = ("ALL",)


@dataclass(frozen=True, slots=True)
class SecurityConfig:
    read_only_root: bool = True
    no_new_privileges: bool = True
    user: str = "swarm:swarm"
    security_opts: tuple[str, ...] = ()
    capabilities: Capabilities = field(default_factory=Capabilities)


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    memory: str = "512m"
    cpus: float = 0.5
    cpu_quota: int = 50000
    memory_swappiness: int = 0
    oom_score_adj: int = 1000
    pids_limit: int = 256
    ulimits: tuple[tuple[str, int, int], ...] = ()


@dataclass(frozen=True, slots=True)
class ContainerConfig:
    """Immutable description of one sandbox container.

    ``labels`` and ``environment`` are exposed as read-only mappings.
    """

    name: str
    image: str
    labels: Mapping[str, str]
    environment: Mapping[str, str]
    mounts: tuple[Mount, ...]
    network: NetworkConfig
    security: SecurityConfig
    resources: ResourceLimits
    working_dir: str = "/workspace"
    command: tuple[str, ...] = KEEP_ALIVE_COMMAND

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("container name must be non-empty")
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))
        for mount in self.mounts:
            if mount.type is MountType.TMPFS:
                flags = set(mount.options.split(","))
                if not {"noexec", "nosuid"} <= flags:
                    raise ConfigurationError(
                        f"tmpfs mount {mount.target} must be noexec,nosuid (got {mount.options!r})"
                    )

    @property
    def tmpfs_mounts(self) -> tuple[Mount, ...]:
        return tuple(m for m in self.mounts if m.type is MountType.TMPFS)


def harden_tmpfs_options(options: str) -> str:
    """Normalize tmpfs flags so they always contain ``noexec`` and ``nosuid``.

    ``exec``/``suid`` are stripped, ``rw`` is the default access mode and a
    size is added when none is given.

    >>> harden_tmpfs_options("size=64m,exec")
    'rw,noexec,nosuid,size=64m'
    """
    flags = [f.strip() for f in options.split(",") if f.strip()]
    flags = [f for f in flags if f not in {"exec", "suid", "noexec", "nosuid", "rw", "ro"}]
    access = "ro" if "ro" in {f.strip() for f in options.split(",")} else "rw"
    if not any(f.startswith("size=") for f in flags):
        flags.append(f"size={DEFAULT_TMPFS_SIZE}")
    return ",".join([access, "noexec", "nosuid", *flags])


def _check_not_runtime_socket(path: str) -> None:
    if PurePosixPath(path).name in RUNTIME_SOCKETS:
        raise ConfigurationError(f"mounting the runtime control socket {path!r} is not allowed")


class ContainerConfigBuilder:
    """Synthesizes a ``ContainerConfig`` from a task, an agent and settings."""

    __slots__ = ("_settings",)

    def __init__(self, settings: SandboxSettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    def build(
        self,
        task: Task,
        agent: AgentState,
        *,
        session_id: str,
        network_id: str | None = None,
        volume_id: str | None = None,
        extra_labels: Mapping[str, str] | None = None,
    ) -> ContainerConfig:
        """Return the container configuration for one execution session.

        Raises
        ------
        ConfigurationError
            If an explicit mount targets the runtime control socket.
        """
        s = self._settings
        name = f"{LABEL_PREFIX}-{_NAME_UNSAFE.sub('-', agent.type)}-{session_id[:12]}"
        network = NetworkConfig(
            mode=s.network_mode,
            network_id=None if s.network_mode == "none" else network_id,
        )
        return ContainerConfig(
            name=name,
            image=s.image_ref,
            labels=self._labels(task, agent, session_id, extra_labels),
            environment=self.filter_environment(self._requested_environment(task, agent, name)),
            mounts=self._mounts(volume_id),
            network=network,
            security=self._security(),
            resources=self._resources(agent.type),
            working_dir=s.workspace_path,
        )

    def filter_environment(self, requested: Mapping[str, str]) -> dict[str, str]:
        """Keep only whitelisted keys; others are dropped silently."""
        allowed = set(self._settings.environment_whitelist)
        kept = {k: v for k, v in requested.items() if k in allowed}
        dropped = len(requested) - len(kept)
        if dropped:
            logger.debug("Dropped %d non-whitelisted environment variable(s)", dropped)
        return kept

    def exec_environment(self, task: Task, agent: AgentState) -> dict[str, str]:
        """Whitelisted per-task variables passed as ``exec -e`` flags.

        A warm container was created for a placeholder task, so the task's
        own environment and type stamps have to travel with each exec.
        """
        env = {k: v for k, v in task.environment.items() if k not in _CONTAINER_STAMPS}
        env.update({"AGENT_TYPE": agent.type, "TASK_TYPE": task.task_type})
        return self.filter_environment(env)

    # -- parts ----------------------------------------------------------

    def _requested_environment(self, task: Task, agent: AgentState, name: str) -> dict[str, str]:
        env: dict[str, str] = {}
        profile = self._settings.profile_for(agent.type)
        if profile is not None:
            env.update(profile.environment)
        env.update(task.environment)
        # Identity stamps always win over requested values.
        env.update(
            {
                "SWARM_MODE": "sandbox",
                "AGENT_TYPE": agent.type,
                "TASK_TYPE": task.task_type,
                "CONTAINER_ID": name,
                "NETWORK_MODE": self._settings.network_mode,
            }
        )
        return env

    def _labels(
        self,
        task: Task,
        agent: AgentState,
        session_id: str,
        extra: Mapping[str, str] | None,
    ) -> dict[str, str]:
        labels = dict(extra or {})
        labels.update(
            {
                MANAGED_LABEL: "true",
                f"{LABEL_PREFIX}.session.id": session_id,
                f"{LABEL_PREFIX}.task.id": task.id,
                f"{LABEL_PREFIX}.agent.id": agent.id,
                f"{LABEL_PREFIX}.agent.type": agent.type,
                f"{LABEL_PREFIX}.security.level": "isolated",
            }
        )
        return labels

    def _mounts(self, volume_id: str | None) -> tuple[Mount, ...]:
        s = self._settings
        mounts: list[Mount] = []
        if volume_id:
            mounts.append(Mount(MountType.VOLUME, target=s.workspace_path, source=volume_id))
        for target, options in s.tmpfs.items():
            mounts.append(Mount(MountType.TMPFS, target=target, options=harden_tmpfs_options(options)))
        for vm in s.volume_mounts:
            _check_not_runtime_socket(vm.source)
            _check_not_runtime_socket(vm.target)
            mounts.append(
                Mount(MountType.BIND, target=vm.target, source=vm.source, read_only=vm.read_only)
            )
        return tuple(mounts)

    def _security(self) -> SecurityConfig:
        s = self._settings
        if s.cap_add:
            logger.info("Container config adds capabilities: %s", ",".join(s.cap_add))
        return SecurityConfig(
            read_only_root=s.read_only_root,
            no_new_privileges=s.no_new_privileges,
            user=s.user,
            security_opts=tuple(s.security_opts),
            capabilities=Capabilities(add=tuple(s.cap_add), drop=tuple(s.cap_drop)),
        )

    def _resources(self, agent_type: str) -> ResourceLimits:
        s = self._settings
        profile = s.profile_for(agent_type)
        return ResourceLimits(
            memory=(profile.memory if profile and profile.memory else s.memory),
            cpus=(profile.cpus if profile and profile.cpus else s.cpus),
            cpu_quota=(profile.cpu_quota if profile and profile.cpu_quota else s.cpu_quota),
            memory_swappiness=s.memory_swappiness,
            oom_score_adj=s.oom_score_adj,
            pids_limit=s.pids_limit,
            ulimits=tuple((u.name, u.soft, u.hard) for u in s.ulimits),
        )


def build_create_args(config: ContainerConfig) -> list[str]:
    """Render *config* as the argument vector for the runtime ``create`` call."""
    res = config.resources
    sec = config.security
    args: list[str] = [
        "create",
        "--name", config.name,
        "--memory", res.memory,
        "--memory-swappiness", str(res.memory_swappiness),
        "--cpus", f"{res.cpus:g}",
        "--cpu-quota", str(res.cpu_quota),
        "--oom-score-adj", str(res.oom_score_adj),
    ]  # fmt: skip
    if res.pids_limit:
        args += ["--pids-limit", str(res.pids_limit)]
    if sec.read_only_root:
        args.append("--read-only")
    if sec.no_new_privileges:
        args += ["--security-opt", "no-new-privileges:true"]
    if sec.user:
        args += ["--user", sec.user]
    for opt in sec.security_opts:
        args += ["--security-opt", opt]
    for cap in sec.capabilities.drop:
        args += ["--cap-drop", cap]
    for cap in sec.capabilities.add:
        args += ["--cap-add", cap]
    for key, value in config.environment.items():
        args += ["-e", f"{key}={value}"]
    for key, value in config.labels.items():
        args += ["--label", f"{key}={value}"]
    for mount in config.mounts:
        if mount.type is MountType.TMPFS:
            args += ["--tmpfs", f"{mount.target}:{mount.options}"]
        else:
            spec = f"{mount.source}:{mount.target}"
            if mount.read_only:
                spec += ":ro"
            args += ["-v", spec]
    args += ["--network", config.network.attach_to]
    for name, soft, hard in res.ulimits:
        args += ["--ulimit", f"{name}={soft}:{hard}"]
    args += ["--workdir", config.working_dir]
    args.append(config.image)
    args.extend(config.command)
    return args
