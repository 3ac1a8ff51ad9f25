"""Per-session isolation primitives.

Three independently owned managers:

- ``NetworkManager`` allocates one bridge network per session.
- ``VolumeManager`` allocates one writable workspace volume per session.
- ``SecurityManager`` applies the policy checks that cannot be expressed as
  creation-time flags, and counts violations.

Each manager is the sole owner of the identifiers it allocates and can
release all of them via ``cleanup()``.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from swarmbox.sandbox.container import MANAGED_LABEL, MountType
from swarmbox.sandbox.exceptions import (
    CleanupError,
    IsolationResourceError,
    SandboxError,
    SecurityPolicyViolation,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from swarmbox.sandbox.container import ContainerConfig
    from swarmbox.sandbox.lifecycle import ExecutionContext
    from swarmbox.sandbox.runtime import ContainerRuntime

log = logging.getLogger(__name__)


class _ResourceManager(ABC):
    """Shared bookkeeping for managers that allocate named runtime objects."""

    kind = "resource"
    prefix = "swarmbox"

    def __init__(self, runtime: ContainerRuntime) -> None:
        self._runtime = runtime
        self._owned: set[str] = set()
        self._lock = threading.Lock()

    @property
    def owned(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._owned)

    def name_for(self, session_id: str) -> str:
        return f"{self.prefix}-{session_id}"

    def _remember(self, ident: str) -> None:
        with self._lock:
            self._owned.add(ident)

    def _forget(self, ident: str) -> bool:
        with self._lock:
            if ident in self._owned:
                self._owned.discard(ident)
                return True
            return False

    async def _remove(self, ident: str, args: list[str]) -> None:
        result = await self._runtime.run(args, timeout=30.0)
        if not result.ok and "no such" not in result.stderr.lower():
            raise CleanupError(self.kind, ident, result.stderr.strip()[:300])
        self._forget(ident)

    async def cleanup(self) -> list[CleanupError]:
        """Release every identifier this manager still owns."""
        errors: list[CleanupError] = []
        for ident in sorted(self.owned):
            try:
                await self.remove(ident)
            except SandboxError as exc:
                log.warning("%s cleanup failed for %s: %s", self.kind, ident, exc)
                errors.append(
                    exc if isinstance(exc, CleanupError) else CleanupError(self.kind, ident, str(exc))
                )
        return errors

    @abstractmethod
    async def remove(self, ident: str) -> None:
        """Delete one runtime object; ``CleanupError`` on failure."""


class NetworkManager(_ResourceManager):
    """Creates one isolated bridge network per session.

    When ``internal`` is set the network has no route to the outside world;
    containers on it can only reach each other.
    """

    kind = "network"
    prefix = "swarmbox-net"

    def __init__(self, runtime: ContainerRuntime, *, internal: bool = True) -> None:
        super().__init__(runtime)
        self._internal = internal

    async def create_isolated_network(self, session_id: str) -> str:
        name = self.name_for(session_id)
        args = ["network", "create", "--driver", "bridge"]
        if self._internal:
            args.append("--internal")
        args += ["--label", f"{MANAGED_LABEL}=true", "--label", f"swarmbox.session.id={session_id}", name]
        result = await self._runtime.run(args, timeout=30.0)
        if not result.ok:
            raise IsolationResourceError("network", name, result.stderr)
        self._remember(name)
        log.debug("Created network %s", name)
        return name

    async def remove(self, ident: str) -> None:
        await self._remove(ident, ["network", "rm", ident])


class VolumeManager(_ResourceManager):
    """Creates one writable workspace volume per session."""

    kind = "volume"
    prefix = "swarmbox-vol"

    async def create_volume(self, session_id: str) -> str:
        name = self.name_for(session_id)
        result = await self._runtime.run(
            [
                "volume", "create",
                "--label", f"{MANAGED_LABEL}=true",
                "--label", f"swarmbox.session.id={session_id}",
                name,
            ],  # fmt: skip
            timeout=30.0,
        )
        if not result.ok:
            raise IsolationResourceError("volume", name, result.stderr)
        self._remember(name)
        log.debug("Created volume %s", name)
        return name

    async def remove(self, ident: str) -> None:
        await self._remove(ident, ["volume", "rm", "-f", ident])

    async def reset_volume(self, container_id: str, workspace_path: str = "/workspace") -> bool:
        """Empty the workspace of a running container (warm-pool reuse)."""
        result = await self._runtime.run(
            ["exec", container_id, "find", workspace_path, "-mindepth", "1", "-delete"],
            timeout=30.0,
        )
        if not result.ok:
            log.warning("Workspace reset failed for %s: %s", container_id[:12], result.stderr.strip()[:200])
        return result.ok


class SecurityManager:
    """Runtime policy checks with a violation counter.

    ``validate_config`` checks the declarative configuration before the
    container is created; ``apply_security_policies`` inspects the live
    container and confirms the runtime actually applied the hardening.
    Violations are logged and counted, never raised.
    """

    def __init__(self, runtime: ContainerRuntime) -> None:
        self._runtime = runtime
        self._violations: list[SecurityPolicyViolation] = []
        self._lock = threading.Lock()
        self._listeners: list[Callable[[SecurityPolicyViolation], None]] = []

    def get_violation_count(self) -> int:
        with self._lock:
            return len(self._violations)

    @property
    def violations(self) -> tuple[SecurityPolicyViolation, ...]:
        with self._lock:
            return tuple(self._violations)

    def on_violation(self, callback: Callable[[SecurityPolicyViolation], None]) -> None:
        """Register ``callback(violation)``; called after each recorded violation."""
        self._listeners.append(callback)

    def record_violation(self, policy: str, detail: str = "") -> SecurityPolicyViolation:
        violation = SecurityPolicyViolation(policy, detail)
        with self._lock:
            self._violations.append(violation)
        log.warning("Security violation: %s", violation)
        for callback in list(self._listeners):
            try:
                callback(violation)
            except Exception:
                log.exception("Security violation listener failed")
        return violation

    def validate_config(self, config: ContainerConfig) -> list[SecurityPolicyViolation]:
        """Check *config* against the hardening policy; return violations found."""
        found: list[SecurityPolicyViolation] = []
        sec = config.security

        def _fail(policy: str, detail: str) -> None:
            found.append(self.record_violation(policy, f"{config.name}: {detail}"))

        if "ALL" not in {c.upper() for c in sec.capabilities.drop}:
            _fail("capability_drop", "capabilities are not fully dropped")
        if sec.user in {"", "root", "0", "0:0", "root:root"}:
            _fail("unprivileged_user", f"runs as {sec.user or 'default (root)'}")
        if not sec.no_new_privileges:
            _fail("no_new_privileges", "no-new-privileges is disabled")
        if not sec.read_only_root:
            _fail("read_only_root", "root filesystem is writable")
        for mount in config.mounts:
            if mount.type is MountType.TMPFS:
                flags = set(mount.options.split(","))
                if not {"noexec", "nosuid"} <= flags:
                    _fail("tmpfs_hardening", f"{mount.target} lacks noexec/nosuid")
        return found

    async def apply_security_policies(self, context: ExecutionContext) -> bool:
        """Confirm the runtime applied the hardening to a created container.

        Returns ``True`` when every check passed.  Failed checks (including
        an unreadable inspect record) are counted as violations.
        """
        if not context.container_id:
            self.record_violation("inspect", f"{context.container_name}: no container id")
            return False
        try:
            result = await self._runtime.run(
                ["inspect", "--format", "{{json .HostConfig}}", context.container_id], timeout=30.0
            )
        except SandboxError as exc:
            self.record_violation("inspect", f"{context.container_name}: {exc}")
            return False
        try:
            host_config = json.loads(result.stdout) if result.ok else None
        except json.JSONDecodeError:
            host_config = None
        if not isinstance(host_config, dict):
            self.record_violation("inspect", f"{context.container_name}: host config unavailable")
            return False

        failures: list[SecurityPolicyViolation] = []
        wanted = context.config.security
        name = context.container_name

        def _fail(policy: str, detail: str) -> None:
            failures.append(self.record_violation(policy, f"{name}: {detail}"))

        if host_config.get("Privileged"):
            _fail("privileged", "container is privileged")
        if wanted.read_only_root and not host_config.get("ReadonlyRootfs"):
            _fail("read_only_root", "runtime did not apply --read-only")
        cap_drop = {str(c).upper() for c in host_config.get("CapDrop") or []}
        if "ALL" in {c.upper() for c in wanted.capabilities.drop} and "ALL" not in cap_drop:
            _fail("capability_drop", "runtime did not drop ALL")
        security_opts = [str(o) for o in host_config.get("SecurityOpt") or []]
        if wanted.no_new_privileges and not any(o.startswith("no-new-privileges") for o in security_opts):
            _fail("no_new_privileges", "no-new-privileges not applied")
        return not failures
