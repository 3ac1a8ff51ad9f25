"""Container lifecycle manager.

Drives one sandbox container per execution through::

    prepare → create → start → execute → stop → cleanup

``execute_task`` wraps the whole sequence and guarantees that ``cleanup``
runs on every exit path: normal return, failed result, timeout, or an
exception unwinding the stack.  ``cleanup`` is best-effort; each step
(stop, remove, network, volume, registry) runs even if an earlier one
failed, and failures are collected as ``CleanupError`` values rather than
raised, so they never mask the execution result.

Task-level failures are returned as ``ExecutionResult(success=False)``.
Creation/start failures are raised (after cleanup) and retried according
to the task's ``RetryPolicy``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from swarmbox.config import SandboxSettings, load_settings
from swarmbox.models import ExecutionResult, ResourceUsage
from swarmbox.sandbox.commands import ShellCommandBuilder
from swarmbox.sandbox.container import MANAGED_LABEL, ContainerConfigBuilder, build_create_args
from swarmbox.sandbox.events import LifecycleEvent, LifecycleEventBus, LifecycleEventKind
from swarmbox.sandbox.exceptions import (
    CleanupError,
    ContainerCreationError,
    ContainerStartError,
    ExecutionTimeoutError,
    ResourceLimitExceededError,
    RuntimeCommandTimeout,
    SandboxError,
    SandboxInvariantError,
    SecurityPolicyViolation,
)
from swarmbox.sandbox.isolation import NetworkManager, SecurityManager, VolumeManager
from swarmbox.sandbox.resources import parse_stats
from swarmbox.sandbox.runtime import (
    DockerCLI,
    check_available,
    ensure_image,
    image_size,
    measure_latency,
)
from swarmbox.sandbox.state_machine import (
    TERMINAL_STATES,
    ContainerEvent,
    ContainerState,
    LifecycleTracker,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from swarmbox.models import AgentState, Task
    from swarmbox.sandbox.commands import CommandBuilder
    from swarmbox.sandbox.container import ContainerConfig
    from swarmbox.sandbox.runtime import ContainerRuntime

__all__ = [
    "ContainerLifecycleManager",
    "ContainerMetrics",
    "ContainerRegistry",
    "ExecutionContext",
]

log = logging.getLogger(__name__)

#: Exit status reported when the exec client is killed on timeout.
TIMEOUT_EXIT_CODE = 124
OOM_EXIT_CODE = 137


@dataclass(eq=False)
class ExecutionContext:
    """State of one in-flight execution.

    Owned by the lifecycle manager for the lifetime of the execution and
    never shared between concurrent executions.
    """

    session_id: str
    config: ContainerConfig
    settings: SandboxSettings
    network_id: str | None = None
    volume_id: str | None = None
    working_directory: Path | None = None
    container_id: str = ""
    tracker: LifecycleTracker = field(default_factory=LifecycleTracker)
    created_at: float = field(default_factory=time.time)

    @property
    def container_name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ContainerState:
        return self.tracker.state

    def describe(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "session_id": self.session_id,
            "network_id": self.network_id,
            "volume_id": self.volume_id,
        }


class ContainerRegistry:
    """Thread-safe map of session id → active ``ExecutionContext``.

    A container id can belong to at most one registered context.
    """

    def __init__(self) -> None:
        self._contexts: dict[str, ExecutionContext] = {}
        self._lock = threading.Lock()

    def register(self, context: ExecutionContext) -> None:
        with self._lock:
            if context.session_id in self._contexts:
                raise SandboxInvariantError(
                    "unique_session", f"session {context.session_id} already registered"
                )
            for other in self._contexts.values():
                if context.container_id and other.container_id == context.container_id:
                    raise SandboxInvariantError(
                        "unique_container_id",
                        f"container {context.container_id[:12]} already owned by session {other.session_id}",
                    )
            self._contexts[context.session_id] = context

    def unregister(self, session_id: str) -> ExecutionContext | None:
        with self._lock:
            return self._contexts.pop(session_id, None)

    def get(self, session_id: str) -> ExecutionContext | None:
        with self._lock:
            return self._contexts.get(session_id)

    def contexts(self) -> list[ExecutionContext]:
        with self._lock:
            return list(self._contexts.values())

    def owns_container(self, container_id: str) -> bool:
        """Match full or short (12-char) runtime ids."""
        with self._lock:
            return any(
                c.container_id and (c.container_id.startswith(container_id) or container_id.startswith(c.container_id))
                for c in self._contexts.values()
            )

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)


@dataclass(frozen=True, slots=True)
class ContainerMetrics:
    """Observability snapshot.

    ``volume_iops`` is not measured by the CLI runtime and is ``None``.
    """

    total_containers: int
    active_containers: int
    image_size: int
    network_latency: float
    volume_iops: float | None
    security_violations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_containers": self.total_containers,
            "active_containers": self.active_containers,
            "image_size": self.image_size,
            "network_latency": self.network_latency,
            "volume_iops": self.volume_iops,
            "security_violations": self.security_violations,
        }


class ContainerLifecycleManager:
    """Creates, runs and reclaims sandbox containers.

    Parameters
    ----------
    settings:
        Base configuration; ``load_settings()`` when omitted.
    runtime:
        Runtime CLI wrapper; a ``DockerCLI`` built from *settings* when omitted.
    command_builder:
        Strategy turning a task into the in-container argument vector.
    events:
        Bus on which lifecycle events are published.
    """

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        runtime: ContainerRuntime | None = None,
        *,
        command_builder: CommandBuilder | None = None,
        events: LifecycleEventBus | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.runtime: ContainerRuntime = runtime or DockerCLI(
            self.settings.runtime_binary,
            max_concurrency=self.settings.max_concurrent_runtime_calls,
            default_timeout=self.settings.runtime_call_timeout,
            max_output_bytes=self.settings.max_output_bytes,
        )
        self.command_builder: CommandBuilder = command_builder or ShellCommandBuilder()
        self.events = events or LifecycleEventBus()
        self.builder = ContainerConfigBuilder(self.settings)
        self.registry = ContainerRegistry()
        self.networks = NetworkManager(self.runtime, internal=self.settings.network_internal)
        self.volumes = VolumeManager(self.runtime)
        self.security = SecurityManager(self.runtime)
        self.security.on_violation(self._publish_violation)
        self._total_created = 0
        self._counter_lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Setup / teardown
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Verify the runtime is reachable and the image is present.

        Raises ``RuntimeUnavailableError`` if the runtime cannot be used.
        """
        if self._initialized:
            return
        info = await check_available(self.runtime, self.settings.runtime_binary)
        server = info.get("Server") if isinstance(info.get("Server"), dict) else {}
        log.info(
            "Container runtime ready: %s %s",
            self.settings.runtime_binary,
            (server or {}).get("Version", "unknown"),
        )
        await ensure_image(self.runtime, self.settings.image_ref)
        self._initialized = True

    async def shutdown(self) -> list[CleanupError]:
        """Reclaim every registered container and all owned networks/volumes."""
        contexts = self.registry.contexts()
        if contexts:
            log.info("Shutting down %d active container(s)", len(contexts))
        results = await asyncio.gather(*(self.cleanup(c) for c in contexts))
        errors = [e for errs in results for e in errs]
        errors += await self.networks.cleanup()
        errors += await self.volumes.cleanup()
        return errors

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------

    async def prepare(
        self,
        task: Task,
        agent: AgentState,
        *,
        settings: SandboxSettings | None = None,
        extra_labels: Mapping[str, str] | None = None,
    ) -> ExecutionContext:
        """Allocate the network and volume for a new session and build its config.

        Nothing is registered yet.  On failure, whatever was allocated here
        is released before the error propagates.
        """
        s = settings or self.settings
        session_id = uuid.uuid4().hex
        network_id: str | None = None
        volume_id: str | None = None
        try:
            if s.network_mode != "none":
                network_id = await self.networks.create_isolated_network(session_id)
            volume_id = await self.volumes.create_volume(session_id)
            builder = self.builder if s is self.settings else ContainerConfigBuilder(s)
            config = builder.build(
                task,
                agent,
                session_id=session_id,
                network_id=network_id,
                volume_id=volume_id,
                extra_labels=extra_labels,
            )
        except BaseException:
            await self._release_isolation(network_id, volume_id)
            raise
        self.security.validate_config(config)
        return ExecutionContext(
            session_id=session_id,
            config=config,
            settings=s,
            network_id=network_id,
            volume_id=volume_id,
            working_directory=Path(s.artifacts_root) / session_id,
        )

    async def create(self, context: ExecutionContext) -> str:
        """Create the container; register the context only on success.

        Raises
        ------
        ContainerCreationError
            If the runtime reports a non-zero exit or the call times out.
        """
        args = build_create_args(context.config)
        try:
            result = await self.runtime.run(args, timeout=context.settings.runtime_call_timeout)
        except RuntimeCommandTimeout as exc:
            # The runtime may have created it anyway; remove by name.
            await self._force_remove(context.container_name)
            self._emit(LifecycleEventKind.CONTAINER_ERROR, context, step="create", error=str(exc))
            raise ContainerCreationError(context.container_name, -1, str(exc)) from exc
        if not result.ok:
            self._emit(LifecycleEventKind.CONTAINER_ERROR, context, step="create", error=result.stderr[:300])
            raise ContainerCreationError(context.container_name, result.exit_code, result.stderr)

        lines = result.stdout.strip().splitlines()
        context.container_id = lines[-1].strip() if lines else context.container_name
        context.tracker.advance(ContainerEvent.CREATE)
        try:
            self.registry.register(context)
        except SandboxInvariantError:
            await self._force_remove(context.container_id)
            raise
        with self._counter_lock:
            self._total_created += 1
        log.info("Created container %s (%s)", context.container_name, context.container_id[:12])
        self._emit(LifecycleEventKind.CONTAINER_CREATED, context)
        await self.security.apply_security_policies(context)
        return context.container_id

    async def start(self, context: ExecutionContext) -> None:
        """Start a created container.

        Raises
        ------
        ContainerStartError
            If the runtime reports a non-zero exit or the call times out.
        """
        try:
            result = await self.runtime.run(
                ["start", context.container_id], timeout=context.settings.runtime_call_timeout
            )
        except RuntimeCommandTimeout as exc:
            self._emit(LifecycleEventKind.CONTAINER_ERROR, context, step="start", error=str(exc))
            raise ContainerStartError(context.container_id, -1, str(exc)) from exc
        if not result.ok:
            self._emit(LifecycleEventKind.CONTAINER_ERROR, context, step="start", error=result.stderr[:300])
            raise ContainerStartError(context.container_id, result.exit_code, result.stderr)
        context.tracker.advance(ContainerEvent.START)
        self._emit(LifecycleEventKind.CONTAINER_STARTED, context)

    async def execute(self, context: ExecutionContext, task: Task, agent: AgentState) -> ExecutionResult:
        """Run *task* inside the running container and collect its results.

        Never raises for task-level failures: a non-zero exit, a timeout or
        an OOM kill is reported as ``success=False`` with ``error`` and
        ``metadata["error_type"]`` set.
        """
        s = context.settings
        timeout = task.timeout or s.task_timeout
        argv = self.command_builder.build(task, agent)
        exec_args = ["exec", "-w", s.workspace_path]
        for key, value in ContainerConfigBuilder(s).exec_environment(task, agent).items():
            exec_args += ["-e", f"{key}={value}"]
        metadata: dict[str, Any] = {**context.describe(), "agent_type": agent.type, "task_id": task.id}
        log.info("Executing task %s in %s", task.id, context.container_name)

        started = time.monotonic()
        try:
            result = await self.runtime.run([*exec_args, context.container_id, *argv], timeout=timeout)
        except RuntimeCommandTimeout:
            duration = time.monotonic() - started
            err = ExecutionTimeoutError(context.container_id, timeout)
            log.warning("Task %s timed out after %.1fs", task.id, duration)
            await self.stop(context, reason="timeout")
            self._emit(LifecycleEventKind.CONTAINER_ERROR, context, step="execute", error=str(err))
            return ExecutionResult(
                success=False,
                error=str(err),
                exit_code=TIMEOUT_EXIT_CODE,
                duration=duration,
                metadata={**metadata, "error_type": type(err).__name__, "timed_out": True},
            )
        duration = time.monotonic() - started
        context.tracker.advance(ContainerEvent.EXEC_COMPLETE)

        usage = await self.collect_stats(context)
        error = ""
        if result.exit_code != 0:
            error = result.stderr.strip() or f"Process exited with code {result.exit_code}"
            metadata["error_type"] = "NonZeroExit"
            if result.exit_code == OOM_EXIT_CODE and await self._oom_killed(context):
                oom = ResourceLimitExceededError(
                    context.container_id, result.exit_code, context.config.resources.memory
                )
                error = f"{oom}\n{error}" if result.stderr.strip() else str(oom)
                metadata["error_type"] = type(oom).__name__
        if result.truncated:
            metadata["output_truncated"] = True

        artifacts: dict[str, Any] = {}
        if s.collect_artifacts:
            artifacts = await self.collect_artifacts(context)

        self._emit(LifecycleEventKind.CONTAINER_EXECUTED, context, exit_code=result.exit_code)
        return ExecutionResult(
            success=result.exit_code == 0,
            output=result.stdout,
            error=error,
            exit_code=result.exit_code,
            duration=duration,
            resource_usage=usage,
            artifacts=artifacts,
            metadata=metadata,
        )

    async def stop(self, context: ExecutionContext, reason: str = "") -> None:
        """Stop gracefully, escalating to ``kill``.  Never raises.

        A no-op for contexts that were never created or are already
        stopping, killed or removed.
        """
        if context.state in {ContainerState.PENDING, ContainerState.STOPPING, ContainerState.KILLED} | TERMINAL_STATES:
            return
        grace = context.settings.stop_grace_seconds
        log.info("Stopping %s (%s)", context.container_name, reason or "requested")
        was_running = context.state is not ContainerState.CREATED
        context.tracker.advance(ContainerEvent.STOP)
        try:
            result = await self.runtime.run(
                ["stop", "-t", str(grace), context.container_id], timeout=grace + 10
            )
            if result.ok:
                self._emit(LifecycleEventKind.CONTAINER_STOPPED, context, reason=reason)
                return
            log.warning("Graceful stop of %s failed: %s", context.container_name, result.stderr.strip()[:200])
        except SandboxError as exc:
            log.warning("Graceful stop of %s failed: %s", context.container_name, exc)

        context.tracker.advance(ContainerEvent.KILL)
        if was_running:
            try:
                killed = await self.runtime.run(["kill", context.container_id], timeout=30.0)
                if not killed.ok:
                    log.warning("Kill of %s failed: %s", context.container_name, killed.stderr.strip()[:200])
            except SandboxError as exc:
                log.warning("Kill of %s failed: %s", context.container_name, exc)
        self._emit(LifecycleEventKind.CONTAINER_KILLED, context, reason=reason)

    async def cleanup(self, context: ExecutionContext) -> list[CleanupError]:
        """Stop, remove, release network and volume, drop the registry entry.

        Every step runs regardless of earlier failures.  Returns the
        failures (already logged); never raises.
        """
        errors: list[CleanupError] = []
        if context.container_id and context.state not in TERMINAL_STATES:
            await self.stop(context, reason="cleanup")
            try:
                removed = await self.runtime.run(["rm", "-f", context.container_id], timeout=30.0)
                if not removed.ok and "no such" not in removed.stderr.lower():
                    raise CleanupError("remove", context.container_id, removed.stderr.strip()[:300])
                context.tracker.try_advance(ContainerEvent.REMOVE)
                self._emit(LifecycleEventKind.CONTAINER_REMOVED, context)
            except CleanupError as exc:
                errors.append(exc)
            except SandboxError as exc:
                errors.append(CleanupError("remove", context.container_id, str(exc)))

        errors += await self._release_isolation(context.network_id, context.volume_id)
        self.registry.unregister(context.session_id)
        for err in errors:
            log.warning("%s", err)
        return errors

    # ------------------------------------------------------------------
    # Composite operation
    # ------------------------------------------------------------------

    async def execute_task(self, task: Task, agent: AgentState, **overrides: Any) -> ExecutionResult:
        """Run *task* in a fresh sandbox; always reclaim the sandbox afterwards.

        ``overrides`` are merged onto the base settings for this request
        only (``ConfigurationError`` on unknown keys).
        """
        settings = self.settings.merged(**overrides)
        attempts = task.retry_policy.max_retries + 1
        for attempt in range(1, attempts + 1):
            context = await self.prepare(task, agent, settings=settings)
            try:
                await self.create(context)
                await self.start(context)
                result = await self.execute(context, task, agent)
                return replace(result, metadata={**result.metadata, "attempt": attempt})
            except (ContainerCreationError, ContainerStartError) as exc:
                if attempt >= attempts:
                    raise
                delay = task.retry_policy.backoff * attempt
                log.warning(
                    "Attempt %d/%d for task %s failed (%s); retrying in %.1fs",
                    attempt,
                    attempts,
                    task.id,
                    type(exc).__name__,
                    delay,
                )
            finally:
                await self.cleanup(context)
            await asyncio.sleep(delay)
        raise SandboxInvariantError("retry_loop", "exhausted without result")  # pragma: no cover

    # ------------------------------------------------------------------
    # Telemetry and collection
    # ------------------------------------------------------------------

    async def collect_stats(self, context: ExecutionContext) -> ResourceUsage:
        try:
            result = await self.runtime.run(
                ["stats", "--no-stream", "--format", "{{json .}}", context.container_id],
                timeout=30.0,
            )
        except SandboxError as exc:
            log.debug("Stats unavailable for %s: %s", context.container_name, exc)
            return ResourceUsage()
        return parse_stats(result.stdout) if result.ok else ResourceUsage()

    async def collect_artifacts(self, context: ExecutionContext) -> dict[str, Any]:
        """Copy the container workspace into a fresh run directory under the session's.

        Each call gets its own directory, so a reused container never
        reports files collected for an earlier task.
        """
        if context.working_directory is None:
            return {}
        dest = context.working_directory / f"run-{uuid.uuid4().hex[:12]}"
        try:
            dest.mkdir(parents=True, exist_ok=True)
            copied = await self.runtime.run(
                ["cp", f"{context.container_id}:{context.settings.workspace_path}/.", str(dest)],
                timeout=60.0,
            )
        except (OSError, SandboxError) as exc:
            log.warning("Artifact collection failed for %s: %s", context.container_name, exc)
            return {}
        if not copied.ok:
            log.warning(
                "Artifact collection failed for %s: %s", context.container_name, copied.stderr.strip()[:200]
            )
            return {}
        files = sorted(str(p.relative_to(dest)) for p in dest.rglob("*") if p.is_file())
        return {"workdir": str(dest), "container_files": files}

    async def get_metrics(self) -> ContainerMetrics:
        """Snapshot for dashboards; runtime queries that fail report zero."""
        try:
            size = await image_size(self.runtime, self.settings.image_ref)
        except SandboxError:
            size = 0
        try:
            latency = await measure_latency(self.runtime)
        except SandboxError:
            latency = 0.0
        with self._counter_lock:
            total = self._total_created
        return ContainerMetrics(
            total_containers=total,
            active_containers=len(self.registry),
            image_size=size,
            network_latency=latency,
            volume_iops=None,
            security_violations=self.security.get_violation_count(),
        )

    async def reap_orphans(self) -> list[str]:
        """Force-remove managed containers that no registered context owns."""
        listed = await self.runtime.run(
            ["ps", "-aq", "--filter", f"label={MANAGED_LABEL}=true"], timeout=30.0
        )
        if not listed.ok:
            log.warning("Orphan listing failed: %s", listed.stderr.strip()[:200])
            return []
        reaped: list[str] = []
        for container_id in listed.stdout.split():
            if self.registry.owns_container(container_id):
                continue
            if await self._force_remove(container_id):
                reaped.append(container_id)
        if reaped:
            log.info("Reaped %d orphaned container(s)", len(reaped))
        return reaped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _release_isolation(self, network_id: str | None, volume_id: str | None) -> list[CleanupError]:
        errors: list[CleanupError] = []
        if network_id and network_id in self.networks.owned:
            try:
                await self.networks.remove(network_id)
            except CleanupError as exc:
                errors.append(exc)
            except SandboxError as exc:
                errors.append(CleanupError("network", network_id, str(exc)))
        if volume_id and volume_id in self.volumes.owned:
            try:
                await self.volumes.remove(volume_id)
            except CleanupError as exc:
                errors.append(exc)
            except SandboxError as exc:
                errors.append(CleanupError("volume", volume_id, str(exc)))
        return errors

    async def _force_remove(self, ref: str) -> bool:
        try:
            result = await self.runtime.run(["rm", "-f", ref], timeout=30.0)
        except SandboxError as exc:
            log.warning("Force remove of %s failed: %s", ref[:12], exc)
            return False
        return result.ok

    async def _oom_killed(self, context: ExecutionContext) -> bool:
        try:
            result = await self.runtime.run(
                ["inspect", "--format", "{{.State.OOMKilled}}", context.container_id], timeout=30.0
            )
        except SandboxError:
            return False
        return result.ok and result.stdout.strip().lower() == "true"

    def _emit(self, kind: LifecycleEventKind, context: ExecutionContext, **detail: Any) -> None:
        self.events.emit(
            LifecycleEvent(
                kind=kind,
                session_id=context.session_id,
                container_id=context.container_id,
                container_name=context.container_name,
                detail=detail,
            )
        )

    def _publish_violation(self, violation: SecurityPolicyViolation) -> None:
        self.events.emit(
            LifecycleEvent(
                kind=LifecycleEventKind.SECURITY_VIOLATION,
                session_id="",
                detail={"policy": violation.policy, "detail": violation.detail},
            )
        )
