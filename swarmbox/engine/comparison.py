"""Process-vs-container performance and security comparison.

``ComparisonEngine.compare`` runs a task ``iterations`` times through an
unsandboxed ``ProcessExecutor`` and ``iterations`` times through the
container path, then reports per-mode averages and percentage overheads.

Averages cover successful runs only; failed runs still count in the
success-rate denominator.  A mode with no successful runs averages to
zero, and an overhead against a zero baseline is reported as zero.

The security-gain score is a static function of the applied
``ContainerConfig`` (``score_security_config``), not a runtime
measurement.  The fully hardened default configuration scores
isolation 0.95, attack-surface reduction 0.80, privilege-escalation
prevention 0.90 and resource containment 0.85; every missing hardening
measure lowers the affected dimension.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol

from swarmbox.models import ExecutionResult
from swarmbox.sandbox.container import MountType
from swarmbox.sandbox.exceptions import SandboxError

if TYPE_CHECKING:
    from swarmbox.models import AgentState, Task
    from swarmbox.sandbox.container import ContainerConfig

__all__ = [
    "ComparisonEngine",
    "ModeAverages",
    "OverheadMetrics",
    "PerformanceComparison",
    "SecurityGains",
    "TradeoffAssessment",
    "evaluate_tradeoff",
    "score_security_config",
]

log = logging.getLogger(__name__)


class TaskExecutor(Protocol):
    async def execute_task(self, task: Task, agent: AgentState) -> ExecutionResult:
        ...


@dataclass(frozen=True, slots=True)
class ModeAverages:
    """Averages over the successful runs of one execution mode."""

    duration: float = 0.0
    memory: float = 0.0
    cpu: float = 0.0
    success_rate: float = 0.0
    startup_time: float = 0.0
    runs: int = 0
    successes: int = 0


@dataclass(frozen=True, slots=True)
class OverheadMetrics:
    """Container cost relative to the process baseline, in percent."""

    duration: float = 0.0
    memory: float = 0.0
    cpu: float = 0.0
    startup_time: float = 0.0


@dataclass(frozen=True, slots=True)
class SecurityGains:
    """Qualitative isolation scores in [0, 1]."""

    isolation: float = 0.0
    attack_surface_reduction: float = 0.0
    privilege_escalation_prevention: float = 0.0
    resource_containment: float = 0.0

    @property
    def overall(self) -> float:
        return (
            self.isolation
            + self.attack_surface_reduction
            + self.privilege_escalation_prevention
            + self.resource_containment
        ) / 4


@dataclass(frozen=True, slots=True)
class TradeoffAssessment:
    recommended: bool
    ratio: float
    reason: str


@dataclass(frozen=True, slots=True)
class PerformanceComparison:
    iterations: int
    process: ModeAverages
    container: ModeAverages
    overhead: OverheadMetrics
    security_gains: SecurityGains
    tradeoff: TradeoffAssessment

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["security_gains"]["overall"] = self.security_gains.overall
        if math.isinf(self.tradeoff.ratio):
            data["tradeoff"]["ratio"] = None
        return data


# ---------------------------------------------------------------------------
# Pure scoring helpers
# ---------------------------------------------------------------------------


def _has_unprivileged_user(user: str) -> bool:
    return user not in {"", "root", "0", "0:0", "root:root"}


def score_security_config(config: ContainerConfig) -> SecurityGains:
    """Score the structural isolation guarantees of *config*.

    Each dimension is a sum of fixed weights for the hardening measures
    that contribute to it.
    """
    sec = config.security
    res = config.resources
    drops_all = "ALL" in {c.upper() for c in sec.capabilities.drop}
    no_added_caps = not sec.capabilities.add
    non_root = _has_unprivileged_user(sec.user)
    tmpfs_hardened = all(
        {"noexec", "nosuid"} <= set(m.options.split(",")) for m in config.tmpfs_mounts
    )
    dedicated_network = config.network.network_id is not None or config.network.mode == "none"
    dedicated_workspace = any(
        m.type is MountType.VOLUME and m.target == config.working_dir for m in config.mounts
    )
    writable_binds = any(m.type is MountType.BIND and not m.read_only for m in config.mounts)
    ulimit_names = {name for name, _, _ in res.ulimits}

    isolation = (
        0.10
        + 0.25 * dedicated_network
        + 0.20 * sec.read_only_root
        + 0.15 * dedicated_workspace
        + 0.15 * non_root
        + 0.10 * tmpfs_hardened
    )
    attack_surface = (
        0.40 * drops_all
        + 0.10 * no_added_caps
        + 0.15 * (sec.read_only_root and not writable_binds)
        + 0.15 * tmpfs_hardened
    )
    privilege = (
        0.35 * sec.no_new_privileges
        + 0.25 * non_root
        + 0.20 * drops_all
        + 0.10 * no_added_caps
    )
    containment = (
        0.30 * bool(res.memory)
        + 0.20 * (res.cpus > 0 or res.cpu_quota > 0)
        + 0.20 * (res.pids_limit > 0 or "nproc" in ulimit_names)
        + 0.15 * ("nofile" in ulimit_names)
    )
    return SecurityGains(
        isolation=round(min(isolation, 1.0), 2),
        attack_surface_reduction=round(min(attack_surface, 1.0), 2),
        privilege_escalation_prevention=round(min(privilege, 1.0), 2),
        resource_containment=round(min(containment, 1.0), 2),
    )


def evaluate_tradeoff(overhead_percent: float, security_gain: float) -> TradeoffAssessment:
    """Decide whether the sandbox is worth its overhead.

    Recommended when overhead is under 30% with a gain above 0.8, under
    60% with a gain above 0.7, or when the gain per unit of overhead
    exceeds 2.
    """
    if overhead_percent <= 0:
        return TradeoffAssessment(True, math.inf, "no measurable overhead")
    ratio = security_gain / (overhead_percent / 100)
    if overhead_percent < 30 and security_gain > 0.8:
        return TradeoffAssessment(True, ratio, "low overhead, high security gain")
    if overhead_percent < 60 and security_gain > 0.7:
        return TradeoffAssessment(True, ratio, "moderate overhead, good security gain")
    if ratio > 2:
        return TradeoffAssessment(True, ratio, "security gain outweighs overhead")
    return TradeoffAssessment(False, ratio, "overhead outweighs security gain")


def _overhead(container: float, process: float) -> float:
    if process == 0:
        return 0.0
    return (container - process) / process * 100


def _average(runs: list[tuple[ExecutionResult, float]]) -> ModeAverages:
    valid = [(r, wall) for r, wall in runs if r.success]
    if not valid:
        return ModeAverages(runs=len(runs))
    n = len(valid)
    return ModeAverages(
        duration=sum(r.duration for r, _ in valid) / n,
        memory=sum(r.resource_usage.peak_memory_bytes for r, _ in valid) / n,
        cpu=sum(r.resource_usage.cpu_time for r, _ in valid) / n,
        success_rate=n / len(runs),
        startup_time=sum(wall for _, wall in valid) / n,
        runs=len(runs),
        successes=n,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ComparisonEngine:
    """Runs paired process/container executions and aggregates them.

    Args:
        process_executor: Unsandboxed baseline.
        container_executor: Sandboxed path (normally a
            ``ContainerLifecycleManager``).
        security_config: Configuration to score.  When omitted and the
            container executor exposes a ``builder``, a representative
            configuration is built for the compared task.
    """

    def __init__(
        self,
        process_executor: TaskExecutor,
        container_executor: TaskExecutor,
        *,
        security_config: ContainerConfig | None = None,
    ) -> None:
        self.process_executor = process_executor
        self.container_executor = container_executor
        self.security_config = security_config

    async def compare(self, task: Task, agent: AgentState, iterations: int = 5) -> PerformanceComparison:
        if iterations < 0:
            raise ValueError(f"iterations must be >= 0, got {iterations}")
        log.info("Comparing process vs container for task %s (%d iterations)", task.id, iterations)

        process_runs = [await self._timed(self.process_executor, task, agent) for _ in range(iterations)]
        container_runs = [await self._timed(self.container_executor, task, agent) for _ in range(iterations)]

        process = _average(process_runs)
        container = _average(container_runs)
        overhead = OverheadMetrics(
            duration=_overhead(container.duration, process.duration),
            memory=_overhead(container.memory, process.memory),
            cpu=_overhead(container.cpu, process.cpu),
            startup_time=_overhead(container.startup_time, process.startup_time),
        )
        gains = self._security_gains(task, agent)
        comparison = PerformanceComparison(
            iterations=iterations,
            process=process,
            container=container,
            overhead=overhead,
            security_gains=gains,
            tradeoff=evaluate_tradeoff(overhead.duration, gains.overall),
        )
        log.info(
            "Comparison for %s: duration overhead %.2f%%, memory overhead %.2f%%, startup overhead %.2f%%",
            task.id,
            overhead.duration,
            overhead.memory,
            overhead.startup_time,
        )
        return comparison

    async def _timed(
        self, executor: TaskExecutor, task: Task, agent: AgentState
    ) -> tuple[ExecutionResult, float]:
        started = time.monotonic()
        try:
            result = await executor.execute_task(task, agent)
        except SandboxError as exc:
            log.warning("Comparison run for %s failed: %s", task.id, exc)
            result = ExecutionResult(
                success=False, error=str(exc), metadata={"error_type": type(exc).__name__}
            )
        return result, time.monotonic() - started

    def _security_gains(self, task: Task, agent: AgentState) -> SecurityGains:
        config = self.security_config
        if config is None:
            builder = getattr(self.container_executor, "builder", None)
            if builder is None:
                return SecurityGains()
            config = builder.build(
                task,
                agent,
                session_id="comparison",
                network_id="comparison-network",
                volume_id="comparison-volume",
            )
        return score_security_config(config)
