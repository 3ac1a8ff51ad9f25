"""Warm execution pool.

Keeps ``pool_size`` pre-started sandbox containers per warm agent type so
the common path skips container start latency.

- A request for agent type ``T`` claims an idle warm container for ``T``.
  After the task its workspace is reset and it returns to the pool.
- With no idle container available, one is created synchronously for the
  request.  With auto-scaling on and the pool below ``max_pool_size``, the
  pool is topped back up in the background.
- An APScheduler interval job runs ``maintain()``.  It recycles containers
  past their TTL, drops idle surplus, replaces unhealthy containers and
  replenishes the warm types.  Maintenance failures are logged and retried
  on the next cycle.  They never reach callers.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from swarmbox.models import AgentState, Task
from swarmbox.sandbox.exceptions import SandboxError
from swarmbox.sandbox.state_machine import ContainerEvent, ContainerState

if TYPE_CHECKING:
    from swarmbox.config import SandboxSettings
    from swarmbox.models import ExecutionResult
    from swarmbox.sandbox.lifecycle import ContainerLifecycleManager, ExecutionContext

__all__ = ["ExecutionPool", "PoolMetrics", "WarmContainer"]

logger = logging.getLogger(__name__)

POOL_LABEL = "swarmbox.pool"
MAINTENANCE_JOB_ID = "swarmbox_pool_maintenance"


@dataclass(eq=False)
class WarmContainer:
    context: ExecutionContext
    agent_type: str
    created_at: float
    last_used: float
    uses: int = 0
    busy: bool = False
    healthy: bool = True

    @property
    def container_id(self) -> str:
        return self.context.container_id


@dataclass(frozen=True, slots=True)
class PoolMetrics:
    total_containers: int = 0
    active_containers: int = 0
    idle_containers: int = 0
    containers_by_type: dict[str, int] = field(default_factory=dict)
    utilization: float = 0.0
    healthy_containers: int = 0
    unhealthy_containers: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    average_execution_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_containers": self.total_containers,
            "active_containers": self.active_containers,
            "idle_containers": self.idle_containers,
            "containers_by_type": dict(self.containers_by_type),
            "utilization": self.utilization,
            "healthy_containers": self.healthy_containers,
            "unhealthy_containers": self.unhealthy_containers,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "average_execution_time": self.average_execution_time,
        }


class ExecutionPool:
    """Bounded pool of pre-started containers keyed by agent type.

    Args:
        manager: Lifecycle manager that creates and reclaims the containers.
        settings: Pool settings; defaults to the manager's.
        scheduler: Scheduler for the maintenance job; a new
            ``AsyncIOScheduler`` when omitted.  ``stop()`` shuts down only
            a scheduler the pool itself started; on one that was already
            running it just removes the maintenance job.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        manager: ContainerLifecycleManager,
        settings: SandboxSettings | None = None,
        *,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager
        self.settings = settings or manager.settings
        self._scheduler = scheduler
        self._owns_scheduler = False
        self._clock = clock
        self._containers: dict[str, list[WarmContainer]] = {}
        self._lock = asyncio.Lock()
        self._pending = 0
        self._background: set[asyncio.Task[None]] = set()
        self._hits = 0
        self._misses = 0
        self._exec_count = 0
        self._exec_total = 0.0
        self._started = False

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Warm the configured agent types and schedule maintenance."""
        if self._started:
            return
        self._started = True
        for agent_type in self.settings.warm_agent_types:
            await self._replenish(agent_type)
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._maintenance_job,
            trigger=IntervalTrigger(seconds=self.settings.maintenance_interval),
            id=MAINTENANCE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
            self._owns_scheduler = True
        logger.info(
            "Execution pool started: %d container(s) across %d type(s)",
            self._count(),
            len(self._containers),
        )

    async def stop(self) -> None:
        """Stop maintenance and reclaim every pooled container."""
        if self._scheduler is not None:
            if self._owns_scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
                self._owns_scheduler = False
            elif self._scheduler.get_job(MAINTENANCE_JOB_ID) is not None:
                self._scheduler.remove_job(MAINTENANCE_JOB_ID)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        async with self._lock:
            warm = [w for pool in self._containers.values() for w in pool]
            self._containers.clear()
        await asyncio.gather(*(self.manager.cleanup(w.context) for w in warm))
        self._started = False
        logger.info("Execution pool stopped; reclaimed %d container(s)", len(warm))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, task: Task, agent: AgentState) -> ExecutionResult:
        """Run *task* on a warm container for ``agent.type``, or a fresh one."""
        warm = await self._claim(agent.type)
        hit = warm is not None
        if warm is None:
            self._misses += 1
            warm = await self._spawn(agent.type, busy=True)
            if self.settings.auto_scaling:
                self._schedule_top_up(agent.type)
        else:
            self._hits += 1

        try:
            result = await self.manager.execute(warm.context, task, agent)
        except BaseException:
            await self._destroy(warm)
            raise

        self._exec_count += 1
        self._exec_total += result.duration
        await self._release(warm)
        return replace(
            result,
            metadata={**result.metadata, "pooled": True, "pool_hit": hit, "uses": warm.uses},
        )

    async def _claim(self, agent_type: str) -> WarmContainer | None:
        async with self._lock:
            for warm in self._containers.get(agent_type, []):
                if not warm.busy and warm.healthy and warm.context.state is ContainerState.RUNNING:
                    warm.busy = True
                    return warm
        return None

    async def _release(self, warm: WarmContainer) -> None:
        """Reset the workspace and return *warm* to the pool, or destroy it."""
        if warm.context.state is not ContainerState.EXECUTED or self._count() > self.settings.max_pool_size:
            await self._destroy(warm)
            return
        reset = await self.manager.volumes.reset_volume(
            warm.container_id, warm.context.settings.workspace_path
        )
        if not reset:
            await self._destroy(warm)
            return
        warm.context.tracker.advance(ContainerEvent.RESET)
        async with self._lock:
            warm.uses += 1
            warm.last_used = self._clock()
            warm.busy = False

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    async def scale_pool(self, agent_type: str, target: int) -> int:
        """Grow or shrink *agent_type* toward *target* within pool bounds.

        Shrinking removes the oldest idle containers first.  Returns the
        resulting number of containers of that type.
        """
        target = max(0, target)
        async with self._lock:
            current = len(self._containers.get(agent_type, []))
            others = self._count() - current
            target = min(target, self.settings.max_pool_size - others - self._pending)
            if current > target:
                idle = sorted(
                    (w for w in self._containers.get(agent_type, []) if not w.busy),
                    key=lambda w: w.created_at,
                )
                victims = idle[: current - target]
                for w in victims:
                    self._containers[agent_type].remove(w)
            else:
                victims = []
        for w in victims:
            await self.manager.cleanup(w.context)
        for _ in range(max(0, target - current)):
            try:
                await self._spawn(agent_type)
            except SandboxError as exc:
                logger.warning("Scaling %s failed: %s", agent_type, exc)
                break
        if victims or target > current:
            logger.info("Scaled %s pool from %d to %d", agent_type, current, self._count(agent_type))
        return self._count(agent_type)

    def _schedule_top_up(self, agent_type: str) -> None:
        task = asyncio.create_task(self._replenish(agent_type))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _replenish(self, agent_type: str) -> None:
        """Spawn idle containers for *agent_type* up to ``pool_size``."""
        while True:
            async with self._lock:
                idle = sum(1 for w in self._containers.get(agent_type, []) if not w.busy)
                if idle + self._pending >= self.settings.pool_size:
                    return
                if self._count() + self._pending >= self.settings.max_pool_size:
                    return
            try:
                await self._spawn(agent_type)
            except SandboxError as exc:
                logger.warning("Pool top-up for %s failed: %s", agent_type, exc)
                return

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def _maintenance_job(self) -> None:
        try:
            await self.maintain()
        except Exception:
            logger.exception("Pool maintenance failed")

    async def maintain(self) -> dict[str, int]:
        """One maintenance cycle; returns counts of recycled and removed containers."""
        now = self._clock()
        s = self.settings
        expired: list[WarmContainer] = []
        surplus: list[WarmContainer] = []
        async with self._lock:
            for agent_type, pool in self._containers.items():
                idle = [w for w in pool if not w.busy]
                keep = s.pool_size if agent_type in s.warm_agent_types else 0
                idle_count = len(idle)
                for w in sorted(idle, key=lambda w: w.last_used):
                    if now - w.created_at > s.container_ttl:
                        expired.append(w)
                        idle_count -= 1
                    elif now - w.last_used > s.idle_timeout and idle_count > keep:
                        surplus.append(w)
                        idle_count -= 1
                for w in expired + surplus:
                    if w in pool:
                        pool.remove(w)
                    w.busy = True

        unhealthy = []
        for w in self._idle_snapshot():
            if not await self.health_check(w):
                unhealthy.append(w)
        async with self._lock:
            for w in unhealthy:
                pool = self._containers.get(w.agent_type, [])
                if w in pool and not w.busy:
                    pool.remove(w)
                    w.busy = True

        for w in expired + surplus + unhealthy:
            await self.manager.cleanup(w.context)
        if expired or surplus or unhealthy:
            logger.info(
                "Pool maintenance: %d expired, %d idle surplus, %d unhealthy",
                len(expired),
                len(surplus),
                len(unhealthy),
            )

        for agent_type in s.warm_agent_types:
            await self._replenish(agent_type)
        deficit = s.min_pool_size - self._count()
        if deficit > 0 and s.warm_agent_types:
            first = s.warm_agent_types[0]
            await self.scale_pool(first, self._count(first) + deficit)
        return {"expired": len(expired), "surplus": len(surplus), "unhealthy": len(unhealthy)}

    async def health_check(self, warm: WarmContainer) -> bool:
        try:
            result = await self.manager.runtime.run(
                ["inspect", "--format", "{{.State.Status}}", warm.container_id], timeout=10.0
            )
            healthy = result.ok and result.stdout.strip() == "running"
        except SandboxError:
            healthy = False
        warm.healthy = healthy
        if not healthy:
            logger.warning("Pooled container %s is unhealthy", warm.container_id[:12])
        return healthy

    # ------------------------------------------------------------------
    # Container management
    # ------------------------------------------------------------------

    async def _spawn(self, agent_type: str, *, busy: bool = False) -> WarmContainer:
        task = Task(id=f"pool-{uuid.uuid4().hex[:8]}", description="warm pool container", task_type="pool")
        agent = AgentState(id="pool", type=agent_type)
        async with self._lock:
            self._pending += 1
        try:
            context = await self.manager.prepare(task, agent, extra_labels={POOL_LABEL: "true"})
            try:
                await self.manager.create(context)
                await self.manager.start(context)
            except BaseException:
                await self.manager.cleanup(context)
                raise
        finally:
            async with self._lock:
                self._pending -= 1
        now = self._clock()
        warm = WarmContainer(context, agent_type, created_at=now, last_used=now, busy=busy)
        async with self._lock:
            self._containers.setdefault(agent_type, []).append(warm)
        logger.debug("Spawned pooled %s container %s", agent_type, context.container_name)
        return warm

    async def _destroy(self, warm: WarmContainer) -> None:
        async with self._lock:
            pool = self._containers.get(warm.agent_type, [])
            if warm in pool:
                pool.remove(warm)
        await self.manager.cleanup(warm.context)

    def _idle_snapshot(self) -> list[WarmContainer]:
        return [w for pool in self._containers.values() for w in pool if not w.busy]

    def _count(self, agent_type: str | None = None) -> int:
        if agent_type is not None:
            return len(self._containers.get(agent_type, []))
        return sum(len(pool) for pool in self._containers.values())

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> PoolMetrics:
        everything = [w for pool in self._containers.values() for w in pool]
        total = len(everything)
        active = sum(1 for w in everything if w.busy)
        healthy = sum(1 for w in everything if w.healthy)
        requests = self._hits + self._misses
        return PoolMetrics(
            total_containers=total,
            active_containers=active,
            idle_containers=total - active,
            containers_by_type={t: len(p) for t, p in self._containers.items() if p},
            utilization=(active / total) if total else 0.0,
            healthy_containers=healthy,
            unhealthy_containers=total - healthy,
            hits=self._hits,
            misses=self._misses,
            hit_rate=(self._hits / requests) if requests else 0.0,
            average_execution_time=(self._exec_total / self._exec_count) if self._exec_count else 0.0,
        )
