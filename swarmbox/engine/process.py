"""Unsandboxed process executor.

Runs a task as a plain child process in a scratch directory.  It exists as
the baseline for the process-vs-container comparison and provides none of
the sandbox's isolation.

Resource usage comes from ``getrusage(RUSAGE_CHILDREN)`` deltas taken
around the child.  ``ru_maxrss`` for children is a high-water mark across
every child the interpreter has reaped, so ``peak_memory_bytes`` is an
upper bound.
"""

from __future__ import annotations

import asyncio
import logging
import os
import resource
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING

from swarmbox.models import ExecutionResult, ResourceUsage
from swarmbox.sandbox.commands import ShellCommandBuilder
from swarmbox.sandbox.runtime import read_capped

if TYPE_CHECKING:
    from swarmbox.models import AgentState, Task
    from swarmbox.sandbox.commands import CommandBuilder

log = logging.getLogger(__name__)

#: Bytes per block reported by ``ru_inblock``/``ru_oublock``.
_BLOCK_SIZE = 512


class ProcessExecutor:
    """Runs tasks as host processes.

    Args:
        command_builder: Same strategy the container path uses, so both
            modes run an identical command.
        default_timeout: Used when the task carries no timeout.
        max_output_bytes: Per-stream capture limit.
    """

    def __init__(
        self,
        command_builder: CommandBuilder | None = None,
        *,
        default_timeout: float = 300.0,
        max_output_bytes: int | None = 10 * 1024 * 1024,
    ) -> None:
        self.command_builder: CommandBuilder = command_builder or ShellCommandBuilder()
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    async def execute_task(self, task: Task, agent: AgentState) -> ExecutionResult:
        argv = self.command_builder.build(task, agent)
        timeout = task.timeout or self.default_timeout
        env = {**os.environ, **task.environment, "AGENT_TYPE": agent.type, "TASK_TYPE": task.task_type}

        with tempfile.TemporaryDirectory(prefix="swarmbox-proc-") as workdir:
            before = resource.getrusage(resource.RUSAGE_CHILDREN)
            started = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=workdir,
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                return ExecutionResult(
                    success=False,
                    error=f"Failed to spawn process: {exc}",
                    exit_code=127,
                    duration=time.monotonic() - started,
                    metadata={"mode": "process", "error_type": type(exc).__name__},
                )
            try:
                (stdout, out_cut), (stderr, err_cut), _ = await asyncio.wait_for(
                    asyncio.gather(
                        read_capped(proc.stdout, self.max_output_bytes),
                        read_capped(proc.stderr, self.max_output_bytes),
                        proc.wait(),
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                log.warning("Process task %s timed out after %gs", task.id, timeout)
                return ExecutionResult(
                    success=False,
                    error=f"Process timed out after {timeout:g}s",
                    exit_code=124,
                    duration=time.monotonic() - started,
                    metadata={"mode": "process", "error_type": "ExecutionTimeoutError", "timed_out": True},
                )
            duration = time.monotonic() - started
            after = resource.getrusage(resource.RUSAGE_CHILDREN)
            files = sorted(
                str(p.relative_to(workdir)) for p in Path(workdir).rglob("*") if p.is_file()
            )

        cpu_seconds = (after.ru_utime + after.ru_stime) - (before.ru_utime + before.ru_stime)
        usage = ResourceUsage(
            cpu_time=(cpu_seconds / duration * 100.0) if duration > 0 else 0.0,
            peak_memory_bytes=after.ru_maxrss * 1024,
            disk_io_bytes=((after.ru_inblock - before.ru_inblock) + (after.ru_oublock - before.ru_oublock))
            * _BLOCK_SIZE,
        )
        exit_code = proc.returncode if proc.returncode is not None else -1
        err_text = stderr.decode(errors="replace")
        metadata: dict[str, object] = {"mode": "process", "pid": proc.pid}
        if out_cut or err_cut:
            metadata["output_truncated"] = True
        return ExecutionResult(
            success=exit_code == 0,
            output=stdout.decode(errors="replace"),
            error="" if exit_code == 0 else (err_text.strip() or f"Process exited with code {exit_code}"),
            exit_code=exit_code,
            duration=duration,
            resource_usage=usage,
            artifacts={"process_files": files},
            metadata=metadata,
        )
