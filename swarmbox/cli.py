"""Command-line entry point.

Usage:
    python -m swarmbox run -- python3 -c "print('hi')"
    python -m swarmbox run --agent-type coder --timeout 30 -- sh -c "make test"
    python -m swarmbox compare --iterations 3 -- sh -c "echo hi"
    python -m swarmbox reap
    python -m swarmbox metrics --format yaml
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import TYPE_CHECKING, Any

import yaml

from swarmbox.config import load_settings
from swarmbox.engine.comparison import ComparisonEngine
from swarmbox.engine.process import ProcessExecutor
from swarmbox.models import AgentState, RetryPolicy, Task
from swarmbox.sandbox.exceptions import ConfigurationError, SandboxError
from swarmbox.sandbox.lifecycle import ContainerLifecycleManager

if TYPE_CHECKING:
    from collections.abc import Sequence

    from swarmbox.sandbox.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


def _emit(data: dict[str, Any], fmt: str) -> None:
    if fmt == "yaml":
        print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False, width=120), end="")
    else:
        print(json.dumps(data, indent=2, default=str))


def _parse_env(pairs: Sequence[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"expected KEY=VALUE, got {pair!r}", key="env")
        env[key] = value
    return env


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.runtime_binary:
        overrides["runtime_binary"] = args.runtime_binary
    if getattr(args, "network", None):
        overrides["network_mode"] = args.network
    if getattr(args, "memory", None):
        overrides["memory"] = args.memory
    if getattr(args, "image", None):
        overrides["image"] = args.image
    return overrides


def _build_manager(args: argparse.Namespace) -> ContainerLifecycleManager:
    settings = load_settings(**_overrides(args))
    return ContainerLifecycleManager(settings, args.runtime)


def _task_and_agent(args: argparse.Namespace) -> tuple[Task, AgentState]:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise SandboxError("no command given (put it after --)")
    environment = _parse_env(args.env)
    try:
        task = Task(
            id=args.task_id or f"cli-{uuid.uuid4().hex[:8]}",
            description=" ".join(command),
            command=tuple(command),
            timeout=args.timeout,
            retry_policy=RetryPolicy(max_retries=args.retries),
            environment=environment,
        )
        agent = AgentState(id=args.agent_id, type=args.agent_type)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    return task, agent


async def _run(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    task, agent = _task_and_agent(args)
    await manager.initialize()
    try:
        result = await manager.execute_task(task, agent)
    finally:
        await manager.shutdown()
    _emit(result.to_dict(), args.format)
    return 0 if result.success else (result.exit_code or 1)


async def _compare(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    task, agent = _task_and_agent(args)
    await manager.initialize()
    engine = ComparisonEngine(
        ProcessExecutor(
            manager.command_builder,
            default_timeout=manager.settings.task_timeout,
            max_output_bytes=manager.settings.max_output_bytes,
        ),
        manager,
    )
    try:
        comparison = await engine.compare(task, agent, args.iterations)
    finally:
        await manager.shutdown()
    _emit(comparison.to_dict(), args.format)
    return 0


async def _reap(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    reaped = await manager.reap_orphans()
    _emit({"reaped": reaped}, args.format)
    return 0


async def _metrics(args: argparse.Namespace) -> int:
    manager = _build_manager(args)
    snapshot = await manager.get_metrics()
    _emit(snapshot.to_dict(), args.format)
    return 0


def _add_task_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--agent-type", default="coder", help="Agent type (selects resource profile)")
    p.add_argument("--agent-id", default="cli", help="Agent identifier label")
    p.add_argument("--task-id", help="Task identifier (generated if omitted)")
    p.add_argument("--timeout", type=float, help="Task timeout in seconds")
    p.add_argument("--retries", type=int, default=0, help="Retries for create/start failures")
    p.add_argument("-e", "--env", action="append", default=[], metavar="KEY=VALUE",
                   help="Environment variable (filtered by the whitelist)")
    p.add_argument("--network", help="Network mode override (e.g. none)")
    p.add_argument("--memory", help="Memory limit override (e.g. 256m)")
    p.add_argument("--image", help="Image name override")
    p.add_argument("command", nargs=argparse.REMAINDER, help="Command to run, after --")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="swarmbox",
        description="Run agent tasks inside hardened, isolated containers",
    )
    parser.add_argument("--format", choices=("json", "yaml"), default="json", help="Output format")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument("--runtime-binary", help="Container runtime CLI (default from settings)")
    sub = parser.add_subparsers(dest="command_name", required=True)

    p_run = sub.add_parser("run", help="Execute one command in a sandbox")
    _add_task_arguments(p_run)
    p_run.set_defaults(func=_run)

    p_compare = sub.add_parser("compare", help="Compare process and container execution")
    _add_task_arguments(p_compare)
    p_compare.add_argument("-n", "--iterations", type=int, default=3, help="Runs per mode")
    p_compare.set_defaults(func=_compare)

    p_reap = sub.add_parser("reap", help="Remove orphaned sandbox containers")
    p_reap.set_defaults(func=_reap)

    p_metrics = sub.add_parser("metrics", help="Print the container metrics snapshot")
    p_metrics.set_defaults(func=_metrics)
    return parser


def main(argv: Sequence[str] | None = None, *, runtime: ContainerRuntime | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.runtime = runtime
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(args.func(args))
    except SandboxError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
