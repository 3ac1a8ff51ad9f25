"""Shared test fixtures for swarmbox.

``FakeRuntime`` is an in-memory stand-in for the container runtime CLI.  It
implements the ``ContainerRuntime`` protocol, records every invocation and
tracks containers, networks and volumes so tests can assert that nothing
was leaked.  Individual commands can be scripted to fail or time out.
"""

from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any

import pytest

from swarmbox.config import SandboxSettings
from swarmbox.models import AgentState, RetryPolicy, Task
from swarmbox.sandbox.exceptions import RuntimeCommandTimeout
from swarmbox.sandbox.lifecycle import ContainerLifecycleManager
from swarmbox.sandbox.runtime import CommandResult

HARDENED_HOST_CONFIG: dict[str, Any] = {
    "Privileged": False,
    "ReadonlyRootfs": True,
    "CapDrop": ["ALL"],
    "SecurityOpt": ["no-new-privileges:true"],
}

STATS_LINE = json.dumps(
    {
        "CPUPerc": "12.5%",
        "MemUsage": "64MiB / 512MiB",
        "BlockIO": "1MB / 2MB",
        "NetIO": "0B / 0B",
    }
)


class FakeRuntime:
    """Scriptable in-memory container runtime.

    Failures are keyed by command prefix, either the verb (``"create"``) or
    verb plus sub-verb (``"network create"``).
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.containers: dict[str, dict[str, Any]] = {}
        self.networks: set[str] = set()
        self.volumes: set[str] = set()
        self.image_present = True
        self.host_config: dict[str, Any] = dict(HARDENED_HOST_CONFIG)
        self.stats_line = STATS_LINE
        self.exec_exit_code = 0
        self.exec_stdout = "ok\n"
        self.exec_stderr = ""
        self.exec_truncated = False
        self.oom_killed = False
        self.resets: list[str] = []
        self.artifact_files: dict[str, str] = {"result.txt": "done"}
        self._failures: dict[str, list[Any]] = {}

    # -- scripting --------------------------------------------------------

    def fail(self, prefix: str, *, exit_code: int = 1, stderr: str = "boom", times: int | None = None) -> None:
        """Make commands starting with *prefix* fail (``times=None`` = always)."""
        self._failures[prefix] = [times, CommandResult("", stderr, exit_code)]

    def time_out(self, prefix: str, *, times: int | None = None) -> None:
        self._failures[prefix] = [times, RuntimeCommandTimeout(prefix, 1.0)]

    def clear_failures(self) -> None:
        self._failures.clear()

    # -- inspection -------------------------------------------------------

    def commands(self, verb: str) -> list[list[str]]:
        return [c for c in self.calls if c and c[0] == verb]

    def live_containers(self) -> list[str]:
        return list(self.containers)

    def running(self) -> list[str]:
        return [cid for cid, c in self.containers.items() if c["status"] == "running"]

    # -- protocol ---------------------------------------------------------

    async def run(self, args, *, timeout=None) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        scripted = self._scripted(argv)
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            return scripted
        verb = argv[0] if argv else ""
        handler = getattr(self, f"_do_{verb}", None)
        if handler is None:
            return CommandResult("", f"unknown command {verb!r}", 125)
        return handler(argv)

    def _scripted(self, argv: list[str]) -> CommandResult | Exception | None:
        for prefix in (" ".join(argv[:2]), argv[0] if argv else ""):
            plan = self._failures.get(prefix)
            if plan is None:
                continue
            remaining, outcome = plan
            if remaining is not None:
                if remaining <= 0:
                    continue
                plan[0] = remaining - 1
            return outcome
        return None

    # -- command handlers ---------------------------------------------------

    def _missing(self, what: str, ident: str) -> CommandResult:
        return CommandResult("", f"Error: No such {what}: {ident}", 1)

    def _do_version(self, argv: list[str]) -> CommandResult:
        return CommandResult(json.dumps({"Client": {"Version": "fake"}, "Server": {"Version": "fake"}}), "", 0)

    def _do_image(self, argv: list[str]) -> CommandResult:
        if "--format" in argv:
            return CommandResult("123456789\n", "", 0) if self.image_present else self._missing("image", argv[-1])
        return CommandResult("[]", "", 0) if self.image_present else self._missing("image", argv[-1])

    def _do_pull(self, argv: list[str]) -> CommandResult:
        self.image_present = True
        return CommandResult(f"pulled {argv[-1]}\n", "", 0)

    def _do_network(self, argv: list[str]) -> CommandResult:
        name = argv[-1]
        if argv[1] == "create":
            self.networks.add(name)
            return CommandResult(uuid.uuid4().hex + "\n", "", 0)
        if name not in self.networks:
            return self._missing("network", name)
        self.networks.discard(name)
        return CommandResult(name + "\n", "", 0)

    def _do_volume(self, argv: list[str]) -> CommandResult:
        name = argv[-1]
        if argv[1] == "create":
            self.volumes.add(name)
            return CommandResult(name + "\n", "", 0)
        if name not in self.volumes:
            return self._missing("volume", name)
        self.volumes.discard(name)
        return CommandResult(name + "\n", "", 0)

    def _do_create(self, argv: list[str]) -> CommandResult:
        name = argv[argv.index("--name") + 1]
        labels = dict(
            argv[i + 1].split("=", 1) for i, a in enumerate(argv) if a == "--label"
        )
        cid = uuid.uuid4().hex + uuid.uuid4().hex
        self.containers[cid] = {"name": name, "status": "created", "labels": labels, "args": argv}
        return CommandResult(cid + "\n", "", 0)

    def _do_start(self, argv: list[str]) -> CommandResult:
        container = self.containers.get(argv[1])
        if container is None:
            return self._missing("container", argv[1])
        container["status"] = "running"
        return CommandResult(argv[1] + "\n", "", 0)

    def _do_exec(self, argv: list[str]) -> CommandResult:
        # exec [-w DIR] [-e K=V]... CONTAINER CMD...; task execs always pass -w.
        reset = argv[1] != "-w"
        i = 1
        while argv[i] in {"-w", "-e"}:
            i += 2
        cid = argv[i]
        container = self.containers.get(cid)
        if container is None:
            return self._missing("container", cid)
        if container["status"] != "running":
            return CommandResult("", f"Error: container {cid} is not running", 1)
        if reset:
            self.resets.append(cid)
            return CommandResult("", "", 0)
        return CommandResult(self.exec_stdout, self.exec_stderr, self.exec_exit_code, self.exec_truncated)

    def _do_stats(self, argv: list[str]) -> CommandResult:
        if argv[-1] not in self.containers:
            return self._missing("container", argv[-1])
        return CommandResult(self.stats_line + "\n", "", 0)

    def _do_inspect(self, argv: list[str]) -> CommandResult:
        fmt = argv[argv.index("--format") + 1]
        container = self.containers.get(argv[-1])
        if container is None:
            return self._missing("container", argv[-1])
        if fmt == "{{json .HostConfig}}":
            return CommandResult(json.dumps(self.host_config) + "\n", "", 0)
        if fmt == "{{.State.OOMKilled}}":
            return CommandResult(("true" if self.oom_killed else "false") + "\n", "", 0)
        if fmt == "{{.State.Status}}":
            return CommandResult(container["status"] + "\n", "", 0)
        return CommandResult("", f"unsupported format {fmt}", 1)

    def _do_stop(self, argv: list[str]) -> CommandResult:
        container = self.containers.get(argv[-1])
        if container is None:
            return self._missing("container", argv[-1])
        container["status"] = "exited"
        return CommandResult(argv[-1] + "\n", "", 0)

    def _do_kill(self, argv: list[str]) -> CommandResult:
        container = self.containers.get(argv[-1])
        if container is None:
            return self._missing("container", argv[-1])
        container["status"] = "exited"
        return CommandResult(argv[-1] + "\n", "", 0)

    def _do_rm(self, argv: list[str]) -> CommandResult:
        ref = argv[-1]
        for cid, container in list(self.containers.items()):
            if cid.startswith(ref) or container["name"] == ref:
                del self.containers[cid]
                return CommandResult(ref + "\n", "", 0)
        return self._missing("container", ref)

    def _do_cp(self, argv: list[str]) -> CommandResult:
        cid = argv[1].split(":", 1)[0]
        if cid not in self.containers:
            return self._missing("container", cid)
        dest = Path(argv[2])
        for rel, content in self.artifact_files.items():
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return CommandResult("", "", 0)

    def _do_ps(self, argv: list[str]) -> CommandResult:
        if "--filter" in argv:
            key, _, value = argv[argv.index("--filter") + 1].removeprefix("label=").partition("=")
            ids = [cid for cid, c in self.containers.items() if c["labels"].get(key) == value]
        elif "-a" in argv or "-aq" in argv:
            ids = list(self.containers)
        else:
            ids = self.running()
        return CommandResult("".join(f"{cid[:12]}\n" for cid in ids), "", 0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_sandbox_env(monkeypatch, tmp_path):
    """Isolate settings from the developer's environment and .env file."""
    for key in list(os.environ):
        if key.startswith("SWARMBOX_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def sandbox_settings(tmp_path) -> SandboxSettings:
    """Settings with artifact collection off and a per-test artifacts root."""
    return SandboxSettings(
        collect_artifacts=False,
        artifacts_root=tmp_path / "artifacts",
        stop_grace_seconds=1,
    )


@pytest.fixture
def manager(sandbox_settings, fake_runtime) -> ContainerLifecycleManager:
    return ContainerLifecycleManager(sandbox_settings, fake_runtime)


@pytest.fixture
def task() -> Task:
    return Task(id="task-1", description="echo hello", command=("echo", "hello"), timeout=30)


@pytest.fixture
def retrying_task() -> Task:
    return Task(
        id="task-retry",
        command=("echo", "hello"),
        retry_policy=RetryPolicy(max_retries=2, backoff=0),
    )


@pytest.fixture
def agent() -> AgentState:
    return AgentState(id="agent-1", type="coder")
