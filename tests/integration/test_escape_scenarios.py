"""End-to-end sandbox escape scenarios against a real container runtime.

Each test runs a hostile command through ``ContainerLifecycleManager`` and
asserts that the hardened configuration contains it.  The whole module is
skipped when ``docker`` is not on PATH, the daemon is unreachable, or the
test image cannot be pulled.

Run with:  pytest -m docker tests/integration
"""

from __future__ import annotations

import asyncio
import shutil

import pytest

from swarmbox.config import SandboxSettings
from swarmbox.models import AgentState, Task
from swarmbox.sandbox.container import MANAGED_LABEL
from swarmbox.sandbox.exceptions import RuntimeUnavailableError
from swarmbox.sandbox.lifecycle import ContainerLifecycleManager
from swarmbox.sandbox.runtime import DockerCLI, check_available, ensure_image

pytestmark = [
    pytest.mark.docker,
    pytest.mark.skipif(shutil.which("docker") is None, reason="docker CLI not installed"),
]

IMAGE = "busybox"
TAG = "1.36"
AGENT = AgentState(id="escape-tester", type="tester")


@pytest.fixture(scope="module")
def docker_ready() -> None:
    cli = DockerCLI("docker")
    try:
        asyncio.run(check_available(cli))
    except RuntimeUnavailableError as exc:
        pytest.skip(f"container runtime unavailable: {exc}")
    if not asyncio.run(ensure_image(cli, f"{IMAGE}:{TAG}")):
        pytest.skip(f"image {IMAGE}:{TAG} not available")


@pytest.fixture
def settings(docker_ready, tmp_path) -> SandboxSettings:
    return SandboxSettings(
        image=IMAGE,
        image_tag=TAG,
        user="65534:65534",
        collect_artifacts=False,
        artifacts_root=tmp_path / "artifacts",
        stop_grace_seconds=1,
    )


def _run(settings: SandboxSettings, script: str, timeout: float = 60, **overrides):
    manager = ContainerLifecycleManager(settings)

    async def scenario():
        await manager.initialize()
        try:
            task = Task(id="escape", description=script, timeout=timeout)
            return await manager.execute_task(task, AGENT, **overrides)
        finally:
            await manager.shutdown()

    return asyncio.run(scenario())


def _leftover_containers() -> list[str]:
    listed = asyncio.run(DockerCLI("docker").run(["ps", "-aq", "--filter", f"label={MANAGED_LABEL}=true"]))
    return listed.stdout.split()


class TestFilesystem:
    def test_root_filesystem_read_only(self, settings) -> None:
        result = _run(settings, "touch /etc/escaped")
        assert result.success is False
        assert "Read-only file system" in result.error

    def test_tmp_write_succeeds_but_exec_fails(self, settings) -> None:
        script = "printf '#!/bin/sh\\necho pwned\\n' > /tmp/x && chmod +x /tmp/x && echo written && /tmp/x"
        result = _run(settings, script)
        assert result.success is False
        assert result.output == "written\n"

    def test_host_user_database_not_visible(self, settings) -> None:
        result = _run(settings, "wc -l < /etc/passwd")
        assert int(result.output.strip()) < 20

    def test_runtime_socket_not_reachable(self, settings) -> None:
        assert _run(settings, "test -e /var/run/docker.sock").success is False

    def test_proc_self_reference_blocked(self, settings) -> None:
        result = _run(settings, "cat /proc/1/root/etc/shadow")
        assert result.success is False
        assert "root:" not in result.output

    def test_tmp_is_writable(self, settings) -> None:
        assert _run(settings, "echo data > /tmp/scratch && cat /tmp/scratch").output == "data\n"


class TestPrivileges:
    def test_runs_as_unprivileged_user(self, settings) -> None:
        assert _run(settings, "id -u").output.strip() == "65534"

    def test_no_effective_capabilities(self, settings) -> None:
        result = _run(settings, "grep CapEff /proc/self/status")
        assert result.output.split()[-1] == "0000000000000000"

    def test_no_new_privileges(self, settings) -> None:
        result = _run(settings, "grep NoNewPrivs /proc/self/status")
        assert result.output.split()[-1] == "1"


class TestNetwork:
    def test_internal_network_has_no_egress(self, settings) -> None:
        result = _run(settings, "wget -q -T 3 -O- http://1.1.1.1")
        assert result.success is False

    def test_network_none(self, settings) -> None:
        result = _run(settings, "ls /sys/class/net", network_mode="none")
        assert result.output.split() == ["lo"]


class TestResources:
    def test_file_descriptor_limit(self, settings) -> None:
        assert _run(settings, "ulimit -n").output.strip() == "1024"

    def test_timeout_kills_container(self, settings) -> None:
        result = _run(settings, "sleep 30", timeout=2)
        assert result.exit_code == 124
        assert result.metadata["timed_out"] is True
        assert _leftover_containers() == []

    def test_fork_bomb_contained(self, settings) -> None:
        result = _run(settings, "bomb() { bomb | bomb & }; bomb; sleep 30", timeout=10)
        assert result.success is False
        assert result.duration < 30
        assert _leftover_containers() == []

    def test_memory_bomb_contained(self, settings) -> None:
        result = _run(settings, "x=aaaaaaaa; while true; do x=$x$x; done", timeout=30)
        assert result.success is False
        assert _leftover_containers() == []


class TestCleanup:
    def test_nothing_left_behind(self, settings) -> None:
        _run(settings, "echo done")
        _run(settings, "exit 7")
        assert _leftover_containers() == []
