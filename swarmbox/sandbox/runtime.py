"""Container runtime CLI wrapper.

Every interaction with the container runtime goes through the
``ContainerRuntime`` protocol: an argument vector in, a ``CommandResult``
out.  Arguments are passed to ``asyncio.create_subprocess_exec`` directly,
never through a shell, so task-controlled strings cannot be interpolated
into a command line.

``DockerCLI`` bounds the number of in-flight invocations with a semaphore.
Concurrent executions each issue their own calls, up to the ceiling.

Tests substitute an in-memory runtime that satisfies the same protocol.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from swarmbox.sandbox.exceptions import RuntimeCommandTimeout, RuntimeUnavailableError

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "CommandResult",
    "ContainerRuntime",
    "DockerCLI",
    "check_available",
    "ensure_image",
    "image_size",
    "measure_latency",
    "read_capped",
]

log = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of one runtime invocation."""

    stdout: str
    stderr: str
    exit_code: int
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ContainerRuntime(Protocol):
    """Protocol for the runtime subprocess surface.

    Mirrors the subset of the Docker CLI the sandbox needs: ``create``,
    ``start``, ``exec``, ``stats``, ``stop``, ``kill``, ``rm``, ``cp``,
    ``inspect``, ``image inspect``, ``pull``, ``ps``, ``network``,
    ``volume`` and ``version``.
    """

    async def run(self, args: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        """Run ``<binary> *args`` and capture its output.

        Raises ``RuntimeCommandTimeout`` when *timeout* elapses and
        ``RuntimeUnavailableError`` when the binary cannot be executed.
        """
        ...


class DockerCLI:
    """``ContainerRuntime`` backed by the ``docker`` (or compatible) binary.

    Parameters
    ----------
    binary:
        Executable name or path (``docker``, ``podman``, ...).
    max_concurrency:
        Ceiling on simultaneously running invocations.
    default_timeout:
        Deadline applied when a call does not pass its own.  It covers
        the wait for a concurrency slot as well as the command itself.
    max_output_bytes:
        Per-stream capture limit; the remainder is drained and discarded.
    """

    __slots__ = ("_binary", "_default_timeout", "_max_output_bytes", "_semaphore")

    def __init__(
        self,
        binary: str = "docker",
        *,
        max_concurrency: int = 16,
        default_timeout: float | None = 60.0,
        max_output_bytes: int | None = 10 * 1024 * 1024,
    ) -> None:
        self._binary = binary
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._default_timeout = default_timeout
        self._max_output_bytes = max_output_bytes

    @property
    def binary(self) -> str:
        return self._binary

    async def run(self, args: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        deadline = timeout if timeout is not None else self._default_timeout
        argv = [self._binary, *args]
        label = " ".join(args[:2])
        log.debug("runtime: %s", " ".join(argv)[:300])
        loop = asyncio.get_running_loop()
        expires = None if deadline is None else loop.time() + deadline
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=deadline)
        except asyncio.TimeoutError:
            log.warning("runtime: %s waited %gs for a free slot", label, deadline)
            raise RuntimeCommandTimeout(label, deadline or 0.0) from None
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise RuntimeUnavailableError(self._binary, str(exc)) from exc
            remaining = None if expires is None else max(expires - loop.time(), 0.0)
            try:
                (stdout, out_cut), (stderr, err_cut), _ = await asyncio.wait_for(
                    asyncio.gather(
                        read_capped(proc.stdout, self._max_output_bytes),
                        read_capped(proc.stderr, self._max_output_bytes),
                        proc.wait(),
                    ),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                proc.kill()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    log.warning("runtime: %s did not exit after kill", args[0] if args else "?")
                raise RuntimeCommandTimeout(label, deadline or 0.0) from None
        finally:
            self._semaphore.release()
        if out_cut or err_cut:
            log.warning("runtime: %s output truncated at %d bytes", label, self._max_output_bytes)
        return CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            truncated=out_cut or err_cut,
        )


async def read_capped(stream: asyncio.StreamReader, limit: int | None) -> tuple[bytes, bool]:
    """Read *stream* to EOF keeping at most *limit* bytes.

    Returns the kept bytes and whether anything was discarded.  The stream
    is always drained so the writer never blocks on a full pipe.
    """
    kept = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        if limit is None or len(kept) + len(chunk) <= limit:
            kept += chunk
            continue
        kept += chunk[: max(limit - len(kept), 0)]
        truncated = True
    return bytes(kept), truncated


async def check_available(runtime: ContainerRuntime, binary: str = "docker") -> dict[str, object]:
    """Verify the runtime answers ``version``; return its decoded version record.

    Raises
    ------
    RuntimeUnavailableError
        If the binary is missing, the daemon is unreachable, or the call
        times out.
    """
    if isinstance(runtime, DockerCLI) and shutil.which(runtime.binary) is None:
        raise RuntimeUnavailableError(runtime.binary, "not found in PATH")
    try:
        result = await runtime.run(["version", "--format", "json"], timeout=10.0)
    except RuntimeCommandTimeout as exc:
        raise RuntimeUnavailableError(binary, "version check timed out") from exc
    if not result.ok:
        raise RuntimeUnavailableError(binary, result.stderr.strip()[:300])
    try:
        info = json.loads(result.stdout or "{}")
    except json.JSONDecodeError:
        info = {}
    return info if isinstance(info, dict) else {}


async def ensure_image(runtime: ContainerRuntime, image_ref: str, *, pull_timeout: float = 600.0) -> bool:
    """Pull *image_ref* if it is not present locally.

    Returns ``True`` when the image is available afterwards.  A failed
    pull is logged and reported as ``False``; the first ``create`` will
    surface the problem as a ``ContainerCreationError``.
    """
    inspect = await runtime.run(["image", "inspect", image_ref], timeout=30.0)
    if inspect.ok:
        return True
    log.info("Image %s not present locally; pulling", image_ref)
    try:
        pulled = await runtime.run(["pull", image_ref], timeout=pull_timeout)
    except RuntimeCommandTimeout:
        log.warning("Pull of %s timed out", image_ref)
        return False
    if not pulled.ok:
        log.warning("Pull of %s failed: %s", image_ref, pulled.stderr.strip()[:300])
        return False
    return True


async def image_size(runtime: ContainerRuntime, image_ref: str) -> int:
    """Return the local image size in bytes (0 when unknown)."""
    result = await runtime.run(["image", "inspect", "--format", "{{.Size}}", image_ref], timeout=30.0)
    text = result.stdout.strip()
    return int(text) if result.ok and text.isdigit() else 0


async def measure_latency(runtime: ContainerRuntime) -> float:
    """Round-trip time of a trivial runtime call, in milliseconds."""
    start = time.monotonic()
    await runtime.run(["ps", "-q"], timeout=10.0)
    return (time.monotonic() - start) * 1000.0
