"""Process runner: spawn an external command and capture its output.

``ProcessRunner`` runs one binary with an argument vector (never through a
shell) and turns its exit status and output into a ``Result``:

    .. code-block:: text

        ProcessRunner.run(binary, args)
        ┌──────────────────────────────────────────────────────────────┐
        │ asyncio.create_subprocess_exec(binary, *args)                │
        │     │                                                        │
        │     ├── reader task: stdout ─► lines (rstrip, drop empty)    │
        │     ├── reader task: stderr ─► lines (rstrip, drop empty)    │
        │     └── wait() with optional deadline                        │
        │                                                              │
        │ exit 0          ─► Ok(ProcessOutcome)                        │
        │ exit != 0       ─► Err(ProcessFailure)  exit code + lines    │
        │ start failed    ─► Err(LaunchFailure)                        │
        │ deadline passed ─► kill process group ─► Err(ProcessTimeout) │
        └──────────────────────────────────────────────────────────────┘

Both pipes are drained while the child runs, so a child that writes more
than a pipe buffer of output never blocks waiting for a reader.

The runner does not retry; whether a failure is retried is decided by the
scheduler and the ledger.

Binary availability is probed once at startup with ``probe_capabilities``
and handed to sources explicitly.

Example:
    >>> runner = ProcessRunner(timeout_seconds=60)
    >>> match runner.run("yt-dlp", ["--version"]):
    ...     case Ok(outcome):
    ...         print(outcome.stdout[0])
    ...     case Err(error):
    ...         print("failed:", error)
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from runspine.core.errors import LaunchFailure, MissingBinaryError, ProcessFailure, ProcessTimeout
from runspine.core.logging import get_logger
from runspine.core.result import Err, Ok, Result
from runspine.execution.models import ProcessOutcome

logger = get_logger(__name__)

# asyncio's default 64 KiB line limit is too small for tools that print a
# whole JSON document per line.
STREAM_LINE_LIMIT = 16 * 1024 * 1024

_IS_POSIX = os.name == "posix"


class ProcessRunner:
    """Runs external commands and captures their output line by line.

    Args:
        timeout_seconds: Default deadline per process; ``None`` waits forever.
        kill_timeout_seconds: Grace period after SIGTERM before SIGKILL.
        cwd: Working directory for children; defaults to the caller's.
        env: Extra environment variables overlaid on ``os.environ``.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        kill_timeout_seconds: float = 5.0,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.kill_timeout_seconds = kill_timeout_seconds
        self.cwd = Path(cwd) if cwd else None
        self._env = dict(env) if env else None

    def run(
        self,
        binary: str,
        args: Sequence[str] = (),
        *,
        timeout_seconds: float | None = None,
    ) -> Result[ProcessOutcome]:
        """Run ``binary`` with ``args`` and wait for it to exit.

        Each call runs on its own event loop, so it is safe to call from any
        worker thread.
        """
        return asyncio.run(self.run_async(binary, args, timeout_seconds=timeout_seconds))

    async def run_async(
        self,
        binary: str,
        args: Sequence[str] = (),
        *,
        timeout_seconds: float | None = None,
    ) -> Result[ProcessOutcome]:
        """Coroutine form of :meth:`run`."""
        argv = [binary, *args]
        deadline = timeout_seconds if timeout_seconds is not None else self.timeout_seconds

        logger.debug("process.launch", binary=binary, argv=argv)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd else None,
                env=self._build_env(),
                limit=STREAM_LINE_LIMIT,
                start_new_session=_IS_POSIX,
            )
        except OSError as exc:
            logger.warning("process.launch_failed", binary=binary, error=str(exc))
            return Err(LaunchFailure(binary, exc))

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        readers = asyncio.gather(
            _drain(process.stdout, stdout_lines),
            _drain(process.stderr, stderr_lines),
        )

        try:
            await asyncio.wait_for(process.wait(), timeout=deadline)
        except TimeoutError:
            logger.warning("process.timeout", binary=binary, timeout_seconds=deadline, pid=process.pid)
            await self._kill_tree(process)
            await _finish_readers(readers)
            return Err(ProcessTimeout(binary, deadline, stdout=stdout_lines, stderr=stderr_lines))

        await readers
        exit_code = process.returncode
        logger.debug("process.exited", binary=binary, exit_code=exit_code, stdout_lines=len(stdout_lines))

        if exit_code != 0:
            return Err(ProcessFailure(binary, exit_code, stdout=stdout_lines, stderr=stderr_lines))

        return Ok(ProcessOutcome(
            exit_code=exit_code,
            stdout=tuple(stdout_lines),
            stderr=tuple(stderr_lines),
        ))

    def get_command_output(self, binary: str, args: Sequence[str] = ()) -> list[str]:
        """Run a command and return its stdout lines, raising on failure."""
        return list(self.run(binary, args).unwrap().stdout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_env(self) -> dict[str, str] | None:
        if self._env is None:
            return None
        env = dict(os.environ)
        env.update(self._env)
        return env

    async def _kill_tree(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the child and everything it spawned (SIGTERM → SIGKILL)."""
        _signal_tree(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout_seconds)
        except TimeoutError:
            _signal_tree(process, signal.SIGKILL if _IS_POSIX else signal.SIGTERM)
            await process.wait()


async def _drain(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
    """Read a pipe to EOF, keeping non-empty right-trimmed lines."""
    if stream is None:
        return
    while True:
        raw = await stream.readline()
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            sink.append(line)


async def _finish_readers(readers: asyncio.Future) -> None:
    # Grandchildren can keep the pipes open after the group kill; give up on
    # them instead of hanging.
    try:
        await asyncio.wait_for(readers, timeout=1.0)
    except TimeoutError:
        pass


def _signal_tree(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if _IS_POSIX:
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass


# ---------------------------------------------------------------------------
# Capability probe
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Capabilities:
    """Which external binaries were found at startup, and where."""

    binaries: Mapping[str, str | None] = field(default_factory=dict)

    def has(self, binary: str) -> bool:
        return self.binaries.get(binary) is not None

    def path_of(self, binary: str) -> str | None:
        return self.binaries.get(binary)

    def require(self, binary: str) -> str:
        """Return the resolved path of ``binary`` or raise ``MissingBinaryError``."""
        path = self.binaries.get(binary)
        if path is None:
            raise MissingBinaryError(binary)
        return path

    @property
    def missing(self) -> list[str]:
        return sorted(name for name, path in self.binaries.items() if path is None)


def probe_capabilities(binaries: Iterable[str], path: str | None = None) -> Capabilities:
    """Check once which of ``binaries`` resolve on ``PATH``.

    Args:
        binaries: Binary names to look up.
        path: Search path override (defaults to ``$PATH``).
    """
    found: dict[str, str | None] = {}
    for binary in binaries:
        if binary in found:
            continue
        found[binary] = shutil.which(binary, path=path)
        logger.debug("capability.probe", binary=binary, found=found[binary] is not None)
    return Capabilities(binaries=found)

