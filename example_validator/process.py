"""Scoped child-process execution with guaranteed teardown."""

import asyncio
import contextlib
import logging
import os
import signal
import tempfile
import time
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

log = logging.getLogger(__name__)

TERMINATE_GRACE = 5.0
TRACEBACK_MARKER = "Traceback (most recent call last):"

type Target = int | IO[bytes]


@dataclass(frozen=True, kw_only=True)
class ProcessOutcome:
    """Captured outcome of a child process that exited on its own."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def crashed(self) -> bool:
        """Whether the process exited non-zero or printed an uncaught traceback."""
        return self.returncode != 0 or TRACEBACK_MARKER in self.stderr


@asynccontextmanager
async def spawn_process(
    *command: str,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    stdout: Target = asyncio.subprocess.PIPE,
    stderr: Target = asyncio.subprocess.PIPE,
) -> AsyncGenerator[asyncio.subprocess.Process]:
    """Spawn a child process that is always reaped when the context exits.

    The child leads a new process group, so whatever it starts in the
    background is torn down with it.

    Args:
        command: Program and arguments
        cwd: Working directory of the child
        env: Environment of the child (inherits the harness one when None)
        stdout: Where the child's stdout goes
        stderr: Where the child's stderr goes (``STDOUT`` merges it)

    """
    process = await asyncio.create_subprocess_exec(
        *command,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=stdout,
        stderr=stderr,
        start_new_session=True,
    )
    log.debug("Spawned pid=%d: %s", process.pid, " ".join(command))
    try:
        yield process
    finally:
        await terminate_process(process)


def signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Send a signal to every process in the child's process group."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, sig)


async def terminate_process(
    process: asyncio.subprocess.Process, grace: float = TERMINATE_GRACE
) -> None:
    """Terminate a child process and its process group, then reap it.

    Sends SIGTERM to the group and escalates to SIGKILL after ``grace``
    seconds. Processes the child left running in its group are killed even
    when the child itself already exited.
    """
    if process.returncode is None:
        log.debug("Terminating pid=%d", process.pid)
        signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), grace)
        except TimeoutError:
            log.warning("pid=%d ignored SIGTERM for %.1fs, killing", process.pid, grace)

    signal_group(process, signal.SIGKILL)
    await process.wait()


async def run_process(
    *command: str,
    cwd: Path,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> ProcessOutcome:
    """Run a command to completion and capture its output.

    Output goes to temporary files rather than pipes, so background
    processes that inherited them cannot delay the result past the
    child's own exit.

    Raises:
        TimeoutError: If the process did not exit within ``timeout`` seconds;
            the process is terminated before this is raised

    """
    start = time.monotonic()
    with tempfile.TemporaryFile() as stdout, tempfile.TemporaryFile() as stderr:
        async with spawn_process(
            *command, cwd=cwd, env=env, stdout=stdout, stderr=stderr
        ) as process:
            returncode = await asyncio.wait_for(process.wait(), timeout)
            duration_ms = elapsed_ms(start)

        return ProcessOutcome(
            returncode=returncode,
            stdout=read_output(stdout),
            stderr=read_output(stderr),
            duration_ms=duration_ms,
        )


def read_output(file: IO[bytes]) -> str:
    """Decode everything written to a captured output file."""
    file.seek(0)
    return file.read().decode(errors="replace")


def elapsed_ms(start: float) -> int:
    """Milliseconds elapsed since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - start) * 1000)


def first_error_line(output: str) -> str | None:
    """Extract the single most useful error line from process output.

    For a Python traceback this is the exception line of the last
    traceback; otherwise the first non-empty line.
    """
    lines = output.splitlines()

    if TRACEBACK_MARKER in output:
        last_marker = max(
            i for i, line in enumerate(lines) if TRACEBACK_MARKER in line
        )
        for line in lines[last_marker + 1 :]:
            if line.strip() and not line[0].isspace():
                return line.strip()
        non_empty = [line.strip() for line in lines[last_marker:] if line.strip()]
        return non_empty[-1]

    for line in lines:
        if line.strip():
            return line.strip()
    return None
