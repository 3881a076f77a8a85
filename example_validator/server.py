"""Companion server lifecycle: start, wait for readiness, tear down."""

import asyncio
import contextlib
import logging
import re
from collections import deque
from collections.abc import AsyncGenerator, Coroutine, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from example_validator.models.config import (
    HttpReadiness,
    OutputReadiness,
    Readiness,
)
from example_validator.models.example import ServerConfig
from example_validator.process import first_error_line, spawn_process

log = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 50
OUTPUT_FLUSH_TIMEOUT = 1.0
OUTPUT_CHUNK_SIZE = 64 * 1024
OUTPUT_LINE_LIMIT = 1024 * 1024
OUTPUT_LINE_WIDTH = 500


class ServerStartupError(Exception):
    """Raised when a companion server does not become ready."""


@dataclass(kw_only=True)
class ServerOutput:
    """Recent output of a companion server and readiness pattern tracking."""

    pattern: re.Pattern[str] | None = None
    lines: deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))
    matched: asyncio.Event = field(default_factory=asyncio.Event)
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    def feed(self, line: str) -> None:
        """Record one output line; the pattern sees it in full."""
        self.lines.append(line[:OUTPUT_LINE_WIDTH])
        if self.pattern is not None and self.pattern.search(line):
            self.matched.set()

    def error_line(self) -> str | None:
        """Most useful error line seen so far."""
        return first_error_line("\n".join(self.lines))


async def drain_output(
    process: asyncio.subprocess.Process, output: ServerOutput
) -> None:
    """Read server output until EOF so its pipe never fills up.

    Output is read in chunks and split into lines here, so a single very
    long line cannot stop the draining.
    """
    try:
        if process.stdout is None:
            raise ValueError(f"Server pid={process.pid} has no output pipe")

        pending = b""
        while chunk := await process.stdout.read(OUTPUT_CHUNK_SIZE):
            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                _feed(process, output, line)
            if len(pending) > OUTPUT_LINE_LIMIT:
                _feed(process, output, pending)
                pending = b""
        if pending:
            _feed(process, output, pending)
    finally:
        output.closed.set()


def _feed(
    process: asyncio.subprocess.Process, output: ServerOutput, raw_line: bytes
) -> None:
    line = raw_line.decode(errors="replace").rstrip()
    log.debug("server pid=%d: %s", process.pid, line[:OUTPUT_LINE_WIDTH])
    output.feed(line)


async def probe_http(readiness: HttpReadiness) -> None:
    """Poll an HTTP endpoint until it answers with a non-5xx status."""
    timeout = aiohttp.ClientTimeout(total=max(readiness.interval, 1.0))
    async with aiohttp.ClientSession(timeout=timeout) as session:
        while True:
            try:
                async with session.get(readiness.url) as response:
                    if response.status < 500:
                        log.debug("%s answered %d", readiness.url, response.status)
                        return
                    log.debug("%s answered %d", readiness.url, response.status)
            except (aiohttp.ClientError, TimeoutError) as e:
                log.debug("%s not answering yet: %s", readiness.url, e)

            await asyncio.sleep(readiness.interval)


def readiness_signal(
    readiness: Readiness, output: ServerOutput
) -> Coroutine[Any, Any, Any] | None:
    """Coroutine that completes when the server reports ready, if the policy has one."""
    if isinstance(readiness, OutputReadiness):
        return output.matched.wait()
    if isinstance(readiness, HttpReadiness):
        return probe_http(readiness)
    return None


async def wait_until_ready(
    process: asyncio.subprocess.Process,
    readiness: Readiness,
    output: ServerOutput,
) -> None:
    """Wait until a companion server is ready.

    The server is ready when its readiness signal fires, or when it is still
    alive after the grace period (unless the policy is strict).

    Raises:
        ServerStartupError: If the server exits first, the readiness check
            itself fails, or a strict grace period elapses without the signal

    """
    exited = asyncio.create_task(process.wait())
    tasks: set[asyncio.Task[Any]] = {exited}
    signalled: asyncio.Task[Any] | None = None
    if (ready_signal := readiness_signal(readiness, output)) is not None:
        signalled = asyncio.create_task(ready_signal)
        tasks.add(signalled)

    try:
        done, _ = await asyncio.wait(
            tasks, timeout=readiness.grace, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if exited in done:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(output.closed.wait(), OUTPUT_FLUSH_TIMEOUT)
        message = f"server failed to start: exited with code {process.returncode}"
        if (detail := output.error_line()) is not None:
            message = f"{message}: {detail}"
        raise ServerStartupError(message)

    if signalled is not None and signalled in done:
        if (error := signalled.exception()) is not None:
            raise ServerStartupError(
                f"server failed to start: readiness check failed: {error!r}"
            ) from error
        return

    if getattr(readiness, "strict", False):
        raise ServerStartupError(
            f"server failed to start: not ready within {readiness.grace:g}s"
        )

    log.debug(
        "No readiness signal from pid=%d after %.1fs, assuming ready",
        process.pid,
        readiness.grace,
    )


@asynccontextmanager
async def companion_server(
    config: ServerConfig, env: Mapping[str, str] | None = None
) -> AsyncGenerator[asyncio.subprocess.Process]:
    """Run a companion server for the duration of the context.

    The server is torn down on every exit path: startup failure, normal
    completion, or an exception raised inside the context.

    Raises:
        ServerStartupError: If the server does not become ready

    """
    pattern = (
        re.compile(config.readiness.pattern)
        if isinstance(config.readiness, OutputReadiness)
        else None
    )
    output = ServerOutput(pattern=pattern)

    log.info("Starting companion server: %s", " ".join(config.command))
    async with spawn_process(
        *config.command,
        cwd=config.cwd,
        env=env,
        stderr=asyncio.subprocess.STDOUT,
    ) as process:
        drain = asyncio.create_task(drain_output(process, output))
        try:
            await wait_until_ready(process, config.readiness, output)
            log.info("Companion server pid=%d ready", process.pid)
            yield process
        finally:
            drain.cancel()
            await asyncio.gather(drain, return_exceptions=True)
            log.info("Tearing down companion server pid=%d", process.pid)
