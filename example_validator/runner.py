"""Run a single example, with or without its companion server."""

import asyncio
import logging
import os
import sys
import time
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from example_validator.models.example import Example, ServerConfig
from example_validator.models.result import TestResult
from example_validator.process import elapsed_ms, first_error_line, run_process
from example_validator.server import ServerStartupError, companion_server

log = logging.getLogger(__name__)


def inherited_env() -> Mapping[str, str]:
    """Harness environment passed on to examples, with unbuffered output."""
    return {**os.environ, "PYTHONUNBUFFERED": "1"}


@dataclass(frozen=True, kw_only=True)
class ExampleRunner:
    """Runs examples as child processes and turns outcomes into results."""

    project_root: Path
    timeout: float = 60.0
    interpreter: str = sys.executable
    env: Mapping[str, str] = field(default_factory=inherited_env, repr=False)
    server_locks: defaultdict[str, asyncio.Lock] = field(
        default_factory=lambda: defaultdict(asyncio.Lock), repr=False
    )

    async def run(self, example: Example) -> TestResult:
        """Run an example, starting its companion server first if it needs one."""
        if example.server is None:
            return await self.run_example(example)
        return await self.run_server_example(example, example.server)

    async def run_example(self, example: Example) -> TestResult:
        """Run a self-contained example.

        Success means exit status zero and no uncaught traceback on stderr.
        A timed-out example is terminated and reported with a duration equal
        to the timeout.
        """
        try:
            outcome = await run_process(
                self.interpreter,
                str(example.path),
                cwd=self.project_root,
                timeout=self.timeout,
                env=self.env,
            )
        except TimeoutError:
            log.warning("%s timed out after %gs", example.relative_path, self.timeout)
            return TestResult(
                index=example.index,
                relative_path=example.relative_path,
                status="timeout",
                duration_ms=int(self.timeout * 1000),
                message=f"Timed out after {self.timeout:g}s",
            )

        if not outcome.crashed:
            return TestResult(
                index=example.index,
                relative_path=example.relative_path,
                status="success",
                duration_ms=outcome.duration_ms,
            )

        log.debug(
            "%s exited with code %d, stderr:\n%s",
            example.relative_path,
            outcome.returncode,
            outcome.stderr,
        )
        message = (
            first_error_line(outcome.stderr) or f"Exited with code {outcome.returncode}"
        )
        return TestResult(
            index=example.index,
            relative_path=example.relative_path,
            status="failure",
            duration_ms=outcome.duration_ms,
            message=message,
        )

    async def run_server_example(
        self, example: Example, server: ServerConfig
    ) -> TestResult:
        """Run an example inside the lifetime of its companion server.

        If the server never becomes ready the example is not started and the
        result is attributed to the server. The server is torn down before
        this returns, whatever happens to the example. Examples whose servers
        hold the same resource run one at a time.
        """
        lock = self.server_locks[server.resource]
        if lock.locked():
            log.debug(
                "%s waiting for companion server resource %s",
                example.relative_path,
                server.resource,
            )

        async with lock:
            start = time.monotonic()
            try:
                async with companion_server(server, env=self.env):
                    return await self.run_example(example)
            except ServerStartupError as e:
                log.warning("%s: %s", example.relative_path, e)
                return TestResult(
                    index=example.index,
                    relative_path=example.relative_path,
                    status="error",
                    duration_ms=elapsed_ms(start),
                    message=str(e),
                )
