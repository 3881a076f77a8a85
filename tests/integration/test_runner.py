"""Integration tests for ExampleRunner using real child processes."""

import os
import socket
import sys
import time
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from example_validator import process as process_module
from example_validator.models.config import (
    GraceReadiness,
    HttpReadiness,
    OutputReadiness,
    ServerRule,
)
from example_validator.models.example import Chapter, Example, ServerConfig
from example_validator.runner import ExampleRunner
from example_validator.scheduler import ExampleScheduler
from example_validator.server_resolver import get_server_config

from .conftest import WriteScriptFn

SERVER_SOURCE = """\
import os
import pathlib
import sys
import time

pathlib.Path(sys.argv[1]).write_text(str(os.getpid()))
print("calculator server ready", flush=True)
time.sleep(60)
"""

CRASHING_SERVER_SOURCE = """\
import sys

print("Error: port 3000 already in use", flush=True)
sys.exit(1)
"""

MARKER_CLIENT_SOURCE = """\
import pathlib
import sys

pathlib.Path(sys.argv[0]).with_suffix(".ran").write_text("yes")
"""

LONG_LINE_SERVER_SOURCE = """\
import os
import pathlib
import sys
import time

pathlib.Path(sys.argv[1]).write_text(str(os.getpid()))
print("x" * 100_000, flush=True)
print("calculator server ready", flush=True)
time.sleep(60)
"""


def make_example(
    project_root: Path, path: Path, index: int = 0, server: ServerConfig | None = None
) -> Example:
    """Wrap a script as a discovered example."""
    return Example(
        path=path,
        relative_path=path.relative_to(project_root).as_posix(),
        chapter=Chapter(name=path.relative_to(project_root).parts[0], position=0),
        index=index,
        server=server,
    )


def process_running(pid: int) -> bool:
    """Whether a pid refers to a running process; zombies are not running."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return not Path("/proc").is_dir()
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def assert_process_gone(pid: int, timeout: float = 2.0) -> None:
    """Assert a pid stops being a running process within ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while process_running(pid):
        assert time.monotonic() < deadline, f"pid {pid} is still running"
        time.sleep(0.01)


def free_port() -> int:
    """A local TCP port nothing listens on right now."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def runner(project_root: Path) -> ExampleRunner:
    """Runner with a short timeout."""
    return ExampleRunner(project_root=project_root, timeout=10)


@pytest.fixture
def server_config(
    project_root: Path, write_script: WriteScriptFn
) -> Callable[[str], ServerConfig]:
    """Return a function building a server config around given source."""

    def _build(source: str) -> ServerConfig:
        server_path = write_script("06-mcp/code/servers/server.py", source)
        return ServerConfig(
            command=(sys.executable, str(server_path), str(project_root / "pid")),
            cwd=project_root,
            readiness=OutputReadiness(pattern="ready", grace=10, strict=True),
            resource="calculator",
        )

    return _build


class TestRunExample:
    """Tests for self-contained examples."""

    async def test_success(
        self, runner: ExampleRunner, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """Zero exit status is a success."""
        path = write_script("01-basics/code/hello.py", "print('hello')\n")

        result = await runner.run(make_example(project_root, path, index=3))

        assert result.status == "success"
        assert result.success
        assert result.index == 3
        assert result.relative_path == "01-basics/code/hello.py"
        assert result.message is None
        assert result.duration_ms >= 0

    async def test_runs_from_project_root(
        self, runner: ExampleRunner, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """Examples run with the project root as working directory."""
        path = write_script(
            "01-basics/code/cwd.py",
            """\
            import pathlib
            assert pathlib.Path("01-basics").is_dir()
            """,
        )

        result = await runner.run(make_example(project_root, path))

        assert result.status == "success"

    async def test_uncaught_exception(
        self, runner: ExampleRunner, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """An uncaught exception fails with its exception line."""
        path = write_script(
            "01-basics/code/boom.py",
            """\
            def main():
                raise ValueError("bad input")

            main()
            """,
        )

        result = await runner.run(make_example(project_root, path))

        assert result.status == "failure"
        assert result.message == "ValueError: bad input"

    async def test_non_zero_exit_without_output(
        self, runner: ExampleRunner, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """A silent non-zero exit reports the exit code."""
        path = write_script("01-basics/code/exit.py", "import sys\nsys.exit(3)\n")

        result = await runner.run(make_example(project_root, path))

        assert result.status == "failure"
        assert result.message == "Exited with code 3"

    async def test_traceback_with_zero_exit(
        self, runner: ExampleRunner, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """An uncaught error reported on stderr fails even with exit status 0."""
        path = write_script(
            "01-basics/code/background.py",
            """\
            import sys
            sys.stderr.write(
                "Traceback (most recent call last):\\n"
                '  File "worker.py", line 1, in run\\n'
                "RuntimeError: task died\\n"
            )
            """,
        )

        result = await runner.run(make_example(project_root, path))

        assert result.status == "failure"
        assert result.message == "RuntimeError: task died"

    async def test_timeout(
        self, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """A hanging example is terminated and reported as timed out."""
        path = write_script(
            "01-basics/code/hang.py",
            """\
            import os
            import pathlib
            import time
            pathlib.Path("hang.pid").write_text(str(os.getpid()))
            time.sleep(60)
            """,
        )
        runner = ExampleRunner(project_root=project_root, timeout=1)

        result = await runner.run(make_example(project_root, path))

        assert result.status == "timeout"
        assert result.duration_ms == 1000
        assert result.message == "Timed out after 1s"
        assert_process_gone(int((project_root / "hang.pid").read_text()))


    async def test_background_process_does_not_delay_result(
        self, runner: ExampleRunner, project_root: Path, write_script: WriteScriptFn
    ) -> None:
        """The example exiting decides the result; leftover children are killed."""
        path = write_script(
            "06-mcp/code/stdio-local.py",
            """\
            import pathlib
            import subprocess
            import sys

            child = subprocess.Popen(
                [sys.executable, "-c", "import time; time.sleep(30)"]
            )
            pathlib.Path("child.pid").write_text(str(child.pid))
            print("done")
            """,
        )

        result = await runner.run(make_example(project_root, path))

        assert result.status == "success"
        assert result.duration_ms < 5000
        assert_process_gone(int((project_root / "child.pid").read_text()))


class TestRunServerExample:
    """Tests for examples paired with a companion server."""

    async def test_runs_client_while_server_is_up(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
        server_config: Callable[[str], ServerConfig],
    ) -> None:
        """The client runs once the server is ready; the server is torn down."""
        path = write_script(
            "06-mcp/code/client.py",
            """\
            import os
            import pathlib
            pid = int(pathlib.Path("pid").read_text())
            os.kill(pid, 0)
            """,
        )
        server = server_config(SERVER_SOURCE)

        result = await runner.run(make_example(project_root, path, server=server))

        assert result.status == "success"
        assert_process_gone(int((project_root / "pid").read_text()))

    async def test_server_startup_failure_skips_client(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
        server_config: Callable[[str], ServerConfig],
    ) -> None:
        """A crashing server fails the example without starting the client."""
        path = write_script("06-mcp/code/client.py", MARKER_CLIENT_SOURCE)
        server = server_config(CRASHING_SERVER_SOURCE)

        with patch.object(
            process_module,
            "terminate_process",
            wraps=process_module.terminate_process,
        ) as terminate:
            result = await runner.run(make_example(project_root, path, server=server))

        assert result.status == "error"
        assert result.message is not None
        assert "server failed to start" in result.message
        assert "exited with code 1" in result.message
        assert "port 3000 already in use" in result.message
        assert not path.with_suffix(".ran").exists()
        assert terminate.call_count == 1

    async def test_server_not_ready_in_time(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
    ) -> None:
        """A strict readiness deadline that passes is a startup failure."""
        path = write_script("06-mcp/code/client.py", MARKER_CLIENT_SOURCE)
        server_path = write_script(
            "06-mcp/code/servers/silent.py", "import time\ntime.sleep(60)\n"
        )
        server = ServerConfig(
            command=(sys.executable, str(server_path)),
            cwd=project_root,
            readiness=OutputReadiness(pattern="ready", grace=0.5, strict=True),
            resource="silent",
        )

        with patch.object(
            process_module,
            "terminate_process",
            wraps=process_module.terminate_process,
        ) as terminate:
            result = await runner.run(make_example(project_root, path, server=server))

        assert result.status == "error"
        assert result.message == "server failed to start: not ready within 0.5s"
        assert not path.with_suffix(".ran").exists()
        assert terminate.call_count == 1
        assert terminate.call_args.args[0].returncode is not None

    async def test_failing_client_still_tears_down_server(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
        server_config: Callable[[str], ServerConfig],
    ) -> None:
        """A client crash is the client's failure; the server is stopped once."""
        path = write_script(
            "06-mcp/code/client.py", "raise ConnectionError('tool call failed')\n"
        )
        server = server_config(SERVER_SOURCE)

        with patch.object(
            process_module,
            "terminate_process",
            wraps=process_module.terminate_process,
        ) as terminate:
            result = await runner.run(make_example(project_root, path, server=server))

        server_pid = int((project_root / "pid").read_text())
        terminated_pids = [call.args[0].pid for call in terminate.call_args_list]
        assert result.status == "failure"
        assert result.message == "ConnectionError: tool call failed"
        assert terminated_pids.count(server_pid) == 1
        assert len(terminated_pids) == 2
        assert_process_gone(server_pid)

    async def test_client_timeout_tears_down_server(
        self,
        project_root: Path,
        write_script: WriteScriptFn,
        server_config: Callable[[str], ServerConfig],
    ) -> None:
        """A hanging client times out and its server is stopped."""
        path = write_script("06-mcp/code/client.py", "import time\ntime.sleep(60)\n")
        server = server_config(SERVER_SOURCE)
        runner = ExampleRunner(project_root=project_root, timeout=1)

        result = await runner.run(make_example(project_root, path, server=server))

        assert result.status == "timeout"
        assert_process_gone(int((project_root / "pid").read_text()))

    async def test_harness_error_tears_down_server(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
        server_config: Callable[[str], ServerConfig],
    ) -> None:
        """An exception inside the harness propagates after server teardown."""
        path = write_script("06-mcp/code/client.py", "print('never')\n")
        server = server_config(SERVER_SOURCE)

        with (
            patch.object(
                ExampleRunner,
                "run_example",
                side_effect=RuntimeError("harness bug"),
            ),
            pytest.raises(RuntimeError, match="harness bug"),
        ):
            await runner.run(make_example(project_root, path, server=server))

        assert_process_gone(int((project_root / "pid").read_text()))

    async def test_grace_readiness(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
    ) -> None:
        """A silent server is assumed ready after its grace period."""
        path = write_script("06-mcp/code/client.py", "print('ok')\n")
        server_path = write_script(
            "06-mcp/code/servers/silent.py", "import time\ntime.sleep(60)\n"
        )
        server = ServerConfig(
            command=(sys.executable, str(server_path)),
            cwd=project_root,
            readiness=GraceReadiness(grace=0.2),
            resource="silent",
        )

        result = await runner.run(make_example(project_root, path, server=server))

        assert result.status == "success"

    async def test_long_output_line_does_not_hide_readiness(
        self,
        runner: ExampleRunner,
        project_root: Path,
        write_script: WriteScriptFn,
        server_config: Callable[[str], ServerConfig],
    ) -> None:
        """A server line far longer than a pipe buffer is read past."""
        path = write_script("06-mcp/code/client.py", "print('ok')\n")
        server = server_config(LONG_LINE_SERVER_SOURCE)

        result = await runner.run(make_example(project_root, path, server=server))

        assert result.status == "success"
        assert_process_gone(int((project_root / "pid").read_text()))


async def test_servers_sharing_a_port_take_turns(
    project_root: Path, write_script: WriteScriptFn
) -> None:
    """Examples whose servers bind the same port never overlap."""
    port = free_port()
    url = f"http://127.0.0.1:{port}/"
    rules = [
        ServerRule(
            pattern="*mcp-http*.py",
            command=[
                "{python}", "-m", "http.server", str(port), "--bind", "127.0.0.1"
            ],
            cwd="{example_dir}",
            readiness=HttpReadiness(url=url, grace=10, interval=0.05, strict=True),
        )
    ]
    client_source = f"""\
        import time
        import urllib.request

        urllib.request.urlopen("{url}", timeout=5).close()
        time.sleep(0.5)
        urllib.request.urlopen("{url}", timeout=5).close()
        """
    examples = [
        make_example(
            project_root,
            path,
            index=i,
            server=get_server_config(path, project_root, rules),
        )
        for i, path in enumerate(
            [
                write_script("06-mcp/code/01-mcp-http.py", client_source),
                write_script("06-mcp/solution/01-mcp-http.py", client_source),
            ]
        )
    ]
    runner = ExampleRunner(project_root=project_root, timeout=10)
    scheduler = ExampleScheduler(run_example=runner.run, concurrency=2)

    results = await scheduler.run_all(examples)

    assert [(r.status, r.message) for r in results] == [
        ("success", None),
        ("success", None),
    ]


async def test_scheduler_with_real_processes(
    project_root: Path, write_script: WriteScriptFn
) -> None:
    """Slots line up with discovery order for real, unevenly slow examples."""
    sources = {
        "01-basics/code/a.py": "import time\ntime.sleep(0.5)\n",
        "01-basics/code/b.py": "raise SystemExit('b failed')\n",
        "01-basics/code/c.py": "print('c')\n",
        "01-basics/code/d.py": "import time\ntime.sleep(30)\n",
    }
    examples = [
        make_example(project_root, write_script(relative_path, source), index=i)
        for i, (relative_path, source) in enumerate(sources.items())
    ]
    runner = ExampleRunner(project_root=project_root, timeout=2)
    scheduler = ExampleScheduler(run_example=runner.run, concurrency=2)

    results = await scheduler.run_all(examples)

    assert [(r.index, r.status) for r in results] == [
        (0, "success"),
        (1, "failure"),
        (2, "success"),
        (3, "timeout"),
    ]
    assert results[1].message == "b failed"
