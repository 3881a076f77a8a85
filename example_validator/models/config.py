"""Models for the harness configuration loaded from validation.yaml."""

from collections.abc import Sequence
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class Model(BaseModel):
    """Immutable configuration record; unknown keys are schema errors."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class GraceReadiness(Model):
    """Server is considered ready once it has stayed alive for the grace period."""

    kind: Literal["grace"] = "grace"
    grace: float = Field(default=3.0, gt=0, description="Seconds to wait")


class OutputReadiness(Model):
    """Server is ready when a line of its output matches a pattern."""

    kind: Literal["output"] = "output"
    pattern: str = Field(..., description="Regex searched in each output line")
    grace: float = Field(default=10.0, gt=0, description="Seconds to wait")
    strict: bool = Field(
        default=False,
        description="Fail startup when the grace period ends without a match",
    )


class HttpReadiness(Model):
    """Server is ready when an HTTP endpoint answers."""

    kind: Literal["http"] = "http"
    url: str = Field(..., description="URL probed with GET until it answers")
    grace: float = Field(default=10.0, gt=0, description="Seconds to wait")
    interval: float = Field(default=0.25, gt=0, description="Seconds between probes")
    strict: bool = Field(
        default=False,
        description="Fail startup when the grace period ends without an answer",
    )


Readiness = Annotated[
    GraceReadiness | OutputReadiness | HttpReadiness, Field(discriminator="kind")
]


class ServerRule(Model):
    """Companion server required by every example matching a path pattern."""

    pattern: str = Field(
        ..., description="Glob matched against the example's relative POSIX path"
    )
    command: Sequence[str] = Field(
        ...,
        min_length=1,
        description="Argv template; {python}, {example_dir}, {project_root} expand",
    )
    cwd: str = Field(default="{project_root}", description="Working directory template")
    readiness: Readiness = Field(default_factory=GraceReadiness)
    resource: str | None = Field(
        default=None,
        description=(
            "Something the server holds exclusively, such as a port; servers "
            "sharing it never run at the same time (default: the HTTP "
            "readiness host and port, else the expanded command)"
        ),
    )


DEFAULT_SERVER_RULES: Sequence[ServerRule] = (
    ServerRule(
        pattern="*/code/*mcp-http*.py",
        command=("{python}", "{example_dir}/servers/http_calculator_server.py"),
        readiness=HttpReadiness(url="http://127.0.0.1:3000/mcp"),
    ),
    ServerRule(
        pattern="*/solution/*mcp-http*.py",
        command=("{python}", "{example_dir}/../code/servers/http_calculator_server.py"),
        readiness=HttpReadiness(url="http://127.0.0.1:3000/mcp"),
    ),
)


class ValidationConfig(Model):
    """Complete harness configuration."""

    chapter_pattern: str = Field(
        default=r"^\d+-", description="Regex a chapter directory name must match"
    )
    chapters: Sequence[str] = Field(
        default=(), description="Declared chapter directories (empty means all)"
    )
    example_dirs: Sequence[str] = Field(
        default=("code", "solution"),
        description="Example subdirectories inside each chapter, in run order",
    )
    extension: str = Field(default=".py", description="Example file extension")
    exclude_dirs: Sequence[str] = Field(
        default=("servers", "__pycache__"),
        description="Directory names never searched for examples",
    )
    exclude_patterns: Sequence[str] = Field(
        default=("_*", "*_helpers.py", "*_utils.py", "conftest.py"),
        description="Filename globs of support modules that are not examples",
    )
    timeout: float = Field(default=60.0, gt=0, description="Per-example timeout")
    concurrency: int = Field(default=10, ge=1, description="Parallel mode limit")
    servers: Sequence[ServerRule] = Field(
        default=DEFAULT_SERVER_RULES,
        description="Companion server rules, first match wins",
    )
