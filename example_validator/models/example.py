"""Models for discovered chapters and examples."""

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from example_validator.models.config import Readiness


@dataclass(frozen=True, kw_only=True)
class Chapter:
    """A chapter directory holding example programs."""

    name: str
    position: int


@dataclass(frozen=True, kw_only=True)
class ServerConfig:
    """Resolved launch description of a companion server.

    An example either has no companion server (``None``) or exactly one
    of these, with every template already expanded. Servers with the same
    ``resource`` must not run at the same time.
    """

    command: Sequence[str]
    cwd: Path
    readiness: Readiness
    resource: str


@dataclass(frozen=True, kw_only=True)
class Example:
    """A single example program to validate."""

    path: Path
    relative_path: str
    chapter: Chapter
    index: int
    server: ServerConfig | None = None
