"""Decide which examples need a companion server and how to start it."""

import sys
from collections.abc import Mapping, Sequence
from fnmatch import fnmatchcase
from pathlib import Path
from urllib.parse import urlsplit

from example_validator.models.config import (
    DEFAULT_SERVER_RULES,
    HttpReadiness,
    Readiness,
    ServerRule,
)
from example_validator.models.example import ServerConfig


def get_server_config(
    example_path: Path,
    project_root: Path,
    rules: Sequence[ServerRule] = DEFAULT_SERVER_RULES,
) -> ServerConfig | None:
    """Return the companion server an example needs, if any.

    The first rule whose pattern matches the example's path relative to the
    project root wins. Most examples are self-contained and match nothing.

    Args:
        example_path: Absolute path of the example file
        project_root: Root directory of the example project
        rules: Server rules to match against, in priority order

    Returns:
        Resolved server configuration, or None for self-contained examples

    """
    relative_path = example_path.relative_to(project_root).as_posix()

    for rule in rules:
        if fnmatchcase(relative_path, rule.pattern):
            variables = {
                "python": sys.executable,
                "example_dir": example_path.parent.as_posix(),
                "project_root": project_root.as_posix(),
            }
            command = tuple(expand(part, variables) for part in rule.command)
            return ServerConfig(
                command=command,
                cwd=Path(expand(rule.cwd, variables)),
                readiness=rule.readiness,
                resource=rule.resource or default_resource(rule.readiness, command),
            )

    return None


def expand(template: str, variables: Mapping[str, str]) -> str:
    """Expand ``{name}`` placeholders, leaving unknown ones untouched."""
    for name, value in variables.items():
        template = template.replace(f"{{{name}}}", value)
    return template


def default_resource(readiness: Readiness, command: Sequence[str]) -> str:
    """Exclusive resource of a server when its rule does not name one.

    An HTTP server owns the host and port it is probed on; any other server
    is assumed to conflict only with another copy of itself.
    """
    if isinstance(readiness, HttpReadiness):
        return urlsplit(readiness.url).netloc
    return " ".join(command)
