"""Discover chapters and example files in an example project."""

import logging
import re
from collections.abc import Sequence
from fnmatch import fnmatchcase
from pathlib import Path

from example_validator.models.config import ValidationConfig
from example_validator.models.example import Chapter, Example
from example_validator.server_resolver import get_server_config

log = logging.getLogger(__name__)

LEADING_NUMBER = re.compile(r"^(\d+)")


class DiscoveryError(Exception):
    """Raised when the project root or a declared chapter does not exist."""


def chapter_sort_key(name: str) -> tuple[int, str]:
    """Sort chapters by their numeric prefix first, then by name."""
    match = LEADING_NUMBER.match(name)
    return (int(match.group(1)) if match else -1, name)


def find_chapters(project_root: Path, config: ValidationConfig) -> Sequence[Chapter]:
    """Find chapter directories under the project root.

    Declared chapters are used as-is when configured; otherwise every
    directory matching the chapter pattern is a chapter.

    Raises:
        DiscoveryError: If the root or a declared chapter does not exist

    """
    if not project_root.is_dir():
        raise DiscoveryError(f"Project root not found: {project_root}")

    if config.chapters:
        missing = [
            name for name in config.chapters if not (project_root / name).is_dir()
        ]
        if missing:
            raise DiscoveryError(f"Chapter directory not found: {', '.join(missing)}")
        names = list(config.chapters)
    else:
        pattern = re.compile(config.chapter_pattern)
        names = [
            entry.name
            for entry in project_root.iterdir()
            if entry.is_dir() and pattern.search(entry.name)
        ]

    return [
        Chapter(name=name, position=position)
        for position, name in enumerate(sorted(set(names), key=chapter_sort_key))
    ]


def is_example_file(path: Path, config: ValidationConfig) -> bool:
    """Check whether a file is a runnable example rather than support code."""
    if path.suffix != config.extension:
        return False
    return not any(fnmatchcase(path.name, p) for p in config.exclude_patterns)


def find_example_files(chapter_dir: Path, config: ValidationConfig) -> Sequence[Path]:
    """Find example files of a chapter, in run order.

    Example subdirectories are visited in configured order; files inside
    each one are sorted by their relative path. Excluded directories (such
    as helper servers started by other examples) are never entered.
    """
    files: list[Path] = []

    for example_dir_name in config.example_dirs:
        example_dir = chapter_dir / example_dir_name
        if not example_dir.is_dir():
            continue

        candidates = [
            path
            for path in example_dir.rglob(f"*{config.extension}")
            if path.is_file()
            and not _in_excluded_dir(path.relative_to(example_dir), config)
            and is_example_file(path, config)
        ]
        files.extend(
            sorted(candidates, key=lambda p: p.relative_to(example_dir).as_posix())
        )

    return files


def _in_excluded_dir(relative_path: Path, config: ValidationConfig) -> bool:
    return any(part in config.exclude_dirs for part in relative_path.parts[:-1])


def discover_examples(
    project_root: Path, config: ValidationConfig
) -> tuple[Sequence[Chapter], Sequence[Example]]:
    """Discover all chapters and their examples.

    Returns:
        The chapters and a flat example list; each example's index is its
        position in that list

    Raises:
        DiscoveryError: If the root or a declared chapter does not exist

    """
    project_root = project_root.resolve()
    chapters = find_chapters(project_root, config)
    examples: list[Example] = []

    for chapter in chapters:
        chapter_files = find_example_files(project_root / chapter.name, config)
        log.debug("Chapter %s: %d example(s)", chapter.name, len(chapter_files))
        for path in chapter_files:
            examples.append(
                Example(
                    path=path,
                    relative_path=path.relative_to(project_root).as_posix(),
                    chapter=chapter,
                    index=len(examples),
                    server=get_server_config(path, project_root, config.servers),
                )
            )

    return chapters, examples
