"""CLI entry point for the example validation harness."""

import argparse
import asyncio
import logging
import sys
import time
from collections.abc import Sequence
from pathlib import Path

from example_validator.config_loader import load_validation_config
from example_validator.discovery import DiscoveryError, discover_examples
from example_validator.models.config import ValidationConfig
from example_validator.process import elapsed_ms
from example_validator.report import (
    BANNER,
    ParallelProgress,
    SequentialProgress,
    exit_code,
    log_discovery_summary,
    log_results_summary,
    summarize,
)
from example_validator.runner import ExampleRunner
from example_validator.scheduler import ExampleScheduler


def apply_overrides(
    config: ValidationConfig,
    timeout: float | None = None,
    concurrency: int | None = None,
    chapters: Sequence[str] = (),
) -> ValidationConfig:
    """Apply command line overrides on top of the loaded configuration."""
    updates: dict[str, object] = {}
    if timeout is not None:
        updates["timeout"] = timeout
    if concurrency is not None:
        updates["concurrency"] = concurrency
    if chapters:
        updates["chapters"] = tuple(chapters)
    return ValidationConfig.model_validate({**dict(config), **updates})


async def run(
    project_root: Path,
    parallel: bool = False,
    timeout: float | None = None,
    concurrency: int | None = None,
    chapters: Sequence[str] = (),
) -> int:
    """Discover and validate all examples, return exit code."""
    log = logging.getLogger("example_validator")

    try:
        config = apply_overrides(
            await load_validation_config(project_root),
            timeout=timeout,
            concurrency=concurrency,
            chapters=chapters,
        )
        chapter_list, examples = discover_examples(project_root, config)
    except (DiscoveryError, ValueError) as e:
        log.error("Validation could not start: %s", e)
        return 1

    mode = "parallel" if parallel else "sequential"
    limit = config.concurrency if parallel else 1

    log.info("Validating all code examples (%s mode)", mode)
    log.info(BANNER)
    log_discovery_summary(log, chapter_list, examples)
    log.info(
        "Running %d example(s), %d at a time, timeout %gs",
        len(examples),
        limit,
        config.timeout,
    )
    log.info(BANNER)

    runner = ExampleRunner(project_root=project_root.resolve(), timeout=config.timeout)
    scheduler = ExampleScheduler(
        run_example=runner.run,
        concurrency=limit,
        listener=ParallelProgress(log=log) if parallel else SequentialProgress(log=log),
    )

    start = time.monotonic()
    results = await scheduler.run_all(examples)
    wall_clock_ms = elapsed_ms(start)

    summary = summarize(results)
    log_results_summary(
        log, results, summary, wall_clock_ms=wall_clock_ms if parallel else None
    )

    return exit_code(summary)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run every example program and report which ones fail"
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Root of the example project (default: current directory)",
    )
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Run examples concurrently instead of one at a time",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Examples in flight at once in parallel mode (default: 10)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Per-example timeout in seconds (default: 60)",
    )
    parser.add_argument(
        "--chapter",
        action="append",
        default=[],
        dest="chapters",
        help="Only validate this chapter directory (repeatable)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    exit_status = asyncio.run(
        run(
            project_root=args.project_root,
            parallel=args.parallel,
            timeout=args.timeout,
            concurrency=args.concurrency,
            chapters=args.chapters,
        )
    )
    sys.exit(exit_status)


if __name__ == "__main__":  # pragma: no cover
    main()
