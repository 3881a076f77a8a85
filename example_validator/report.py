"""Console reporting and exit code computation for validation runs."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from example_validator.models.example import Chapter, Example
from example_validator.models.result import ExecutionSummary, TestResult

STATUS_SYMBOLS = {
    "success": "✅",
    "failure": "❌",
    "error": "❗",
    "timeout": "⏱️",
}

BANNER = "=" * 80


def summarize(results: Sequence[TestResult]) -> ExecutionSummary:
    """Reduce an index-aligned result list to pass/fail counts and timings."""
    passed = sum(1 for result in results if result.success)
    total_duration_ms = sum(result.duration_ms for result in results)
    return ExecutionSummary(
        total=len(results),
        passed=passed,
        failed=len(results) - passed,
        total_duration_ms=total_duration_ms,
        average_duration_ms=total_duration_ms // len(results) if results else 0,
        failures=[result for result in results if not result.success],
    )


def exit_code(summary: ExecutionSummary) -> int:
    """Process exit code for a run: 0 only when every example passed."""
    return 0 if summary.succeeded else 1


def first_line(message: str) -> str:
    """First line of a possibly multi-line message."""
    return message.split("\n", 1)[0]


def log_discovery_summary(
    log: logging.Logger, chapters: Sequence[Chapter], examples: Sequence[Example]
) -> None:
    """Log what was discovered before any example runs."""
    log.info(
        "Found %d chapter(s): %s",
        len(chapters),
        ", ".join(chapter.name for chapter in chapters),
    )
    for chapter in chapters:
        count = sum(1 for example in examples if example.chapter == chapter)
        log.info("  %d. %s: %d example(s)", chapter.position + 1, chapter.name, count)

    with_server = sum(1 for example in examples if example.server is not None)
    log.info(
        "Total: %d example(s), %d with a companion server", len(examples), with_server
    )


@dataclass(frozen=True, kw_only=True)
class SequentialProgress:
    """One line per example once it finishes."""

    log: logging.Logger

    def started(self, example: Example, total: int) -> None:
        self.log.debug("[%d/%d] %s...", example.index + 1, total, example.relative_path)

    def finished(self, example: Example, result: TestResult, total: int) -> None:
        self.log.info(
            "[%d/%d] %s %s (%dms)",
            example.index + 1,
            total,
            example.relative_path,
            STATUS_SYMBOLS[result.status],
            result.duration_ms,
        )
        if result.message and not result.success:
            self.log.info("   Error: %s", first_line(result.message))


@dataclass(frozen=True, kw_only=True)
class ParallelProgress:
    """Start and finish events, interleaved in the order they happen."""

    log: logging.Logger

    def started(self, example: Example, total: int) -> None:
        self.log.info(
            "▶️  [%d/%d] Starting: %s", example.index + 1, total, example.relative_path
        )

    def finished(self, example: Example, result: TestResult, total: int) -> None:
        self.log.info(
            "%s [%d/%d] %s: %s (%dms)",
            STATUS_SYMBOLS[result.status],
            example.index + 1,
            total,
            "Passed" if result.success else "Failed",
            example.relative_path,
            result.duration_ms,
        )
        if result.message and not result.success:
            self.log.info("   Error: %s", first_line(result.message))


def log_results_summary(
    log: logging.Logger,
    results: Sequence[TestResult],
    summary: ExecutionSummary,
    wall_clock_ms: int | None = None,
) -> None:
    """Log the final report, in discovery order."""
    log.info(BANNER)
    log.info("Validation Results:")
    log.info(BANNER)
    log.info("%d/%d passed, %d failed", summary.passed, summary.total, summary.failed)

    if summary.failures:
        log.info("Failures:")
        for result in summary.failures:
            log.info(
                "  %s [%d/%d] %s: %s",
                STATUS_SYMBOLS[result.status],
                result.index + 1,
                len(results),
                result.relative_path,
                first_line(result.message or result.status),
            )

    log.info(
        "Total example time: %dms (average %dms)",
        summary.total_duration_ms,
        summary.average_duration_ms,
    )
    if wall_clock_ms is not None:
        log.info("Wall-clock time: %.1fs", wall_clock_ms / 1000)

    log.info(BANNER)
    if summary.succeeded:
        log.info("✅ All examples validated successfully!")
    else:
        log.info("❌ Validation failed. Please fix the errors above.")
