"""Bounded worker pool running examples into index-aligned result slots."""

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from example_validator.models.example import Example
from example_validator.models.result import TestResult
from example_validator.process import elapsed_ms

log = logging.getLogger(__name__)

type RunFn = Callable[[Example], Awaitable[TestResult]]


class ProgressListener(Protocol):
    """Receives start and finish events from scheduler workers."""

    def started(self, example: Example, total: int) -> None:
        """Called when a worker claims and starts an example."""

    def finished(self, example: Example, result: TestResult, total: int) -> None:
        """Called when an example's result has been stored."""


class ClaimCursor:
    """Hands out each index in ``range(total)`` exactly once."""

    def __init__(self, total: int) -> None:
        self._total = total
        self._counter = itertools.count()

    def claim(self) -> int | None:
        """Claim the next unclaimed index, or None when all are taken."""
        index = next(self._counter)
        return index if index < self._total else None


class ResultSlots:
    """Preallocated, write-once result storage indexed by discovery order."""

    def __init__(self, size: int) -> None:
        self._slots: list[TestResult | None] = [None] * size

    def fill(self, index: int, result: TestResult) -> None:
        """Store the result for ``index``; every slot is written exactly once."""
        if result.index != index:
            raise ValueError(f"Result for index {result.index} stored in slot {index}")
        if self._slots[index] is not None:
            raise RuntimeError(f"Result slot {index} already filled")
        self._slots[index] = result

    def collect(self) -> Sequence[TestResult]:
        """Return all results in slot order."""
        missing = [i for i, slot in enumerate(self._slots) if slot is None]
        if missing:
            raise RuntimeError(f"Result slots never filled: {missing}")
        return [slot for slot in self._slots if slot is not None]


@dataclass(frozen=True, kw_only=True)
class ExampleScheduler:
    """Runs examples with at most ``concurrency`` of them in flight.

    Workers pull the next unclaimed example from a shared cursor, so a
    worker that finishes a short example immediately picks up more work
    while others are still busy with long ones.
    """

    run_example: RunFn
    concurrency: int
    listener: ProgressListener | None = None

    async def run_all(self, examples: Sequence[Example]) -> Sequence[TestResult]:
        """Run all examples and return their results in discovery order.

        Args:
            examples: Examples in discovery order; ``examples[i].index == i``

        Returns:
            One result per example, ``results[i]`` belonging to ``examples[i]``

        """
        if self.concurrency < 1:
            raise ValueError(f"Concurrency must be at least 1, got {self.concurrency}")

        if not examples:
            log.info("No examples to run")
            return []

        cursor = ClaimCursor(len(examples))
        slots = ResultSlots(len(examples))
        worker_count = min(self.concurrency, len(examples))

        log.debug(
            "Starting %d worker(s) for %d example(s)", worker_count, len(examples)
        )
        await asyncio.gather(
            *(self._worker(examples, cursor, slots) for _ in range(worker_count))
        )

        return slots.collect()

    async def _worker(
        self,
        examples: Sequence[Example],
        cursor: ClaimCursor,
        slots: ResultSlots,
    ) -> None:
        total = len(examples)
        while (index := cursor.claim()) is not None:
            example = examples[index]
            if self.listener is not None:
                self.listener.started(example, total)

            result = await self._run_one(example)

            slots.fill(index, result)
            if self.listener is not None:
                self.listener.finished(example, result, total)

    async def _run_one(self, example: Example) -> TestResult:
        """Run one example, converting any harness error into an error result."""
        start = time.monotonic()
        try:
            return await self.run_example(example)
        except Exception as e:
            log.error(
                "Harness error while running %s: %s",
                example.relative_path,
                e,
                exc_info=e,
            )
            return TestResult(
                index=example.index,
                relative_path=example.relative_path,
                status="error",
                duration_ms=elapsed_ms(start),
                message=str(e) or type(e).__name__,
            )
