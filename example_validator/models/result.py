"""Models for example execution results."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

type Status = Literal["success", "failure", "timeout", "error"]


@dataclass(frozen=True, kw_only=True)
class TestResult:
    """Result of running a single example.

    ``index`` is the discovery index of the example, so results can be put
    back in discovery order whatever order they completed in.
    """

    __test__ = False

    index: int
    relative_path: str
    status: Status
    duration_ms: int
    message: str | None = None

    @property
    def success(self) -> bool:
        """Whether the example passed."""
        return self.status == "success"


@dataclass(frozen=True, kw_only=True)
class ExecutionSummary:
    """Aggregate view over a complete, index-aligned result list."""

    total: int
    passed: int
    failed: int
    total_duration_ms: int
    average_duration_ms: int
    failures: Sequence[TestResult]

    @property
    def succeeded(self) -> bool:
        """Whether every example passed."""
        return self.failed == 0
