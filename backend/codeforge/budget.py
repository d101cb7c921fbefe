import logging
import time
from typing import Callable, Literal

from pydantic import BaseModel


logger = logging.getLogger("codeforge.budget")


GLOBAL_DEADLINE_MS = 300_000
WARNING_THRESHOLD_MS = 270_000
EMERGENCY_THRESHOLD_MS = 285_000
CRITICAL_THRESHOLD_MS = 295_000

Complexity = Literal["simple", "medium", "complex"]


class TimeBudget(BaseModel):
    """Milliseconds allotted to each pipeline stage."""

    initialization: int
    research: int
    code_generation: int
    validation: int
    finalization: int

    def total(self) -> int:
        return (
            self.initialization
            + self.research
            + self.code_generation
            + self.validation
            + self.finalization
        )


DEFAULT_BUDGET = TimeBudget(
    initialization=5_000,
    research=60_000,
    code_generation=150_000,
    validation=30_000,
    finalization=55_000,
)

BUDGET_PROFILES: dict[str, TimeBudget] = {
    "simple": TimeBudget(
        initialization=5_000,
        research=10_000,
        code_generation=60_000,
        validation=15_000,
        finalization=30_000,
    ),
    "medium": TimeBudget(
        initialization=5_000,
        research=30_000,
        code_generation=120_000,
        validation=25_000,
        finalization=40_000,
    ),
    "complex": TimeBudget(
        initialization=5_000,
        research=60_000,
        code_generation=180_000,
        validation=30_000,
        finalization=25_000,
    ),
}

COMPLEX_KEYWORDS: list[str] = [
    "enterprise",
    "architecture",
    "distributed",
    "microservices",
    "authentication",
    "authorization",
    "database schema",
    "multiple services",
    "full-stack",
    "complete application",
]


class StageRecord(BaseModel):
    name: str
    start: float
    end: float | None = None
    duration: float | None = None


class TimeoutCheck(BaseModel):
    is_warning: bool = False
    is_emergency: bool = False
    is_critical: bool = False
    remaining: float
    message: str | None = None


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def estimate_complexity(prompt: str) -> Complexity:
    """Classify a request by its text alone.

    Any keyword from COMPLEX_KEYWORDS or more than 1000 characters is complex,
    more than 300 characters is medium, anything else is simple.
    """
    lowered = (prompt or "").lower()
    if any(kw in lowered for kw in COMPLEX_KEYWORDS) or len(lowered) > 1000:
        return "complex"
    if len(lowered) > 300:
        return "medium"
    return "simple"


class TimeoutManager:
    """Track elapsed run time against the global deadline.

    The manager only reports; it never raises or cancels anything. Callers check
    ``should_skip_stage`` and ``check_timeout`` at stage boundaries.
    """

    def __init__(
        self,
        deadline_ms: int = GLOBAL_DEADLINE_MS,
        budget: TimeBudget | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = clock or _monotonic_ms
        self._start = self._clock()
        self.deadline_ms = deadline_ms
        self.budget = (budget or DEFAULT_BUDGET).model_copy()
        self.stages: list[StageRecord] = []
        self.warnings: list[str] = []

    def start_stage(self, name: str) -> None:
        now = self._clock()
        self.stages.append(StageRecord(name=name, start=now))
        logger.info("stage[%s] start elapsed=%dms", name, int(now - self._start))

    def end_stage(self, name: str) -> float:
        """Close the most recent open record for ``name`` and return its duration."""
        for record in reversed(self.stages):
            if record.name == name and record.end is None:
                record.end = self._clock()
                record.duration = record.end - record.start
                logger.info("stage[%s] done in %dms", name, int(record.duration))
                return record.duration
        return 0.0

    def get_elapsed(self) -> float:
        return self._clock() - self._start

    def get_remaining(self) -> float:
        return max(0.0, self.deadline_ms - self.get_elapsed())

    def check_timeout(self) -> TimeoutCheck:
        elapsed = self.get_elapsed()
        remaining = max(0.0, self.deadline_ms - elapsed)

        if elapsed >= CRITICAL_THRESHOLD_MS:
            check = TimeoutCheck(
                is_warning=True,
                is_emergency=True,
                is_critical=True,
                remaining=remaining,
                message="CRITICAL: Force shutdown imminent",
            )
        elif elapsed >= EMERGENCY_THRESHOLD_MS:
            check = TimeoutCheck(
                is_warning=True,
                is_emergency=True,
                remaining=remaining,
                message="EMERGENCY: Timeout very close",
            )
        elif elapsed >= WARNING_THRESHOLD_MS:
            check = TimeoutCheck(
                is_warning=True,
                remaining=remaining,
                message="WARNING: Approaching timeout",
            )
        else:
            return TimeoutCheck(remaining=remaining)

        if check.message not in self.warnings:
            self.warnings.append(check.message)
            log = logger.error if check.is_critical else logger.warning
            log("%s (%dms/%dms)", check.message, int(elapsed), self.deadline_ms)
        return check

    def should_skip_stage(self, stage: str) -> bool:
        allotted = getattr(self.budget, stage, None)
        if not isinstance(allotted, int):
            return False
        remaining = self.get_remaining()
        if remaining < allotted:
            logger.warning(
                "skipping stage %s: %dms remaining, %dms budgeted", stage, int(remaining), allotted
            )
            return True
        return False

    def adapt_budget(self, complexity: Complexity) -> TimeBudget:
        self.budget = BUDGET_PROFILES[complexity].model_copy()
        logger.info("budget adapted to %s profile", complexity)
        return self.budget

    def get_summary(self) -> dict:
        elapsed = self.get_elapsed()
        return {
            "elapsed": elapsed,
            "remaining": max(0.0, self.deadline_ms - elapsed),
            "percentage_used": (elapsed / self.deadline_ms) * 100,
            "stages": [s.model_dump() for s in self.stages],
            "warnings": list(self.warnings),
        }


def should_skip_non_critical(check: TimeoutCheck) -> bool:
    return check.is_emergency
