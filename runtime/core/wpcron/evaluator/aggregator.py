"""Run outcome tallying and the end-of-run report."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass

from wpcron.config.settings import AggregatorConfig
from wpcron.registry.records import JobOutcome, JobStatus

logger = logging.getLogger(__name__)

_LEVEL_BY_STATUS = {
    JobStatus.SUCCESS: logging.INFO,
    JobStatus.FAILURE: logging.WARNING,
    JobStatus.SECURITY_BLOCKED: logging.WARNING,
    JobStatus.CONFIG_INVALID: logging.WARNING,
}


@dataclass(frozen=True)
class RunSummary:
    total: int
    success: int
    failure: int
    blocked: int
    invalid: int
    duration_seconds: float
    alert: bool
    interrupted: bool = False

    @property
    def accounted(self) -> int:
        return self.success + self.failure + self.blocked + self.invalid


def _describe(outcome: JobOutcome) -> str:
    parts = [f"{outcome.duration_seconds:.1f}s"]
    if outcome.method is not None:
        parts.append(outcome.method.value)
    if outcome.owner is not None:
        parts.append(f"user: {outcome.owner}")
    msg = f"{outcome.status.value.upper()}: {outcome.path} ({', '.join(parts)})"
    if outcome.detail:
        msg += f" - {outcome.detail}"
    return msg


class OutcomeAggregator:
    """Observes outcomes as they arrive; never changes or retries them."""

    def __init__(self, config: AggregatorConfig, *, clock=time.monotonic):
        self._config = config
        self._clock = clock
        self._started = clock()
        self._counts: Counter[JobStatus] = Counter()
        self._outcomes: list[JobOutcome] = []

    @property
    def outcomes(self) -> tuple[JobOutcome, ...]:
        return tuple(self._outcomes)

    def count(self, status: JobStatus) -> int:
        return self._counts[status]

    def record(self, outcome: JobOutcome) -> None:
        self._outcomes.append(outcome)
        self._counts[outcome.status] += 1
        logger.log(
            _LEVEL_BY_STATUS[outcome.status],
            _describe(outcome),
            extra={
                "event": "job_outcome",
                "status": outcome.status.value,
                "path": outcome.path,
                "duration": outcome.duration_seconds,
                "method": outcome.method.value if outcome.method is not None else None,
                "owner": outcome.owner,
                "detail": outcome.detail or None,
                "line_no": outcome.line_no,
                "exit_code": outcome.exit_code,
            },
        )

    def record_all(self, outcomes: list[JobOutcome]) -> None:
        for outcome in outcomes:
            self.record(outcome)

    def summarize(self, total: int, *, interrupted: bool = False) -> RunSummary:
        blocked = self._counts[JobStatus.SECURITY_BLOCKED]
        summary = RunSummary(
            total=total,
            success=self._counts[JobStatus.SUCCESS],
            failure=self._counts[JobStatus.FAILURE],
            blocked=blocked,
            invalid=self._counts[JobStatus.CONFIG_INVALID],
            duration_seconds=round(self._clock() - self._started, 3),
            alert=total > 0 and blocked > total * self._config.alert_blocked_ratio,
            interrupted=interrupted,
        )

        logger.info(
            f"Cron run {'interrupted' if interrupted else 'completed'} in {summary.duration_seconds:.0f}s - "
            f"Success: {summary.success}, Failed: {summary.failure}, Security Blocked: {summary.blocked}, "
            f"Invalid: {summary.invalid}, Total Sites: {total}",
            extra={
                "event": "run_summary",
                "total": total,
                "success": summary.success,
                "failure": summary.failure,
                "blocked": summary.blocked,
                "invalid": summary.invalid,
                "duration": summary.duration_seconds,
            },
        )
        if summary.alert:
            logger.critical(
                f"High number of security blocks ({blocked}). Possible attack or config issues.",
                extra={"event": "security_block_alert", "blocked": blocked, "total": total},
            )
        return summary
