"""Value types passed between runner stages.

Everything here is immutable: the loader builds records, the scheduler turns
each into exactly one outcome, and the aggregator only reads them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Method(str, Enum):
    WP_CLI = "wp-cli"
    PHP_DIRECT = "php-direct"

    @classmethod
    def parse(cls, raw: str) -> "Method":
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"Unknown method '{raw}' (expected one of: {', '.join(m.value for m in cls)})") from None


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SECURITY_BLOCKED = "security_blocked"
    CONFIG_INVALID = "config_invalid"


@dataclass(frozen=True)
class SiteRecord:
    path: str
    owner: str
    method: Method
    line_no: int = 0


@dataclass(frozen=True)
class JobOutcome:
    status: JobStatus
    path: str
    duration_seconds: float = 0.0
    detail: str = ""
    owner: str | None = None
    method: Method | None = None
    line_no: int | None = None
    exit_code: int | None = None

    @classmethod
    def for_record(cls, record: SiteRecord, status: JobStatus, **kwargs) -> "JobOutcome":
        return cls(
            status=status,
            path=record.path,
            owner=record.owner,
            method=record.method,
            line_no=record.line_no,
            **kwargs,
        )


@dataclass(frozen=True)
class ThrottleSignal:
    throttled: bool
    reason: str = ""
