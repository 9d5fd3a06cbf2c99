"""Sites registry loader (pipe-delimited text -> SiteRecord).

The registry is re-read on every run and treated as configuration, not state:
nothing is ever written back to it apart from tightening its permissions.

Line format: ``/absolute/path|username|method``. Blank lines and lines whose
first non-blank character is ``#`` are ignored.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from wpcron.errors import RegistryNotFoundError, TooManyEntriesError, UntrustedOwnerError
from wpcron.registry.records import JobOutcome, JobStatus, Method, SiteRecord
from wpcron.utils import user_name_for_uid

logger = logging.getLogger(__name__)

REQUIRED_MODE = 0o600


@dataclass(frozen=True)
class RegistryLoadResult:
    records: list[SiteRecord] = field(default_factory=list)
    invalid: list[JobOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.records) + len(self.invalid)


def _is_active(line: str) -> bool:
    s = line.strip()
    return bool(s) and not s.startswith("#")


def _enforce_file_trust(path: Path, *, trusted_owner: str) -> None:
    st = path.stat()
    owner = user_name_for_uid(st.st_uid)
    if owner != trusted_owner:
        raise UntrustedOwnerError(path, owner=owner, expected=trusted_owner)

    mode = stat.S_IMODE(st.st_mode)
    if mode & ~REQUIRED_MODE:
        tightened = mode & REQUIRED_MODE
        logger.warning(
            "registry_permissions_tightened",
            extra={"event": "registry_permissions_tightened", "path": str(path), "reason": f"{mode:o} -> {tightened:o}"},
        )
        os.chmod(path, tightened)


def _invalid(line_no: int, raw: str, detail: str) -> JobOutcome:
    path = raw.split("|", 1)[0].strip()
    logger.warning(
        "registry_line_invalid",
        extra={"event": "registry_line_invalid", "line_no": line_no, "path": path, "detail": detail},
    )
    return JobOutcome(status=JobStatus.CONFIG_INVALID, path=path, detail=detail, line_no=line_no)


def parse_registry_lines(lines: list[str]) -> RegistryLoadResult:
    """Parse registry lines into records; malformed lines become CONFIG_INVALID outcomes."""
    records: list[SiteRecord] = []
    invalid: list[JobOutcome] = []
    seen: set[str] = set()

    for line_no, line in enumerate(lines, start=1):
        if not _is_active(line):
            continue
        fields = [f.strip() for f in line.strip().split("|")]
        if len(fields) != 3 or not all(fields):
            invalid.append(_invalid(line_no, line, f"expected path|user|method, got {line.strip()!r}"))
            continue

        path, owner, raw_method = fields
        try:
            method = Method.parse(raw_method)
        except ValueError as e:
            invalid.append(_invalid(line_no, line, str(e)))
            continue

        key = path.rstrip("/") or "/"
        if key in seen:
            invalid.append(_invalid(line_no, line, f"duplicate entry for {path}"))
            continue
        seen.add(key)
        records.append(SiteRecord(path=path, owner=owner, method=method, line_no=line_no))

    return RegistryLoadResult(records=records, invalid=invalid)


def load_registry(path: Path, *, trusted_owner: str, max_entries: int = 1000) -> RegistryLoadResult:
    if not path.is_file():
        raise RegistryNotFoundError(path)

    _enforce_file_trust(path, trusted_owner=trusted_owner)

    lines = path.read_text(encoding="utf-8").splitlines()
    active = sum(1 for line in lines if _is_active(line))
    if active > max_entries:
        raise TooManyEntriesError(active, max_entries)

    return parse_registry_lines(lines)
