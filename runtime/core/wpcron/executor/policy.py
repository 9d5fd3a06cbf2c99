"""Security policy enforcement for registry records.

Every record must pass every check before the scheduler may launch anything
for it. Checks run in a fixed order and stop at the first failure; each
failure raises ``SecurityViolation`` with a distinct ``check`` name so the
audit log says exactly why a site was skipped.

This module does not run anything. It only proves whether a record is within
the declared boundaries.
"""

from __future__ import annotations

import logging
import os
import pwd
from dataclasses import dataclass
from typing import Callable, Iterable

from wpcron.config.settings import SecurityConfig
from wpcron.errors import SecurityViolation
from wpcron.registry.records import JobOutcome, JobStatus, Method, SiteRecord
from wpcron.utils import is_under_root, path_owner

logger = logging.getLogger(__name__)


def lookup_login_shell(user_name: str) -> str | None:
    """Login shell from the passwd database, or None if the account does not exist."""
    try:
        return pwd.getpwnam(user_name).pw_shell
    except KeyError:
        return None


class PolicyValidator:
    def __init__(
        self,
        config: SecurityConfig,
        *,
        shell_lookup: Callable[[str], str | None] = lookup_login_shell,
        owner_of: Callable[[str], str] = path_owner,
    ):
        self._config = config
        self._shell_lookup = shell_lookup
        self._owner_of = owner_of

    def validate(self, record: SiteRecord) -> SiteRecord:
        try:
            self._enforce_path(record.path)
            self._enforce_user(record.owner)
            self._enforce_site_files(record)
        except SecurityViolation as e:
            logger.warning(
                "security_blocked",
                extra={
                    "event": "security_blocked",
                    "check": e.check,
                    "path": record.path,
                    "owner": record.owner,
                    "reason": str(e),
                },
            )
            raise
        return record

    def _enforce_path(self, raw: str) -> None:
        roots = self._config.allowed_roots

        if ".." in raw:
            raise SecurityViolation("path_traversal", f"Path traversal attempt blocked: {raw}")

        if not is_under_root(raw, roots):
            raise SecurityViolation("path_not_allowed", f"Path outside allowed directories blocked: {raw}")

        try:
            resolved = os.path.realpath(raw, strict=True)
        except OSError as e:
            raise SecurityViolation("path_unresolvable", f"Invalid path blocked: {raw}") from e

        # Symlinks may point anywhere; the target has to live under a root too.
        if not is_under_root(resolved, roots):
            raise SecurityViolation(
                "resolved_path_not_allowed", f"Resolved path outside allowed directories blocked: {resolved}"
            )

    def _enforce_user(self, user_name: str) -> None:
        cfg = self._config
        if user_name in cfg.denied_users or user_name.startswith(cfg.denied_user_prefixes):
            raise SecurityViolation("system_user", f"Blocked execution for system user: {user_name}")

        shell = self._shell_lookup(user_name)
        if shell is None:
            raise SecurityViolation("unknown_user", f"User not found: {user_name}")

        if shell in cfg.disabled_shells:
            raise SecurityViolation("disabled_shell", f"User has disabled shell: {user_name} ({shell})")
        if shell not in cfg.known_shells:
            logger.warning(
                "unusual_shell",
                extra={"event": "unusual_shell", "owner": user_name, "detail": shell},
            )

    def _enforce_site_files(self, record: SiteRecord) -> None:
        cfg = self._config
        if not os.path.isfile(os.path.join(record.path, cfg.config_marker)):
            raise SecurityViolation("missing_config", f"{cfg.config_marker} not found in {record.path}")

        try:
            actual = self._owner_of(record.path)
        except OSError as e:
            raise SecurityViolation("owner_unknown", f"Cannot stat {record.path}: {e}") from e
        if actual != record.owner:
            raise SecurityViolation(
                "owner_mismatch",
                f"Directory owner mismatch - path: {record.path}, expected: {record.owner}, actual: {actual}",
            )

        if record.method is Method.PHP_DIRECT and not os.path.isfile(os.path.join(record.path, cfg.direct_entry)):
            raise SecurityViolation("missing_direct_entry", f"{cfg.direct_entry} not found in {record.path}")


@dataclass(frozen=True)
class GateResult:
    admitted: list[SiteRecord]
    blocked: list[JobOutcome]


def gate_records(records: Iterable[SiteRecord], validator: PolicyValidator) -> GateResult:
    """Split records into those cleared for dispatch and SECURITY_BLOCKED outcomes, keeping registry order."""
    admitted: list[SiteRecord] = []
    blocked: list[JobOutcome] = []
    for record in records:
        try:
            admitted.append(validator.validate(record))
        except SecurityViolation as e:
            blocked.append(JobOutcome.for_record(record, JobStatus.SECURITY_BLOCKED, detail=str(e)))
    return GateResult(admitted=admitted, blocked=blocked)
