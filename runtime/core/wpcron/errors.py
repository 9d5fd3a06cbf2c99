"""Runner error types.

The runner is fail-closed: it refuses to dispatch anything when it cannot
prove the registry and its own configuration are trustworthy. Fatal errors are
``ConfigError`` subclasses and map to a non-zero exit in ``wpcron.main``.
Per-record problems are never raised past the dispatch loop; they become
``JobOutcome`` values instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


class WpCronError(Exception):
    """Base class for runner errors."""


class ConfigError(WpCronError):
    """Fatal to the whole run: nothing is scheduled after one of these."""


class RunnerConfigError(ConfigError):
    pass


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(ConfigError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class RegistryNotFoundError(ConfigError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Sites registry not found: {path}")


class UntrustedOwnerError(ConfigError):
    def __init__(self, path: Path, owner: str, expected: str):
        self.path = path
        self.owner = owner
        self.expected = expected
        super().__init__(f"Registry {path} must be owned by {expected} (currently: {owner})")


class TooManyEntriesError(ConfigError):
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"Too many sites in registry ({count}). Maximum: {limit}")


class IdentityError(ConfigError):
    def __init__(self, current: str, expected: str):
        self.current = current
        self.expected = expected
        super().__init__(f"Runner must run as {expected} (currently: {current})")


class SecurityViolation(WpCronError):
    """A single registry record failed a policy check."""

    def __init__(self, check: str, message: str):
        self.check = check
        super().__init__(message)
