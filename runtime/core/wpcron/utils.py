"""Small utility helpers used across the runner."""

from __future__ import annotations

import os
import pwd
from datetime import datetime, timezone


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def user_name_for_uid(uid: int) -> str:
    """Map a uid to its account name, falling back to the numeric id.

    Files owned by a deleted account still need a comparable owner string.
    """
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def path_owner(path: str) -> str:
    return user_name_for_uid(os.stat(path).st_uid)


def current_user() -> str:
    return user_name_for_uid(os.geteuid())


def is_under_root(path: str, roots: tuple[str, ...]) -> bool:
    """True if path equals one of roots or sits below it on a component boundary."""
    for root in roots:
        root = root.rstrip("/") or "/"
        if root == "/" and path.startswith("/"):
            return True
        if path == root or path.startswith(root + "/"):
            return True
    return False
