from __future__ import annotations

import posixpath
from dataclasses import dataclass

DENY_WRITE_PREFIXES = ("node_modules/", ".git/")


@dataclass(frozen=True)
class Policy:
    deny_write_prefixes: tuple[str, ...]


DEFAULT_POLICY = Policy(deny_write_prefixes=DENY_WRITE_PREFIXES)


def normalize_project_path(path: str) -> str:
    """Normalize a project-relative POSIX path like 'src/App.tsx'.

    Leading slashes are dropped; traversal outside the project root is rejected.
    """
    raw = (path or "").strip()
    if not raw:
        raise ValueError("empty path")
    if "\x00" in raw:
        raise ValueError("invalid path")
    raw = raw.replace("\\", "/")

    parts = raw.split("/")
    if ".." in parts:
        raise ValueError("path traversal not allowed")

    norm = posixpath.normpath("/" + raw).lstrip("/")
    if not norm or norm == ".":
        raise ValueError("invalid path")
    return norm


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    normalized = path.rstrip("/") + "/"
    return any(normalized.startswith(p) for p in policy.deny_write_prefixes)


def require_update_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = normalize_project_path(path)
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"writes not allowed for '{p}'")
    return p
