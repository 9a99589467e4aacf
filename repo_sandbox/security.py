"""security.py — sandbox policy, path guards and safe tree listing for repo_sandbox

Implements:
- SandboxPolicy: immutable deny-lists + size limits for one session
- path guards: NUL/empty/traversal checks, symlink-aware containment, deny-list
- tree listing that never follows or reports symlinks

This is an *application-level* policy layer. It is not an OS sandbox: the
containment check on descent narrows, but does not close, the window in which
a directory can be swapped for a symlink between check and use.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import posixpath
import stat
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from jsonschema import Draft202012Validator

from .errors import AccessDenied, InvalidPath, InvalidPolicy, PathTraversal
from .schemas import POLICY_SCHEMA

log = logging.getLogger(__name__)

DEFAULT_DENY_DIRS: Tuple[str, ...] = (".git", "node_modules", "dist")
DEFAULT_DENY_FILES: Tuple[str, ...] = (".env",)
DEFAULT_DENY_EXTENSIONS: Tuple[str, ...] = (".pem", ".key")
DEFAULT_MAX_READ_BYTES = 400_000
DEFAULT_MAX_WRITE_BYTES = 800_000
DEFAULT_MAX_LIST_FILES = 5000


def real_path(path: str) -> str:
    return os.path.realpath(os.path.abspath(path))


def is_strictly_within(child: str, parent: str) -> bool:
    """Return True if child is inside parent (never equal). Both real paths."""
    parent = parent.rstrip(os.sep)
    return child.startswith(parent + os.sep)


@dataclass(frozen=True)
class SandboxPolicy:
    root: str
    deny_dirs: Tuple[str, ...] = DEFAULT_DENY_DIRS
    deny_files_exact: Tuple[str, ...] = DEFAULT_DENY_FILES
    deny_extensions: Tuple[str, ...] = DEFAULT_DENY_EXTENSIONS
    max_read_bytes: int = DEFAULT_MAX_READ_BYTES
    max_write_bytes: int = DEFAULT_MAX_WRITE_BYTES

    @property
    def real_root(self) -> str:
        return real_path(self.root)


@dataclass(frozen=True)
class ResolvedPath:
    abs_path: str
    rel_path: str  # always POSIX ("/")


def default_sandbox_policy(root: str) -> SandboxPolicy:
    return SandboxPolicy(root=os.path.abspath(root))


def load_policy(root: str, overrides: Optional[Mapping[str, Any]] = None) -> SandboxPolicy:
    """Build a policy for root, applying validated overrides on top of the defaults."""
    if not os.path.isdir(root):
        raise InvalidPolicy(f"Sandbox root is not a directory: {root!r}")

    overrides = dict(overrides or {})
    errors = sorted(Draft202012Validator(POLICY_SCHEMA).iter_errors(overrides), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(
            f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
        )
        raise InvalidPolicy(f"Invalid policy overrides: {details}")

    fields: Dict[str, Any] = {}
    for key, value in overrides.items():
        fields[key] = tuple(value) if isinstance(value, list) else value
    return dataclasses.replace(default_sandbox_policy(root), **fields)


def is_denied_path(policy: SandboxPolicy, rel_posix_path: str) -> bool:
    """Check the deny-lists against a root-relative POSIX path (case-insensitive)."""
    p = rel_posix_path.lstrip("/").lower()

    base = posixpath.basename(p)
    if base in {s.lower() for s in policy.deny_files_exact}:
        return True

    ext = posixpath.splitext(base)[1]
    if ext and ext in {s.lower() for s in policy.deny_extensions}:
        return True

    deny_dirs = {s.lower() for s in policy.deny_dirs}
    return any(seg in deny_dirs for seg in p.split("/"))


def resolve_in_root(policy: SandboxPolicy, user_path: Any, *, allow_dir: bool = False) -> ResolvedPath:
    """Resolve a user-supplied path to a file target strictly inside the root.

    Existing directories raise InvalidPath unless allow_dir is set.

    Missing targets are allowed (for creation): realpath canonicalizes the
    existing ancestors and re-appends the rest, so a symlinked ancestor that
    leads outside the root is still caught.
    """
    if not isinstance(user_path, str):
        raise InvalidPath("Invalid path: expected string")
    if "\x00" in user_path:
        raise InvalidPath("Invalid path: NUL byte")
    trimmed = user_path.strip()
    if not trimmed:
        raise InvalidPath(f"Invalid path: {user_path!r}")

    normalized = trimmed.replace("\\", "/")
    if any(part == ".." for part in normalized.split("/")):
        raise PathTraversal(f"Path traversal blocked: {user_path!r}")

    real_root = policy.real_root
    real_candidate = os.path.realpath(os.path.join(real_root, normalized))

    if not is_strictly_within(real_candidate, real_root):
        if real_candidate == real_root:
            raise InvalidPath(f"Invalid path: {user_path!r}")
        raise PathTraversal(f"Path traversal blocked: {user_path!r}")

    rel_posix = os.path.relpath(real_candidate, real_root).replace(os.sep, "/")

    if is_denied_path(policy, rel_posix):
        raise AccessDenied(f"Access denied by policy: {rel_posix!r}")

    if not allow_dir and os.path.isdir(real_candidate):
        raise InvalidPath(f"Invalid path (directory): {user_path!r}")

    return ResolvedPath(abs_path=real_candidate, rel_path=rel_posix)


def ensure_parent_dir_exists(file_abs_path: str) -> None:
    os.makedirs(os.path.dirname(file_abs_path), exist_ok=True)


def list_files_recursive(policy: SandboxPolicy, max_files: int = DEFAULT_MAX_LIST_FILES) -> List[str]:
    """List regular files under the root as sorted POSIX relative paths.

    - deny-listed entries are skipped (and deny-listed dirs are not entered)
    - symlinks are neither followed nor reported
    - every directory is re-canonicalized and checked for containment right
      before it is scanned
    """
    real_root = policy.real_root
    results: List[str] = []
    stack: List[str] = [real_root]

    while stack and len(results) < max_files:
        dir_abs = stack.pop()
        if dir_abs != real_root and not is_strictly_within(real_path(dir_abs), real_root):
            log.warning("skipping directory that left the sandbox root: %s", dir_abs)
            continue
        try:
            with os.scandir(dir_abs) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError:
            continue

        subdirs: List[str] = []
        for entry in entries:
            if len(results) >= max_files:
                break
            rel = os.path.relpath(entry.path, real_root).replace(os.sep, "/")
            if not rel or is_denied_path(policy, rel):
                continue
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            if stat.S_ISLNK(st.st_mode):
                continue
            if stat.S_ISDIR(st.st_mode):
                subdirs.append(entry.path)
            elif stat.S_ISREG(st.st_mode):
                results.append(rel)

        # Reverse so the smallest name is scanned first.
        stack.extend(reversed(subdirs))

    return sorted(results)
