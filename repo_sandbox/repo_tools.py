"""repo_tools.py — named file-tree operations for an external decision-maker

This is the *kernel* the agent loop talks to. The caller picks an operation by
name and passes a JSON-like argument object; the result is always data:

    {"ok": true,  "result": {...}}
    {"ok": false, "error": {"kind": "ReadRequired", "message": "..."}}

Design notes:
  - The operation set is closed (Operation enum) and every member has a
    handler and a schema; arguments are validated generically against
    schemas.OPERATION_SCHEMAS before routing.
  - Session state lives in one explicit RepoSession: the policy, the read
    gate (paths read so far; only grows) and the baseline location.
  - Existing files must be read before write_file/delete_file/apply_patch.
  - A failed call never invalidates the session.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from jsonschema import Draft202012Validator

from . import line_diff
from .baseline_store import MAX_BASELINE_FILES, BaselineSnapshot, BaselineStore, FileEntry
from .diff_apply import apply_patch
from .errors import (
    InvalidArguments,
    NotAFile,
    NotFound,
    ReadRequired,
    SandboxViolation,
    TooLarge,
    ToolError,
    UnknownOperation,
)
from .schemas import OPERATION_SCHEMAS
from .security import (
    ResolvedPath,
    SandboxPolicy,
    ensure_parent_dir_exists,
    list_files_recursive,
    load_policy,
    resolve_in_root,
)

log = logging.getLogger(__name__)

LIST_SCAN_LIMIT = 5000
SEARCH_LINE_PREVIEW = 400

_NOTE_BY_KIND = {
    "InvalidPath": "invalid_path",
    "PathTraversal": "path_traversal",
    "AccessDenied": "access_denied",
}


class Operation(str, Enum):
    LIST_FILES = "list_files"
    READ_FILE = "read_file"
    READ_FILES_BATCH = "read_files_batch"
    WRITE_FILE = "write_file"
    DELETE_FILE = "delete_file"
    STAT_FILES_BATCH = "stat_files_batch"
    SEARCH_IN_FILES = "search_in_files"
    GET_BASELINE_INFO = "get_baseline_info"
    LIST_CHANGED_FILES = "list_changed_files"
    READ_FILE_ORIGINAL = "read_file_original"
    DIFF_FILE_AGAINST_ORIGINAL = "diff_file_against_original"
    DIFF_FILE_AGAINST_CURRENT = "diff_file_against_current"
    APPLY_PATCH = "apply_patch"


_VALIDATORS: Dict[str, Draft202012Validator] = {
    name: Draft202012Validator(spec["parameters"]) for name, spec in OPERATION_SCHEMAS.items()
}


@dataclass
class RepoSession:
    policy: SandboxPolicy
    store: BaselineStore = field(default_factory=BaselineStore)
    baseline_location: Optional[str] = None
    ledger: Optional[str] = None
    read_gate: Set[str] = field(default_factory=set)


def _read_bytes(abs_path: str) -> bytes:
    with open(abs_path, "rb") as f:
        return f.read()


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _filter_prefix(paths: List[str], prefix: Optional[str]) -> List[str]:
    prefix = (prefix or "").strip()
    return [p for p in paths if p.startswith(prefix)] if prefix else paths


class RepoTools:
    def __init__(self, session: RepoSession) -> None:
        self.session = session
        self._handlers: Dict[Operation, Callable[[Dict[str, Any]], Any]] = {
            Operation.LIST_FILES: self._list_files,
            Operation.READ_FILE: self._read_file,
            Operation.READ_FILES_BATCH: self._read_files_batch,
            Operation.WRITE_FILE: self._write_file,
            Operation.DELETE_FILE: self._delete_file,
            Operation.STAT_FILES_BATCH: self._stat_files_batch,
            Operation.SEARCH_IN_FILES: self._search_in_files,
            Operation.GET_BASELINE_INFO: self._get_baseline_info,
            Operation.LIST_CHANGED_FILES: self._list_changed_files,
            Operation.READ_FILE_ORIGINAL: self._read_file_original,
            Operation.DIFF_FILE_AGAINST_ORIGINAL: self._diff_file_against_original,
            Operation.DIFF_FILE_AGAINST_CURRENT: self._diff_file_against_current,
            Operation.APPLY_PATCH: self._apply_patch,
        }
        missing = [op.value for op in Operation if op not in self._handlers or op.value not in OPERATION_SCHEMAS]
        if missing:
            raise RuntimeError(f"Operations without handler or schema: {missing}")

    @property
    def policy(self) -> SandboxPolicy:
        return self.session.policy

    # -----------------------------
    # Contract
    # -----------------------------

    @staticmethod
    def tool_specs() -> List[Dict[str, Any]]:
        """Function-calling specs for the model, one per operation."""
        return [
            {
                "type": "function",
                "name": op.value,
                "description": OPERATION_SCHEMAS[op.value]["description"],
                "parameters": OPERATION_SCHEMAS[op.value]["parameters"],
            }
            for op in Operation
        ]

    def dispatch(self, name: Any, arguments: Any = None) -> Dict[str, Any]:
        started = time.monotonic()
        args = {} if arguments is None else arguments
        try:
            try:
                op = Operation(name)
            except (ValueError, TypeError):
                raise UnknownOperation(f"Unknown tool: {name!r}") from None
            self._validate(op, args)
            resp: Dict[str, Any] = {"ok": True, "result": self._handlers[op](args)}
        except ToolError as e:
            resp = {"ok": False, "error": {"kind": e.kind, "message": str(e)}}
        except (OSError, UnicodeError) as e:
            log.exception("operation %r failed", name)
            resp = {"ok": False, "error": {"kind": "InternalError", "message": f"{e.__class__.__name__}: {e}"}}

        self._audit(name, args, resp, duration_ms=(time.monotonic() - started) * 1000.0)
        return resp

    def _validate(self, op: Operation, args: Any) -> None:
        errors = sorted(_VALIDATORS[op.value].iter_errors(args), key=lambda e: list(e.path))
        if errors:
            details = "; ".join(
                f"{'/'.join(str(p) for p in e.path) or '<arguments>'}: {e.message}" for e in errors[:5]
            )
            raise InvalidArguments(f"Invalid arguments for {op.value}: {details}")

    def _audit(self, name: Any, args: Any, resp: Dict[str, Any], *, duration_ms: float) -> None:
        ledger = self.session.ledger
        if not ledger:
            return
        payload: Dict[str, Any] = {"name": str(name), "ok": resp["ok"], "duration_ms": round(duration_ms, 3)}
        if isinstance(args, dict) and isinstance(args.get("path"), str):
            payload["path"] = args["path"]
        if not resp["ok"]:
            payload["error_kind"] = resp["error"]["kind"]
        try:
            self.session.store.append_event(ledger, "tool/call", payload)
        except (OSError, UnicodeError, ValueError):
            log.warning("could not append to audit ledger %s", ledger, exc_info=True)

    # -----------------------------
    # Helpers
    # -----------------------------

    def _resolve(self, path: Any) -> ResolvedPath:
        return resolve_in_root(self.policy, path)

    def _require_read(self, rel: str, op: str) -> None:
        if rel not in self.session.read_gate:
            raise ReadRequired(f"MUST read_file before {op}: {rel}")

    def _load_baseline(self) -> BaselineSnapshot:
        location = self.session.baseline_location or self.session.store.location_for(self.policy)
        return self.session.store.load(self.policy, location)

    def _abs(self, rel: str) -> str:
        return os.path.join(self.policy.real_root, rel.replace("/", os.sep))

    def _changed_against(self, rel: str, entry: FileEntry) -> Optional[bool]:
        """True/False for modified/unchanged; None when only sizes could be compared."""
        abs_path = self._abs(rel)
        size = os.lstat(abs_path).st_size
        if size != entry.bytes:
            return True
        if entry.content is None:
            return None
        return _decode(_read_bytes(abs_path)) != entry.content

    # -----------------------------
    # Handlers
    # -----------------------------

    def _list_files(self, args: Dict[str, Any]) -> Dict[str, Any]:
        out = _filter_prefix(list_files_recursive(self.policy, LIST_SCAN_LIMIT), args.get("prefix"))
        limit = args.get("limit", 2000)
        return {"files": out[:limit], "total": len(out)}

    def _read_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        r = self._resolve(args["path"])
        if not os.path.exists(r.abs_path):
            raise NotFound(f"File not found: {r.rel_path}")
        if not os.path.isfile(r.abs_path):
            raise NotAFile(f"Not a file: {r.rel_path}")
        size = os.path.getsize(r.abs_path)
        if size > self.policy.max_read_bytes:
            raise TooLarge(
                f"File too large for read_file ({size} bytes > {self.policy.max_read_bytes}): {r.rel_path}"
            )
        data = _read_bytes(r.abs_path)
        self.session.read_gate.add(r.rel_path)
        return {"path": r.rel_path, "bytes": len(data), "content": _decode(data)}

    def _read_files_batch(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for p in args["paths"]:
            try:
                r = self._resolve(p)
            except SandboxViolation as e:
                out.append({"path": p, "bytes": 0, "content": None, "note": _NOTE_BY_KIND[e.kind]})
                continue
            if not os.path.exists(r.abs_path):
                out.append({"path": r.rel_path, "bytes": 0, "content": None, "note": "not_found"})
                continue
            if not os.path.isfile(r.abs_path):
                out.append({"path": r.rel_path, "bytes": 0, "content": None, "note": "not_file"})
                continue
            size = os.path.getsize(r.abs_path)
            if size > self.policy.max_read_bytes:
                out.append({"path": r.rel_path, "bytes": size, "content": None, "note": "too_large"})
                continue
            data = _read_bytes(r.abs_path)
            self.session.read_gate.add(r.rel_path)
            out.append({"path": r.rel_path, "bytes": len(data), "content": _decode(data)})
        return out

    def _write_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        r = self._resolve(args["path"])
        if os.path.exists(r.abs_path):
            if not os.path.isfile(r.abs_path):
                raise NotAFile(f"Not a file: {r.rel_path}")
            self._require_read(r.rel_path, "write_file")

        content = args["content"]
        size = len(content.encode("utf-8"))
        if size > self.policy.max_write_bytes:
            raise TooLarge(
                f"Content too large for write_file ({size} bytes > {self.policy.max_write_bytes}): {r.rel_path}"
            )

        ensure_parent_dir_exists(r.abs_path)
        with open(r.abs_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        return {"path": r.rel_path, "bytes": size}

    def _delete_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        r = self._resolve(args["path"])
        if not os.path.exists(r.abs_path):
            return {"path": r.rel_path, "deleted": False, "reason": "not_found"}
        if not os.path.isfile(r.abs_path):
            raise NotAFile(f"Not a file: {r.rel_path}")
        self._require_read(r.rel_path, "delete_file")
        os.remove(r.abs_path)
        return {"path": r.rel_path, "deleted": True}

    def _stat_files_batch(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for p in args["paths"]:
            try:
                r = resolve_in_root(self.policy, p, allow_dir=True)
            except SandboxViolation as e:
                out.append(
                    {"path": p, "exists": False, "is_file": False, "bytes": 0, "note": _NOTE_BY_KIND[e.kind]}
                )
                continue
            exists = os.path.exists(r.abs_path)
            is_file = exists and os.path.isfile(r.abs_path)
            size = os.path.getsize(r.abs_path) if is_file else 0
            out.append({"path": r.rel_path, "exists": exists, "is_file": is_file, "bytes": size})
        return out

    def _search_in_files(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = args["query"]
        limit_files = args.get("limit_files", 800)
        limit_matches = args.get("limit_matches", 200)

        files = _filter_prefix(list_files_recursive(self.policy, LIST_SCAN_LIMIT), args.get("prefix"))
        files = files[:limit_files]

        matches: List[Dict[str, Any]] = []
        for rel in files:
            if len(matches) >= limit_matches:
                break
            abs_path = self._abs(rel)
            try:
                st = os.lstat(abs_path)
                # Lister already drops symlinks; re-check in case the entry changed since.
                if os.path.islink(abs_path) or not os.path.isfile(abs_path):
                    continue
                if st.st_size > self.policy.max_read_bytes:
                    continue
                content = _decode(_read_bytes(abs_path))
            except OSError:
                continue
            if query not in content:
                continue
            for lineno, line in enumerate(content.split("\n"), start=1):
                if len(matches) >= limit_matches:
                    break
                if query in line:
                    matches.append({"path": rel, "line": lineno, "text": line.rstrip("\r")[:SEARCH_LINE_PREVIEW]})

        return {"query": query, "matches": matches, "scanned_files": len(files)}

    def _get_baseline_info(self, args: Dict[str, Any]) -> Dict[str, Any]:
        snap = self._load_baseline()
        return {"created_at": snap.created_at, "files": len(snap.files), "maxReadBytes": snap.max_read_bytes}

    def _list_changed_files(self, args: Dict[str, Any]) -> Dict[str, Any]:
        snap = self._load_baseline()
        prefix = args.get("prefix")
        limit = args.get("limit", 2000)

        baseline = _filter_prefix(sorted(snap.files), prefix)
        current = _filter_prefix(list_files_recursive(self.policy, MAX_BASELINE_FILES), prefix)
        baseline_set = set(baseline)
        current_set = set(current)

        modified: List[str] = []
        unverified: List[str] = []
        for rel in baseline:
            if rel not in current_set:
                continue
            try:
                changed = self._changed_against(rel, snap.files[rel])
            except OSError:
                continue
            if changed is None:
                unverified.append(rel)
            elif changed:
                modified.append(rel)

        return {
            "baseline_files": len(baseline),
            "current_files": len(current),
            "added": [p for p in current if p not in baseline_set][:limit],
            "deleted": [p for p in baseline if p not in current_set][:limit],
            "modified": modified[:limit],
            "unverified": unverified[:limit],
        }

    def _read_file_original(self, args: Dict[str, Any]) -> Dict[str, Any]:
        r = self._resolve(args["path"])
        entry = self._load_baseline().files.get(r.rel_path)
        if entry is None:
            return {"path": r.rel_path, "existed": False}
        out: Dict[str, Any] = {"path": r.rel_path, "existed": True, "bytes": entry.bytes, "content": entry.content}
        if entry.content is None:
            out["note"] = "too_large"
        return out

    def _current_for_diff(
        self, r: ResolvedPath, before: Optional[FileEntry], max_lines: Optional[int]
    ) -> Tuple[int, line_diff.TextDiff]:
        """Return (after_bytes, TextDiff) for a file that exists now."""
        data = _read_bytes(r.abs_path)
        after_bytes = len(data)
        if before is not None and before.content is None:
            return after_bytes, line_diff.compare_sizes_only(r.rel_path, before.bytes, after_bytes)
        before_text = before.content if before is not None else ""
        if after_bytes > self.policy.max_read_bytes:
            return after_bytes, line_diff.summarize_by_digest(
                r.rel_path,
                before_text.encode("utf-8"),
                data,
                reason=f"current file exceeds the read limit ({after_bytes} bytes > {self.policy.max_read_bytes})",
            )
        return after_bytes, line_diff.diff_texts(r.rel_path, before_text, _decode(data), max_lines)

    def _diff_file_against_original(self, args: Dict[str, Any]) -> Dict[str, Any]:
        r = self._resolve(args["path"])
        snap = self._load_baseline()
        entry = snap.files.get(r.rel_path)
        exists_now = os.path.isfile(r.abs_path)
        max_lines = args.get("max_lines")

        if exists_now:
            after_bytes, td = self._current_for_diff(r, entry, max_lines)
            if entry is None:
                status = "added"
            else:
                status = "modified" if td.changed else "unchanged"
        elif entry is None:
            raise NotFound(f"{r.rel_path} is neither in the baseline nor in the working tree")
        else:
            status = "deleted"
            after_bytes = 0
            if entry.content is None:
                td = line_diff.compare_sizes_only(r.rel_path, entry.bytes, 0)
            else:
                td = line_diff.diff_texts(r.rel_path, entry.content, "", max_lines)

        out: Dict[str, Any] = {
            "path": r.rel_path,
            "status": status,
            "summary": {
                "before_bytes": entry.bytes if entry is not None else 0,
                "after_bytes": after_bytes,
                "added_lines": td.added_lines,
                "removed_lines": td.removed_lines,
            },
        }
        if status != "unchanged" or td.note:
            out["diff_text"] = td.diff_text
        if td.note:
            out["note"] = td.note
        return out

    def _diff_file_against_current(self, args: Dict[str, Any]) -> Dict[str, Any]:
        r = self._resolve(args["path"])
        current = ""
        if os.path.exists(r.abs_path):
            if not os.path.isfile(r.abs_path):
                raise NotAFile(f"Not a file: {r.rel_path}")
            size = os.path.getsize(r.abs_path)
            if size > self.policy.max_read_bytes:
                raise TooLarge(
                    f"File too large to diff ({size} bytes > {self.policy.max_read_bytes}): {r.rel_path}"
                )
            current = _decode(_read_bytes(r.abs_path))

        td = line_diff.diff_texts(r.rel_path, current, args["proposed_content"], args.get("max_lines"))
        out: Dict[str, Any] = {"path": r.rel_path, "diff_text": td.diff_text}
        if td.note:
            out["note"] = td.note
        return out

    def _apply_patch(self, args: Dict[str, Any]) -> Dict[str, Any]:
        outcomes = apply_patch(self.policy, self.session.read_gate, args["patch"])
        return {"files": [o.to_dict() for o in outcomes]}


def open_session(
    root: str,
    *,
    store: Optional[BaselineStore] = None,
    capture_baseline: bool = True,
    audit: bool = True,
    policy_overrides: Optional[Mapping[str, Any]] = None,
) -> RepoTools:
    """Start a session on root: build the policy, capture the baseline, wire the ledger."""
    policy = load_policy(root, policy_overrides)
    store = store or BaselineStore()
    location = store.location_for(policy)
    store.check_location(policy, location)
    if capture_baseline:
        location, _snapshot = store.capture(policy)
    session = RepoSession(
        policy=policy,
        store=store,
        baseline_location=location,
        ledger=store.ledger_path(location) if audit else None,
    )
    if session.ledger:
        store.append_event(
            session.ledger,
            "session/start",
            {"root": policy.real_root, "baseline": location, "captured": capture_baseline},
        )
    log.info("session started for %s (baseline=%s)", policy.real_root, location)
    return RepoTools(session)
