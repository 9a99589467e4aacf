"""baseline_store.py

Filesystem-backed Baseline Store.

Captures a point-in-time snapshot of the sandboxed tree so later calls can
answer "what changed since the session started?".

Layout (one directory per sandbox root, outside that root):
    {cache_dir}/{sha256(real_root)[:16]}/
        baseline.json   {createdAt, maxReadBytes, files: {rel: {bytes, content|null}}}
        events.jsonl    append-only audit ledger of dispatched operations

Important:
- The location is derived from the root's canonical path, so capturing twice
  for the same root lands in the same place.
- A baseline location inside the sandbox root is always refused: the snapshot
  must never show up as (or be redirected to) repository content.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from jsonschema import Draft202012Validator

from .errors import BaselineNotFound, InvalidBaselineLocation
from .schemas import BASELINE_SCHEMA
from .security import SandboxPolicy, is_strictly_within, list_files_recursive, real_path

log = logging.getLogger(__name__)

CACHE_DIR_ENV = "REPO_SANDBOX_CACHE_DIR"
BASELINE_FILE = "baseline.json"
LEDGER_FILE = "events.jsonl"
MAX_BASELINE_FILES = 20_000


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def default_cache_dir() -> str:
    return os.environ.get(CACHE_DIR_ENV) or os.path.join(tempfile.gettempdir(), "repo_sandbox")


@dataclass
class FileEntry:
    bytes: int
    content: Optional[str]  # None when bytes > maxReadBytes at capture time


@dataclass
class BaselineSnapshot:
    created_at: str
    max_read_bytes: int
    files: Dict[str, FileEntry] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "createdAt": self.created_at,
            "maxReadBytes": self.max_read_bytes,
            "files": {rel: {"bytes": e.bytes, "content": e.content} for rel, e in self.files.items()},
        }

    @classmethod
    def from_json(cls, doc: Dict[str, Any]) -> "BaselineSnapshot":
        files = {
            rel: FileEntry(bytes=int(e["bytes"]), content=e.get("content"))
            for rel, e in doc["files"].items()
        }
        return cls(created_at=doc["createdAt"], max_read_bytes=int(doc["maxReadBytes"]), files=files)


class BaselineStore:
    """Creates and reads baseline snapshots under a cache directory."""

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = os.path.abspath(cache_dir or default_cache_dir())

    # -----------------------------
    # Locations
    # -----------------------------

    def location_for(self, policy: SandboxPolicy) -> str:
        key = _sha256_hex(policy.real_root.encode("utf-8"))[:16]
        return os.path.join(self.cache_dir, key, BASELINE_FILE)

    @staticmethod
    def ledger_path(location: str) -> str:
        return os.path.join(os.path.dirname(location), LEDGER_FILE)

    @staticmethod
    def check_location(policy: SandboxPolicy, location: str) -> str:
        """Return the real path of location, refusing anything inside the root."""
        if not isinstance(location, str) or not location.strip() or "\x00" in location:
            raise InvalidBaselineLocation(f"Invalid baseline location: {location!r}")
        real_loc = real_path(location)
        real_root = policy.real_root
        if real_loc == real_root or is_strictly_within(real_loc, real_root):
            raise InvalidBaselineLocation(
                f"Refusing baseline location inside the sandbox root: {location!r}"
            )
        return real_loc

    # -----------------------------
    # Snapshot lifecycle
    # -----------------------------

    def capture(self, policy: SandboxPolicy) -> Tuple[str, BaselineSnapshot]:
        """Snapshot the tree and persist it. Returns (location, snapshot)."""
        location = self.location_for(policy)
        self.check_location(policy, location)

        snapshot = BaselineSnapshot(created_at=_utc_now(), max_read_bytes=policy.max_read_bytes)
        real_root = policy.real_root
        for rel in list_files_recursive(policy, MAX_BASELINE_FILES):
            abs_path = os.path.join(real_root, rel.replace("/", os.sep))
            try:
                size = os.lstat(abs_path).st_size
                content: Optional[str] = None
                if size <= policy.max_read_bytes:
                    with open(abs_path, "rb") as f:
                        data = f.read()
                    size = len(data)
                    content = data.decode("utf-8", errors="replace")
            except OSError as e:
                log.warning("baseline: skipping unreadable file %s: %s", rel, e)
                continue
            snapshot.files[rel] = FileEntry(bytes=size, content=content)

        os.makedirs(os.path.dirname(location), exist_ok=True)
        with open(location, "w", encoding="utf-8") as f:
            json.dump(snapshot.to_json(), f, ensure_ascii=False)

        log.info("baseline captured: %d files -> %s", len(snapshot.files), location)
        return location, snapshot

    def load(self, policy: SandboxPolicy, location: str) -> BaselineSnapshot:
        real_loc = self.check_location(policy, location)
        try:
            with open(real_loc, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except FileNotFoundError:
            raise BaselineNotFound(f"Baseline not found: {location}") from None
        except (OSError, ValueError) as e:
            raise BaselineNotFound(f"Baseline unreadable or malformed: {location}: {e}") from e

        err = next(iter(Draft202012Validator(BASELINE_SCHEMA).iter_errors(doc)), None)
        if err is not None:
            raise BaselineNotFound(f"Baseline malformed: {location}: {err.message}")
        return BaselineSnapshot.from_json(doc)

    # -----------------------------
    # Ledger
    # -----------------------------

    def append_event(
        self,
        ledger: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        timestamp: Optional[str] = None,
    ) -> None:
        event = {"timestamp": timestamp or _utc_now(), "type": event_type, "payload": payload}
        os.makedirs(os.path.dirname(ledger), exist_ok=True)
        with open(ledger, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")

    def iter_events(self, ledger: str) -> Iterable[Dict[str, Any]]:
        if not os.path.exists(ledger):
            return
        with open(ledger, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except ValueError:
                    continue
