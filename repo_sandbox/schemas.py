"""schemas.py — JSON Schemas for the operation contract, policy overrides and
the persisted baseline document.

All schemas target Draft 2020-12 and are validated with jsonschema. The
operation table is the single source of truth for argument shapes: the
dispatcher validates against it and tool_specs() publishes it.
"""

from __future__ import annotations

from typing import Any, Dict

_PATH = {"type": "string", "description": "Relative path inside repo."}
_PREFIX = {"type": "string", "description": "Optional path prefix filter (POSIX, e.g. 'src/')."}
_MAX_LINES = {
    "type": "integer",
    "minimum": 1,
    "maximum": 10000,
    "description": "Max number of diff body lines (default 2000).",
}


def _params(properties: Dict[str, Any], required: tuple = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
    }
    if required:
        schema["required"] = list(required)
    return schema


OPERATION_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "list_files": {
        "description": "List files in the repository. Returns relative POSIX paths. "
        "Denylisted dirs/files and symlinks are excluded.",
        "parameters": _params(
            {
                "prefix": _PREFIX,
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 5000,
                    "description": "Max number of files to return (default 2000).",
                },
            }
        ),
    },
    "read_file": {
        "description": "Read a text file from repo. MUST be called before modifying a file. "
        "Denylist and size limit apply.",
        "parameters": _params({"path": _PATH}, ("path",)),
    },
    "read_files_batch": {
        "description": "Read up to 50 files at once. Unreadable entries carry a note "
        "(not_found, not_file, too_large) and null content. Successful reads unlock writes.",
        "parameters": _params(
            {"paths": {"type": "array", "items": {"type": "string"}, "minItems": 1, "maxItems": 50}},
            ("paths",),
        ),
    },
    "write_file": {
        "description": "Write (create/overwrite) a text file inside repo. Provide full new file "
        "content. Existing files must be read first. Denylist and size limit apply.",
        "parameters": _params(
            {"path": _PATH, "content": {"type": "string", "description": "Full new file content."}},
            ("path", "content"),
        ),
    },
    "delete_file": {
        "description": "Delete a file inside repo. The file must be read first. Denylist applies.",
        "parameters": _params({"path": _PATH}, ("path",)),
    },
    "stat_files_batch": {
        "description": "Report existence, type and size for up to 200 paths.",
        "parameters": _params(
            {"paths": {"type": "array", "items": {"type": "string"}, "minItems": 1, "maxItems": 200}},
            ("paths",),
        ),
    },
    "search_in_files": {
        "description": "Search for a substring in text files (simple contains). Returns matches "
        "with file and line numbers. Denylist and max file size apply.",
        "parameters": _params(
            {
                "query": {"type": "string", "minLength": 1, "description": "Substring to search for."},
                "prefix": _PREFIX,
                "limit_files": {"type": "integer", "minimum": 1, "maximum": 2000},
                "limit_matches": {"type": "integer", "minimum": 1, "maximum": 2000},
            },
            ("query",),
        ),
    },
    "get_baseline_info": {
        "description": "Describe the baseline snapshot captured at session start.",
        "parameters": _params({}),
    },
    "list_changed_files": {
        "description": "List files added, deleted or modified since the baseline snapshot.",
        "parameters": _params(
            {"prefix": _PREFIX, "limit": {"type": "integer", "minimum": 1, "maximum": 5000}}
        ),
    },
    "read_file_original": {
        "description": "Read a file as it was when the baseline snapshot was captured.",
        "parameters": _params({"path": _PATH}, ("path",)),
    },
    "diff_file_against_original": {
        "description": "Unified diff of a file between the baseline snapshot and the working tree.",
        "parameters": _params({"path": _PATH, "max_lines": _MAX_LINES}, ("path",)),
    },
    "diff_file_against_current": {
        "description": "Unified diff between the current file and proposed content. Never writes.",
        "parameters": _params(
            {
                "path": _PATH,
                "proposed_content": {"type": "string"},
                "max_lines": _MAX_LINES,
            },
            ("path", "proposed_content"),
        ),
    },
    "apply_patch": {
        "description": "Apply a simplified unified diff ('--- a/<path>' + '+++ b/<path>' followed by "
        "' ', '+', '-' lines, no @@ headers). The removed+context lines must occur exactly once "
        "in the file. All sections are validated before anything is written.",
        "parameters": _params({"patch": {"type": "string", "minLength": 1}}, ("patch",)),
    },
}


_NAME_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}

POLICY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "deny_dirs": _NAME_LIST,
        "deny_files_exact": _NAME_LIST,
        "deny_extensions": {"type": "array", "items": {"type": "string", "pattern": r"^\.[^/\\]+$"}},
        "max_read_bytes": {"type": "integer", "minimum": 1},
        "max_write_bytes": {"type": "integer", "minimum": 1},
    },
}


BASELINE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["createdAt", "maxReadBytes", "files"],
    "properties": {
        "createdAt": {"type": "string"},
        "maxReadBytes": {"type": "integer", "minimum": 0},
        "files": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["bytes", "content"],
                "properties": {
                    "bytes": {"type": "integer", "minimum": 0},
                    "content": {"type": ["string", "null"]},
                },
            },
        },
    },
}
