#!/usr/bin/env python3
"""
validate_baseline.py

Validate a persisted baseline snapshot (baseline.json) against the baseline
JSON Schema and its capture invariants:
  - content is null exactly when bytes > maxReadBytes

Usage:
  python tools/validate_baseline.py /path/to/baseline.json [--report report.json]

Exit codes:
  0 = valid
  1 = schema/invariant errors or parse errors
  2 = file not found
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from repo_sandbox.schemas import BASELINE_SCHEMA


def validate_baseline_file(path: Path) -> Dict[str, Any]:
    issues: List[Dict[str, str]] = []
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        return {"file": str(path), "valid": False, "files": 0, "issues": [{"kind": "parse_error", "path": "", "message": str(e)}]}

    for err in Draft202012Validator(BASELINE_SCHEMA).iter_errors(doc):
        issues.append({
            "kind": "schema_error",
            "path": ".".join(str(x) for x in err.absolute_path),
            "message": err.message,
        })

    files = doc.get("files") if isinstance(doc, dict) else None
    limit = doc.get("maxReadBytes") if isinstance(doc, dict) else None
    if not issues and isinstance(files, dict) and isinstance(limit, int):
        for rel, entry in sorted(files.items()):
            too_large = entry["bytes"] > limit
            if too_large and entry["content"] is not None:
                issues.append({"kind": "invariant", "path": rel, "message": "content stored for a file over maxReadBytes"})
            if not too_large and entry["content"] is None:
                issues.append({"kind": "invariant", "path": rel, "message": "content missing for a file within maxReadBytes"})

    return {
        "file": str(path),
        "valid": not issues,
        "files": len(files) if isinstance(files, dict) else 0,
        "issues": issues,
    }


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("baseline", type=Path, help="Path to baseline.json")
    ap.add_argument("--report", type=Path, default=None, help="Optional path to write JSON report")
    args = ap.parse_args()

    if not args.baseline.exists():
        print(f"ERROR: baseline not found: {args.baseline}", file=sys.stderr)
        return 2

    report = validate_baseline_file(args.baseline)
    print(f"File: {report['file']}")
    print(f"Files: {report['files']}")
    print(f"Valid: {report['valid']}")
    N = 25
    for i, issue in enumerate(report["issues"][:N], start=1):
        loc = f" path={issue['path']}" if issue["path"] else ""
        print(f"  {i}.{loc}: {issue['kind']}: {issue['message']}")
    if len(report["issues"]) > N:
        print(f"  ... ({len(report['issues']) - N} more)")

    if args.report is not None:
        args.report.parent.mkdir(parents=True, exist_ok=True)
        with args.report.open("w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
        print(f"Wrote report: {args.report}")

    return 0 if report["valid"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
