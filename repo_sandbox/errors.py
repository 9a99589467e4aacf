"""errors.py — failure taxonomy for repo_sandbox

Every component raises a subclass of ToolError. The dispatcher (repo_tools.py)
is the only place that catches them and turns them into data:

    {"kind": "<ClassName>", "message": "<str(exc)>"}
"""

from __future__ import annotations


class ToolError(Exception):
    """Base class for failures reported back to the caller."""

    @property
    def kind(self) -> str:
        return self.__class__.__name__


class SandboxViolation(ToolError):
    """Base class for path resolution failures."""


class InvalidPath(SandboxViolation):
    pass


class PathTraversal(SandboxViolation):
    pass


class AccessDenied(SandboxViolation):
    pass


class NotFound(ToolError):
    pass


class NotAFile(ToolError):
    pass


class TooLarge(ToolError):
    pass


class ReadRequired(ToolError):
    pass


class InvalidPatchFormat(ToolError):
    pass


class InvalidPatchLine(InvalidPatchFormat):
    pass


class NewFileBaseNotEmpty(ToolError):
    pass


class AmbiguousFragment(ToolError):
    pass


class BaselineNotFound(ToolError):
    pass


class InvalidBaselineLocation(ToolError):
    pass


class UnknownOperation(ToolError):
    pass


class InvalidArguments(ToolError):
    pass


class InvalidPolicy(ToolError):
    pass
