"""Typed errors raised by the managers and surfaced to tool callers.

Every error carries a human-readable ``suggestion`` that is forwarded to
websocket and REST clients alongside the message.
"""
from __future__ import annotations

from typing import Any


class CoachDashError(Exception):
    """Base class for all errors that reach the tool-execution boundary."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def suggestion(self) -> str:
        return "Check the request and try again."

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "type": type(self).__name__,
            "suggestion": self.suggestion,
        }


class SessionNotFoundError(CoachDashError):
    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id

    @property
    def suggestion(self) -> str:
        return (
            "Check that the session ID is correct and the session has been started. "
            "Use the session_history tool to list known sessions."
        )


class ProjectNotFoundError(CoachDashError):
    def __init__(self, project_ref: str):
        super().__init__(f"Project '{project_ref}' not found")
        self.project_ref = project_ref

    @property
    def suggestion(self) -> str:
        return "Check the project ID. Projects are created by session_start or project_track."


class BlockerNotFoundError(CoachDashError):
    def __init__(self, blocker_id: str):
        super().__init__(f"Blocker '{blocker_id}' not found")
        self.blocker_id = blocker_id

    @property
    def suggestion(self) -> str:
        return "Check the blocker ID returned by blocker_report."


class SnapshotNotFoundError(CoachDashError):
    def __init__(self, snapshot_id: str):
        super().__init__(f"Reality snapshot '{snapshot_id}' not found")
        self.snapshot_id = snapshot_id

    @property
    def suggestion(self) -> str:
        return "Run reality_check first and use the snapshot_id it returns."


class ContextExhaustedError(CoachDashError):
    def __init__(self, used: int, total: int):
        percent = round(used / total * 100) if total else 100
        super().__init__(f"Context budget exhausted: {used}/{total} tokens used ({percent}%)")
        self.used = used
        self.total = total

    @property
    def suggestion(self) -> str:
        return (
            "Create a checkpoint to save progress and start a new session, "
            "or use context_optimize to reduce token usage."
        )


class InvalidParametersError(CoachDashError):
    def __init__(self, message: str, missing_params: list[str] | None = None):
        super().__init__(message)
        self.missing_params = list(missing_params or [])

    @property
    def suggestion(self) -> str:
        if self.missing_params:
            return (
                f"Missing required parameters: {', '.join(self.missing_params)}. "
                "Please provide all required parameters."
            )
        return "Check the parameter format and ensure all required fields are provided."


class SessionNotActiveError(InvalidParametersError):
    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session '{session_id}' is not active (status: {status})")
        self.session_id = session_id
        self.status = status

    @property
    def suggestion(self) -> str:
        return "Only active sessions accept checkpoints. Start a new session continuing from this one."


class UnknownToolError(InvalidParametersError):
    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool '{tool_name}'")
        self.tool_name = tool_name

    @property
    def suggestion(self) -> str:
        return "List available tools with GET /api/tools."


class CommitFailedError(CoachDashError):
    def __init__(self, detail: str):
        super().__init__(f"Git commit failed: {detail}")
        self.detail = detail

    @property
    def suggestion(self) -> str:
        return "Resolve the git error (or pass force=true to checkpoint without committing)."


class ReconnectExhaustedError(CoachDashError):
    def __init__(self, attempts: int):
        super().__init__(f"Gave up reconnecting after {attempts} attempts")
        self.attempts = attempts

    @property
    def suggestion(self) -> str:
        return "Check that the CoachDash server is running and reachable, then reconnect."


class DatabaseError(CoachDashError):
    def __init__(self, operation: str, original: BaseException):
        super().__init__(f"Database operation '{operation}' failed: {original}")
        self.operation = operation
        self.original = original

    @property
    def suggestion(self) -> str:
        detail = str(self.original)
        if "locked" in detail:
            return "The database is locked. Try again in a moment or restart the server."
        if "no such table" in detail:
            return "Database schema is missing. The database may need to be initialized."
        return "Check database connectivity and permissions."


class ToolExecutionError(CoachDashError):
    def __init__(self, tool_name: str, original: BaseException):
        super().__init__(f"Tool '{tool_name}' execution failed: {original}")
        self.tool_name = tool_name
        self.original = original

    @property
    def suggestion(self) -> str:
        if isinstance(self.original, CoachDashError):
            return self.original.suggestion
        return f"Check the parameters for the '{self.tool_name}' tool and ensure they match the expected format."


def format_error(error: BaseException) -> str:
    """Render an error with its suggestion for user display."""
    if isinstance(error, CoachDashError):
        return f"{error.message}\n\nSuggestion: {error.suggestion}"
    return f"Error: {error}"
