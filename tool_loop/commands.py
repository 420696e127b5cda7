"""Command, result and status data model shared by the tool loop."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

THOUGHT_ACTION = "thought"
USER_FEEDBACK_ACTION = "get_user_feedback"
FINISHED_MARKER = "finished"
NO_REQUEST_ID = "no-id"


def utc_now_iso() -> str:
    """Current UTC time as ISO 8601 text."""
    return datetime.now(timezone.utc).isoformat()


def canonical_json(value: Any) -> str:
    """Serialize value with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def is_finished_marker(value: Any) -> bool:
    """Whether value is the reserved "finished" marker (case-insensitive)."""
    return isinstance(value, str) and value.strip().lower() == FINISHED_MARKER


@dataclass
class Command:
    """A request to invoke a named tool."""

    action: str
    parameters: dict[str, Any]
    request_id: str = ""
    finished: bool = False

    def signature(self) -> tuple[str, str, str]:
        """Dedup signature: action, canonical parameters, request id."""
        return (
            str(self.action),
            canonical_json(self.parameters if self.parameters is not None else {}),
            self.request_id or NO_REQUEST_ID,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "parameters": self.parameters,
            "requestId": self.request_id,
            "finished": self.finished,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Command":
        return cls(
            action=data.get("action", ""),
            parameters=data.get("parameters") or {},
            request_id=str(data.get("requestId") or data.get("request_id") or ""),
            finished=bool(data.get("finished", False)),
        )


class ToolResult(BaseModel):
    """Outcome of executing a command."""

    success: bool = True
    data: Any = None
    error: str | None = None
    request_id: str = ""

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message and no data."""
        if not self.success:
            if not (self.error or "").strip():
                self.error = "Tool execution failed"
            self.data = None
        else:
            self.error = None
        return self

    @classmethod
    def ok(cls, data: Any = None, request_id: str = "") -> "ToolResult":
        return cls(success=True, data=data, request_id=request_id)

    @classmethod
    def fail(cls, error: str, request_id: str = "") -> "ToolResult":
        return cls(success=False, error=error, request_id=request_id)

    @property
    def is_pending(self) -> bool:
        """Whether the result is an unanswered user-interaction request."""
        return (
            self.success
            and isinstance(self.data, dict)
            and str(self.data.get("status", "")).lower() == "pending"
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "requestId": self.request_id}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(
            success=bool(data.get("success", False)),
            data=data.get("data"),
            error=data.get("error"),
            request_id=str(data.get("requestId") or data.get("request_id") or ""),
        )


@dataclass
class ExecutionRecord:
    """A command paired with its result, as stored in conversation history."""

    command: Command
    result: ToolResult
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command.to_dict(),
            "result": self.result.to_dict(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        return cls(
            command=Command.from_dict(data.get("command") or {}),
            result=ToolResult.from_dict(data.get("result") or {}),
            timestamp=str(data.get("timestamp") or utc_now_iso()),
        )


class TaskState(str, Enum):
    """Lifecycle states of an agent task."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    LIMIT_REACHED = "limit_reached"
    COMPLETED = "completed"
    STOPPED = "stopped"


class TaskStatus(BaseModel):
    """Per-turn task status reported to the UI."""

    status: TaskState
    tool_execution_count: int = 0
    max_tool_executions: int = 0
    can_continue: bool = False
    last_update_time: str = Field(default_factory=utc_now_iso)
