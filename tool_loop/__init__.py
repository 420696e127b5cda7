"""tool-loop - a tool-invocation loop for LLM agents driven by JSON commands."""

__version__ = "0.1.0"

from tool_loop.budget import ExecutionBudget
from tool_loop.commands import Command, TaskState, TaskStatus, ToolResult
from tool_loop.config import Config
from tool_loop.continuation import TaskContinuation, TaskOutcome
from tool_loop.handler import AgentResponseHandler, TurnOutcome
from tool_loop.history import ConversationHistory, HistoryEntry
from tool_loop.parser import CommandParser, CommandValidator
from tool_loop.tools import ToolRegistry, create_default_registry

__all__ = [
    "AgentResponseHandler",
    "Command",
    "CommandParser",
    "CommandValidator",
    "Config",
    "ConversationHistory",
    "ExecutionBudget",
    "HistoryEntry",
    "TaskContinuation",
    "TaskOutcome",
    "TaskState",
    "TaskStatus",
    "ToolRegistry",
    "ToolResult",
    "TurnOutcome",
    "__version__",
    "create_default_registry",
]
