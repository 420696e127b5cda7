"""Error hierarchy for tool-loop.

Everything raised on purpose derives from ``ToolLoopError`` so callers can
catch the whole family in one place. Tool errors carry the tool name; the
executor turns them into failed ``ToolResult`` values instead of letting them
escape the task loop.
"""


class ToolLoopError(Exception):
    """Root of every tool-loop error."""


class ConfigurationError(ToolLoopError):
    """Bad or missing settings, or a component wired without a dependency it needs."""


class LLMError(ToolLoopError):
    """The model backend misbehaved (bad payload, decode failure)."""


class LLMAPIError(LLMError):
    """The model backend answered with an HTTP error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(ToolLoopError):
    """Something went wrong with a named tool."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """The tool raised, timed out, was aborted or returned garbage."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Tool '{tool_name}' failed: {message}")


class ToolNotFoundError(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool not found: {tool_name}")


class ToolBlockedError(ToolError):
    """The tool exists but the active policy disables it."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(tool_name, f"Tool '{tool_name}' blocked: {reason}")
        self.reason = reason


class ToolParametersError(ToolError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Invalid parameters for '{tool_name}': {message}")
