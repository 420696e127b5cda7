"""Format tool results for the model context and for display."""

import json
from typing import Any, Literal

from tool_loop.commands import Command, ToolResult
from tool_loop.llm import Message

FormatStyle = Literal["markdown", "copy", "plain"]


def stringify_json(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class ToolResultFormatter:
    """Render command/result pairs as plain text, markdown or copyable text."""

    @staticmethod
    def status_icon(success: bool, style: FormatStyle) -> str:
        if style == "markdown":
            return "✅" if success else "❌"
        if style == "copy":
            return "SUCCESS" if success else "ERROR"
        return "✓" if success else "✗"

    @staticmethod
    def result_context(command: Command, result: ToolResult) -> str:
        """Short extra detail shown next to a successful result."""
        if not result.success or not isinstance(result.data, dict):
            return ""
        data = result.data
        if data.get("filePath"):
            return f" [[{data['filePath']}]]"
        if command.action == "thought" and data.get("formattedThought"):
            return f"\n{data['formattedThought']}"
        if data.get("status") == "pending" and data.get("question"):
            return f": {data['question']}"
        return ""

    def format_tool_result(self, command: Command, result: ToolResult, style: FormatStyle = "plain") -> str:
        status = self.status_icon(result.success, style)
        payload = stringify_json(result.data) if result.success else result.error
        if style == "markdown":
            action = command.action.replace("_", " ")
            if result.success:
                return f"{status} **{action}** completed successfully{self.result_context(command, result)}"
            return f"{status} **{action}** failed: {result.error}"
        if style == "copy":
            return (
                f"TOOL EXECUTION: {command.action}\n"
                f"STATUS: {status}\n"
                f"PARAMETERS:\n{stringify_json(command.parameters)}\n"
                f"RESULT:\n{payload}"
            )
        return (
            f"{status} Tool: {command.action}\n"
            f"Parameters: {stringify_json(command.parameters)}\n"
            f"Result: {payload}"
        )

    def format_results_for_display(self, tool_results: list[tuple[Command, ToolResult]]) -> str:
        if not tool_results:
            return ""
        lines = [self.format_tool_result(command, result, "markdown") for command, result in tool_results]
        return "\n\n**Tool Execution:**\n" + "\n".join(lines)

    def create_tool_result_message(self, tool_results: list[tuple[Command, ToolResult]]) -> Message | None:
        """System message carrying results back to the model, or None."""
        if not tool_results:
            return None
        body = "\n\n".join(
            self.format_tool_result(command, result, "plain") for command, result in tool_results
        )
        return Message(role="system", content=f"Tool execution results:\n\n{body}")
