"""Thought tool: records a reasoning step and the intended next tool."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tool_loop.commands import THOUGHT_ACTION, ToolResult, is_finished_marker
from tool_loop.logging import get_logger
from tool_loop.tools.registry import Tool, ToolContext

log = get_logger(__name__)


class ThoughtParameters(BaseModel):
    """Parameters of the ``thought`` action."""

    model_config = ConfigDict(populate_by_name=True)

    thought: str = Field(min_length=1)
    next_tool: str = Field(alias="nextTool", min_length=1)
    next_action_description: str | None = Field(default=None, alias="nextActionDescription")
    step: int | None = None
    total_steps: int | None = Field(default=None, alias="totalSteps")

    @model_validator(mode="before")
    @classmethod
    def _accept_reasoning_alias(cls, data: Any) -> Any:
        # Models often write "reasoning" instead of "thought".
        if isinstance(data, dict) and not str(data.get("thought") or "").strip() and data.get("reasoning"):
            data = {**data, "thought": data["reasoning"]}
        return data


class ThoughtTool(Tool):
    """Record reasoning and signal the next step, or completion."""

    name = THOUGHT_ACTION
    description = (
        "Plan your approach and summarize completion. Use at start (planning) "
        'and end (summary). Set nextTool to "finished" when the task is complete.'
    )
    parameters_model = ThoughtParameters
    timeout_seconds = 5.0

    @staticmethod
    def format_thought(params: dict[str, Any]) -> str:
        step = params.get("step")
        total = params.get("totalSteps")
        prefix = f"Step {step}/{total}: " if step and total else (f"Step {step}: " if step else "")
        lines = [f"{prefix}{params['thought']}"]
        if is_finished_marker(params.get("nextTool")):
            lines.append("Next: finished")
        else:
            description = params.get("nextActionDescription")
            suffix = f" ({description})" if description else ""
            lines.append(f"Next: {params['nextTool']}{suffix}")
        return "\n".join(lines)

    async def execute(self, parameters: dict[str, Any], context: ToolContext) -> ToolResult:
        finished = is_finished_marker(parameters.get("nextTool"))
        log.debug("Thought recorded", request_id=context.request_id, finished=finished)
        return ToolResult.ok(
            {
                **parameters,
                "finished": finished,
                "formattedThought": self.format_thought(parameters),
            },
            request_id=context.request_id,
        )
