"""Tools package for tool-loop."""

from tool_loop.config import AgentModeConfig
from tool_loop.tools.registry import (
    Tool,
    ToolContext,
    ToolPolicy,
    ToolRegistry,
)
from tool_loop.tools.thought import ThoughtParameters, ThoughtTool
from tool_loop.tools.user_feedback import (
    FeedbackBroker,
    GetUserFeedbackTool,
    UserFeedbackParameters,
    UserFeedbackResponse,
)


def create_default_registry(
    agent_config: AgentModeConfig | None = None,
    broker: FeedbackBroker | None = None,
    extra_tools: list[Tool] | None = None,
) -> ToolRegistry:
    """Build a registry holding the built-in tools plus any extra ones."""
    agent_config = agent_config or AgentModeConfig()
    policy = None
    if agent_config.enabled_tools is not None:
        # thought and get_user_feedback drive the loop itself and stay enabled
        policy = ToolPolicy(
            allow=[*agent_config.enabled_tools, ThoughtTool.name, GetUserFeedbackTool.name]
        )
    registry = ToolRegistry(policy=policy)
    registry.register(ThoughtTool(), metadata={"builtin": True})
    registry.register(GetUserFeedbackTool(broker), metadata={"builtin": True})
    for tool in extra_tools or []:
        registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolContext",
    "ToolPolicy",
    "ToolRegistry",
    "ThoughtParameters",
    "ThoughtTool",
    "FeedbackBroker",
    "GetUserFeedbackTool",
    "UserFeedbackParameters",
    "UserFeedbackResponse",
    "create_default_registry",
]
