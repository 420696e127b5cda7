"""Per-turn task status resolution."""

from collections.abc import Sequence

from tool_loop.budget import ExecutionBudget
from tool_loop.commands import (
    USER_FEEDBACK_ACTION,
    Command,
    TaskState,
    TaskStatus,
    ToolResult,
)

_CONTINUABLE = {TaskState.RUNNING, TaskState.WAITING_FOR_USER}


def make_task_status(state: TaskState, budget: ExecutionBudget) -> TaskStatus:
    """Build a TaskStatus snapshot for ``state`` from the current budget."""
    return TaskStatus(
        status=state,
        tool_execution_count=budget.executed,
        max_tool_executions=budget.effective_limit,
        can_continue=state in _CONTINUABLE,
    )


def has_pending_feedback(executed: Sequence[tuple[Command, ToolResult]]) -> bool:
    return any(
        command.action == USER_FEEDBACK_ACTION and result.is_pending
        for command, result in executed
    )


def resolve_task_status(
    executed: Sequence[tuple[Command, ToolResult]],
    budget: ExecutionBudget,
    budget_blocked: bool = False,
) -> TaskStatus:
    """Classify a turn: completed, waiting_for_user, limit_reached or running.

    A pending feedback request wins over an exhausted budget. A turn that
    executed nothing is completed, unless commands were held back only
    because the budget was already spent (``budget_blocked``).
    """
    if not executed:
        state = TaskState.LIMIT_REACHED if budget_blocked else TaskState.COMPLETED
    elif has_pending_feedback(executed):
        state = TaskState.WAITING_FOR_USER
    elif budget.is_exhausted():
        state = TaskState.LIMIT_REACHED
    else:
        state = TaskState.RUNNING
    return make_task_status(state, budget)
