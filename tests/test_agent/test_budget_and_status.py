import threading

import pytest

from tool_loop.budget import ExecutionBudget
from tool_loop.commands import Command, TaskState, ToolResult
from tool_loop.status import has_pending_feedback, resolve_task_status


def _executed(*results: tuple[str, ToolResult]) -> list[tuple[Command, ToolResult]]:
    return [(Command(action=action, parameters={}), result) for action, result in results]


def test_budget_counts_against_limit():
    budget = ExecutionBudget(3)

    assert budget.would_exceed(3) is False
    assert budget.would_exceed(4) is True
    budget.record()
    budget.record(2)

    assert budget.executed == 3
    assert budget.remaining() == 0
    assert budget.is_exhausted() is True
    assert budget.would_exceed() is True


def test_budget_zero_limit_is_exhausted_immediately():
    budget = ExecutionBudget(0)

    assert budget.is_exhausted() is True
    assert budget.would_exceed() is True


def test_budget_rejects_negative_values():
    with pytest.raises(ValueError):
        ExecutionBudget(-1)
    with pytest.raises(ValueError):
        ExecutionBudget(1).record(-1)
    with pytest.raises(ValueError):
        ExecutionBudget(1).add_temporary_allowance(-2)


def test_temporary_allowance_is_additive_until_reset():
    budget = ExecutionBudget(5)
    budget.record(5)

    assert budget.add_temporary_allowance(2) == 7
    assert budget.add_temporary_allowance(1) == 8
    assert budget.remaining() == 3

    budget.reset()
    assert budget.executed == 0
    assert budget.effective_limit == 5
    assert budget.stats() == {"executed": 0, "limit": 5, "remaining": 5, "temporary_limit": None}


def test_budget_record_is_thread_safe():
    budget = ExecutionBudget(10_000)

    def worker() -> None:
        for _ in range(500):
            budget.record()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert budget.executed == 4000


def test_status_completed_when_nothing_executed():
    status = resolve_task_status([], ExecutionBudget(5))

    assert status.status == TaskState.COMPLETED
    assert status.can_continue is False


def test_status_limit_reached_when_commands_were_held_back():
    budget = ExecutionBudget(0)

    status = resolve_task_status([], budget, budget_blocked=True)

    assert status.status == TaskState.LIMIT_REACHED


def test_status_running_while_budget_remains():
    budget = ExecutionBudget(5)
    budget.record()

    status = resolve_task_status(_executed(("shell", ToolResult.ok("ok"))), budget)

    assert status.status == TaskState.RUNNING
    assert status.can_continue is True
    assert status.tool_execution_count == 1
    assert status.max_tool_executions == 5


def test_status_limit_reached_when_budget_exhausted():
    budget = ExecutionBudget(1)
    budget.record()

    status = resolve_task_status(_executed(("shell", ToolResult.fail("boom"))), budget)

    assert status.status == TaskState.LIMIT_REACHED
    assert status.can_continue is False


def test_pending_feedback_beats_exhausted_budget():
    budget = ExecutionBudget(1)
    budget.record()
    executed = _executed(("get_user_feedback", ToolResult.ok({"status": "pending", "question": "?"})))

    status = resolve_task_status(executed, budget)

    assert has_pending_feedback(executed) is True
    assert status.status == TaskState.WAITING_FOR_USER
    assert status.can_continue is True


def test_answered_feedback_is_not_pending():
    executed = _executed(("get_user_feedback", ToolResult.ok({"status": "answered"})))

    assert has_pending_feedback(executed) is False
