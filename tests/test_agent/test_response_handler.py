import asyncio
import json

import pytest

from tool_loop.budget import ExecutionBudget
from tool_loop.commands import Command, ExecutionRecord, TaskState, ToolResult
from tool_loop.config import AgentModeConfig
from tool_loop.handler import AgentResponseHandler, is_task_finished
from tool_loop.history import HistoryEntry
from tool_loop.tools import create_default_registry
from tool_loop.tools.registry import Tool


class CounterTool(Tool):
    name = "counter"
    description = "Counts calls"

    def __init__(self):
        self.calls: list[dict] = []

    async def execute(self, parameters, context):
        self.calls.append(dict(parameters))
        return ToolResult.ok({"count": len(self.calls)})


def _handler(limit: int = 5) -> tuple[AgentResponseHandler, CounterTool]:
    counter = CounterTool()
    registry = create_default_registry(extra_tools=[counter])
    return AgentResponseHandler(registry, ExecutionBudget(limit), timeout_ms=1000), counter


def _commands(*numbers: int) -> str:
    return "\n".join(json.dumps({"action": "counter", "parameters": {"n": n}}) for n in numbers)


@pytest.mark.asyncio
async def test_plain_reply_completes_without_tools():
    handler, counter = _handler()

    turn = await handler.process_response("Just an answer.")

    assert turn.processed_text == "Just an answer."
    assert turn.has_tools is False
    assert turn.status.status == TaskState.COMPLETED
    assert counter.calls == []


@pytest.mark.asyncio
async def test_executes_commands_in_order_and_keeps_running():
    handler, counter = _handler()

    turn = await handler.process_response("Counting.\n" + _commands(1, 2))

    assert [c["n"] for c in counter.calls] == [1, 2]
    assert turn.processed_text == "Counting."
    assert [result.data["count"] for _, result in turn.tool_results] == [1, 2]
    assert turn.status.status == TaskState.RUNNING
    assert turn.status.tool_execution_count == 2


@pytest.mark.asyncio
async def test_budget_stops_execution_and_drops_the_rest():
    handler, counter = _handler(limit=3)

    turn = await handler.process_response(_commands(1, 2, 3, 4, 5))

    assert len(counter.calls) == 3
    assert len(turn.executed) == 3
    assert [c.parameters["n"] for c in turn.dropped] == [4, 5]
    assert turn.status.status == TaskState.LIMIT_REACHED
    assert turn.status.can_continue is False
    assert turn.limit_warning is True


@pytest.mark.asyncio
async def test_spent_budget_reports_limit_without_executing():
    handler, counter = _handler(limit=0)

    turn = await handler.process_response(_commands(1))

    assert counter.calls == []
    assert turn.status.status == TaskState.LIMIT_REACHED


@pytest.mark.asyncio
async def test_failed_commands_still_count_against_budget():
    handler, _ = _handler(limit=2)

    turn = await handler.process_response('{"action": "thought", "parameters": {"thought": "missing next"}}')

    assert turn.tool_results[0][1].success is False
    assert handler.budget.executed == 1


@pytest.mark.asyncio
async def test_commands_in_history_are_reused_not_rerun():
    handler, counter = _handler()
    reply = '{"action": "counter", "parameters": {"n": 1}, "requestId": "r1"}'
    cached = ToolResult.ok({"count": 99}, request_id="r1")
    history = [
        HistoryEntry(
            role="assistant",
            content=reply,
            tool_results=[
                ExecutionRecord(Command(action="counter", parameters={"n": 1}, request_id="r1"), cached)
            ],
        )
    ]

    turn = await handler.process_response(reply, history=history)

    assert counter.calls == []
    assert turn.executed == []
    assert turn.tool_results[0][1].data == {"count": 99}
    assert turn.status.status == TaskState.COMPLETED


@pytest.mark.asyncio
async def test_pending_feedback_waits_for_user():
    handler, _ = _handler()

    turn = await handler.process_response(
        '{"action": "get_user_feedback", "parameters": {"question": "Which file?"}}'
    )

    assert turn.status.status == TaskState.WAITING_FOR_USER
    assert turn.status.can_continue is True


@pytest.mark.asyncio
async def test_thought_with_finished_marks_turn_finished():
    handler, _ = _handler()

    turn = await handler.process_response('Done.\n{"thought": "Everything is counted", "nextTool": "finished"}')

    assert turn.finished is True
    assert turn.processed_text == "Done."


@pytest.mark.asyncio
async def test_abort_before_execution_stops_turn():
    handler, counter = _handler()
    abort_event = asyncio.Event()
    abort_event.set()

    turn = await handler.process_response(_commands(1, 2), abort_event=abort_event)

    assert counter.calls == []
    assert turn.status.status == TaskState.STOPPED


@pytest.mark.asyncio
async def test_from_config_uses_agent_mode_limits():
    registry = create_default_registry()
    handler = AgentResponseHandler.from_config(AgentModeConfig(max_tool_calls=7, timeout_ms=1234), registry)

    assert handler.budget.limit == 7
    assert handler.timeout_ms == 1234
    assert {d["name"] for d in handler.get_available_tools()} == {"thought", "get_user_feedback"}
    assert handler.add_tool_executions(3) == 10


def test_finished_detection_from_thought_results():
    thought = Command(action="thought", parameters={})

    assert is_task_finished([(thought, ToolResult.ok({"finished": True}))]) is True
    assert is_task_finished([(thought, ToolResult.ok({"finished": False}))]) is False
    assert is_task_finished([(Command(action="x", parameters={}, finished=True), ToolResult.ok())]) is True


@pytest.mark.asyncio
async def test_unnamed_command_from_an_earlier_turn_runs_again():
    handler, counter = _handler()
    first = await handler.process_response(_commands(1))
    records = [ExecutionRecord(command, result) for command, result in first.executed]
    history = [HistoryEntry(role="assistant", content=_commands(1), tool_results=records)]

    second = await handler.process_response(_commands(1), history=history)

    assert len(counter.calls) == 2
    assert second.reused == []
    assert second.tool_results[0][1].data == {"count": 2}


@pytest.mark.asyncio
async def test_same_turn_key_gives_same_ids():
    handler, counter = _handler()

    first = await handler.process_response(_commands(1), turn_key="t:1")
    second = await handler.process_response(_commands(1), turn_key="t:1")

    assert first.executed[0][0].request_id == second.executed[0][0].request_id
    assert len(counter.calls) == 2
