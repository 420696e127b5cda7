"""Multi-turn driver: ask the model, run its tools, feed results back."""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tool_loop.commands import Command, TaskState, TaskStatus, ToolResult
from tool_loop.exceptions import ConfigurationError
from tool_loop.formatting import ToolResultFormatter
from tool_loop.handler import AgentResponseHandler, TurnOutcome
from tool_loop.history import ConversationHistory
from tool_loop.llm import ChunkCallback, Message, ModelReplyProvider
from tool_loop.logging import get_logger, task_context
from tool_loop.status import make_task_status

log = get_logger(__name__)

TurnCallback = Callable[[TurnOutcome], Any]


@dataclass
class TaskOutcome:
    """Where a task stopped and what it produced."""

    content: str
    status: TaskStatus
    tool_results: list[tuple[Command, ToolResult]] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    turns: int = 0
    error: str | None = None

    @property
    def limit_reached(self) -> bool:
        return self.status.status == TaskState.LIMIT_REACHED

    @property
    def waiting_for_user(self) -> bool:
        return self.status.status == TaskState.WAITING_FOR_USER


class TaskContinuation:
    """Loop one task until it completes, blocks on the user, or runs out of budget.

    Each turn asks the reply provider for a response, hands it to the
    ``AgentResponseHandler`` and, while the task is still running, appends a
    ``system`` message with the tool results so the model can continue.
    The loop has no iteration cap of its own: the execution budget and the
    handler's status decide when it stops.
    """

    def __init__(
        self,
        handler: AgentResponseHandler,
        reply_provider: ModelReplyProvider | None = None,
        formatter: ToolResultFormatter | None = None,
        history: ConversationHistory | None = None,
        on_chunk: ChunkCallback | None = None,
        on_turn: TurnCallback | None = None,
    ):
        self.handler = handler
        self.reply_provider = reply_provider
        self.formatter = formatter or ToolResultFormatter()
        self.history = history if history is not None else ConversationHistory()
        self.on_chunk = on_chunk
        self.on_turn = on_turn
        self._state = TaskState.IDLE

    @property
    def state(self) -> TaskState:
        return self._state

    async def run(
        self,
        messages: list[Message],
        history: ConversationHistory | None = None,
        abort_event: asyncio.Event | None = None,
        reply: str | None = None,
        reset_budget: bool = True,
    ) -> TaskOutcome:
        """Run the loop from ``messages``.

        Args:
            messages: Conversation so far, ending with the prompt to answer.
            history: Overrides the history used for dedup and turn recording.
            abort_event: Stops the loop and any running tool when set.
            reply: A first model reply already in hand; skips the first request.
            reset_budget: Start a fresh budget session before the first turn.
        """
        task_id = uuid.uuid4().hex[:8]
        with task_context(task_id=task_id):
            return await self._run_loop(task_id, messages, history, abort_event, reply, reset_budget)

    async def _run_loop(
        self,
        task_id: str,
        messages: list[Message],
        history: ConversationHistory | None,
        abort_event: asyncio.Event | None,
        reply: str | None,
        reset_budget: bool,
    ) -> TaskOutcome:
        if reset_budget:
            self.handler.reset_session()
        history = history if history is not None else self.history
        conversation = list(messages)
        contents: list[str] = []
        tool_results: list[tuple[Command, ToolResult]] = []
        turns = 0
        error: str | None = None
        pending_reply = reply
        self._state = TaskState.RUNNING

        while True:
            if abort_event is not None and abort_event.is_set():
                status = make_task_status(TaskState.STOPPED, self.handler.budget)
                break

            if pending_reply is not None:
                text: str | None = pending_reply
                pending_reply = None
            else:
                try:
                    text = await self._request_reply(conversation, abort_event)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.error("Model reply failed", error=str(e), turn=turns + 1)
                    error = str(e)
                    status = make_task_status(TaskState.STOPPED, self.handler.budget)
                    break
                if text is None:
                    status = make_task_status(TaskState.STOPPED, self.handler.budget)
                    break

            if not text.strip():
                log.debug("Empty model reply, ending task", turn=turns + 1)
                status = make_task_status(TaskState.COMPLETED, self.handler.budget)
                break

            turns += 1
            conversation.append(Message(role="assistant", content=text))
            turn = await self.handler.process_response(
                text,
                history=history,
                abort_event=abort_event,
                context_label=f"turn-{turns}",
                turn_key=f"{task_id}:{turns}",
            )
            history.add_turn("assistant", text, turn.executed)
            if turn.processed_text:
                contents.append(turn.processed_text)
            tool_results.extend(turn.tool_results)
            status = turn.status
            self._notify_turn(turn)

            result_message = self.formatter.create_tool_result_message(turn.tool_results)
            if result_message is not None:
                conversation.append(result_message)

            if turn.finished and status.status != TaskState.STOPPED:
                status = make_task_status(TaskState.COMPLETED, self.handler.budget)
                break
            if status.status != TaskState.RUNNING:
                break

        self._state = status.status
        log.info(
            "Task loop stopped",
            status=status.status.value,
            turns=turns,
            executed=status.tool_execution_count,
            limit=status.max_tool_executions,
        )
        return TaskOutcome(
            content="\n\n".join(contents),
            status=status,
            tool_results=tool_results,
            messages=conversation,
            turns=turns,
            error=error,
        )

    async def resume(
        self,
        outcome: TaskOutcome,
        extra_allowance: int | None = None,
        user_message: str | None = None,
        abort_event: asyncio.Event | None = None,
        reset_budget: bool | None = None,
    ) -> TaskOutcome:
        """Continue a stopped task from its last message state.

        After ``limit_reached`` this is the user's "continue": the budget is
        reset, or the limit is raised by ``extra_allowance`` when given. Any
        other resume, such as answering a feedback question with
        ``user_message``, keeps the execution count. ``reset_budget``
        overrides that choice.
        """
        if reset_budget is None:
            reset_budget = outcome.limit_reached
        if extra_allowance is not None:
            self.handler.add_tool_executions(extra_allowance)
        elif reset_budget:
            self.handler.reset_session()
        messages = list(outcome.messages)
        if user_message:
            messages.append(Message(role="user", content=user_message))
            self.history.add_turn("user", user_message)
        return await self.run(messages, abort_event=abort_event, reset_budget=False)

    async def _request_reply(
        self,
        messages: list[Message],
        abort_event: asyncio.Event | None,
    ) -> str | None:
        """Ask the model for a reply; None when the abort event wins."""
        if self.reply_provider is None:
            raise ConfigurationError("No model reply provider configured")
        reply_task = asyncio.ensure_future(self.reply_provider(list(messages), on_chunk=self.on_chunk))
        if abort_event is None:
            return await reply_task

        abort_task = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {reply_task, abort_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if reply_task in done:
                return reply_task.result()

            log.info("Abort requested while waiting for model reply")
            reply_task.cancel()
            try:
                await reply_task
            except asyncio.CancelledError:
                pass
            return None
        finally:
            if not abort_task.done():
                abort_task.cancel()

    def _notify_turn(self, turn: TurnOutcome) -> None:
        if self.on_turn is None:
            return
        try:
            self.on_turn(turn)
        except Exception as e:
            log.warning("Turn callback failed", error=str(e))
