"""One agent turn: extract, validate, dedup, execute and classify."""

import asyncio
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from tool_loop.budget import ExecutionBudget
from tool_loop.commands import THOUGHT_ACTION, Command, TaskState, TaskStatus, ToolResult
from tool_loop.config import AgentModeConfig
from tool_loop.dedup import DedupFilter
from tool_loop.executor import DisplayHook, ResultHook, ToolExecutor
from tool_loop.history import HistoryEntry
from tool_loop.logging import get_logger
from tool_loop.parser import CommandParser, CommandValidator
from tool_loop.status import make_task_status, resolve_task_status
from tool_loop.tools.registry import ToolRegistry

log = get_logger(__name__)


@dataclass
class TurnOutcome:
    """Everything the UI and the continuation loop need about one turn."""

    processed_text: str
    status: TaskStatus
    tool_results: list[tuple[Command, ToolResult]] = field(default_factory=list)
    executed: list[tuple[Command, ToolResult]] = field(default_factory=list)
    reused: list[tuple[Command, ToolResult]] = field(default_factory=list)
    dropped: list[Command] = field(default_factory=list)
    finished: bool = False

    @property
    def has_tools(self) -> bool:
        return bool(self.tool_results or self.dropped)

    @property
    def limit_warning(self) -> bool:
        return self.status.status == TaskState.LIMIT_REACHED


def is_task_finished(tool_results: Iterable[tuple[Command, ToolResult]]) -> bool:
    """Whether any command or thought result signals the task is done."""
    for command, result in tool_results:
        if command.finished:
            return True
        if command.action == THOUGHT_ACTION and result.success and isinstance(result.data, dict):
            if result.data.get("finished") is True:
                return True
    return False


class AgentResponseHandler:
    """Runs a model reply through the tool pipeline for one turn."""

    def __init__(
        self,
        registry: ToolRegistry,
        budget: ExecutionBudget,
        timeout_ms: int = 30000,
        executor: ToolExecutor | None = None,
        parser: CommandParser | None = None,
        dedup: DedupFilter | None = None,
        display_hook: DisplayHook | None = None,
        result_hook: ResultHook | None = None,
    ):
        self.registry = registry
        self.budget = budget
        self.timeout_ms = timeout_ms
        self.executor = executor or ToolExecutor(registry, display_hook=display_hook, result_hook=result_hook)
        self.parser = parser or CommandParser(CommandValidator(registry))
        self.dedup = dedup or DedupFilter()

    @classmethod
    def from_config(
        cls,
        config: AgentModeConfig,
        registry: ToolRegistry,
        display_hook: DisplayHook | None = None,
        result_hook: ResultHook | None = None,
    ) -> "AgentResponseHandler":
        return cls(
            registry=registry,
            budget=ExecutionBudget(config.max_tool_calls),
            timeout_ms=config.timeout_ms,
            display_hook=display_hook,
            result_hook=result_hook,
        )

    async def process_response(
        self,
        response: str,
        history: Iterable[HistoryEntry | Mapping[str, Any]] | None = None,
        abort_event: asyncio.Event | None = None,
        context_label: str = "main",
        turn_key: str | None = None,
    ) -> TurnOutcome:
        """Process one reply; never raises for tool or parse failures.

        ``turn_key`` salts the request ids of commands the model left unnamed.
        Without it each call gets a random salt, so an unnamed command is a
        new occurrence in every turn and only explicit ``requestId`` values
        are deduplicated across turns.
        """
        salt = turn_key if turn_key is not None else uuid.uuid4().hex
        parsed = self.parser.parse_response(response, salt=salt)
        if not parsed.commands:
            log.debug("No tool commands in response", context=context_label)
            return TurnOutcome(
                processed_text=parsed.text,
                status=resolve_task_status([], self.budget),
                finished=parsed.finished,
            )

        history_entries = list(history) if history is not None else []
        fresh = self.dedup.filter(parsed.commands, history_entries)
        reused = self.dedup.resolve(parsed.commands, history_entries)

        executed: list[tuple[Command, ToolResult]] = []
        dropped: list[Command] = []
        aborted = False
        for index, command in enumerate(fresh):
            if abort_event is not None and abort_event.is_set():
                aborted = True
                break
            if self.budget.would_exceed(1):
                dropped = fresh[index:]
                log.warning(
                    "Tool execution limit reached, dropping commands",
                    dropped=len(dropped),
                    limit=self.budget.effective_limit,
                    context=context_label,
                )
                break
            result = await self.executor.execute_with_logging(
                command,
                self.timeout_ms,
                context_label=context_label,
                abort_event=abort_event,
            )
            self.budget.record(1)
            executed.append((command, result))

        settled = {id(command): result for command, result in [*reused, *executed]}
        tool_results = [
            (command, settled[id(command)])
            for command in parsed.commands
            if id(command) in settled
        ]
        finished = parsed.finished or is_task_finished(tool_results)

        if aborted or (abort_event is not None and abort_event.is_set()):
            status = make_task_status(TaskState.STOPPED, self.budget)
        else:
            status = resolve_task_status(executed, self.budget, budget_blocked=bool(dropped))

        return TurnOutcome(
            processed_text=parsed.text,
            status=status,
            tool_results=tool_results,
            executed=executed,
            reused=reused,
            dropped=dropped,
            finished=finished,
        )

    def reset_session(self) -> None:
        self.budget.reset()

    def add_tool_executions(self, count: int) -> int:
        return self.budget.add_temporary_allowance(count)

    def get_available_tools(self) -> list[dict[str, Any]]:
        return self.registry.get_definitions()
