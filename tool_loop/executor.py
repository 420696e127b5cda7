"""Execution coordinator: run one command with a timeout, never raise."""

import asyncio
import inspect
import time
from collections.abc import Callable
from typing import Any

from tool_loop.commands import Command, ToolResult
from tool_loop.exceptions import ToolError
from tool_loop.logging import get_logger
from tool_loop.tools.registry import ToolRegistry

log = get_logger(__name__)

DisplayHook = Callable[[Command, ToolResult], Any]
ResultHook = Callable[[ToolResult, Command], Any]


class ToolExecutor:
    """Invoke validated commands against the registry.

    Every settled call (success, failure, timeout) returns a ToolResult whose
    ``request_id`` echoes the command, then fires the display hook and the
    result hook. Hooks may be sync or async; async hooks run in the
    background and hook failures are logged, never surfaced.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        display_hook: DisplayHook | None = None,
        result_hook: ResultHook | None = None,
    ):
        self.registry = registry
        self.display_hook = display_hook
        self.result_hook = result_hook
        self._hook_tasks: set[asyncio.Task[Any]] = set()

    async def execute_with_timeout(
        self,
        command: Command,
        timeout_ms: int,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute ``command``; failures and timeouts become failed results."""
        if not self.registry.has_tool(command.action):
            result = ToolResult.fail(f"Tool not found: {command.action}")
        else:
            try:
                result = await self.registry.execute(
                    command.action,
                    command.parameters,
                    request_id=command.request_id,
                    abort_event=abort_event,
                    timeout_seconds=max(timeout_ms, 1) / 1000,
                )
            except ToolError as e:
                result = ToolResult.fail(str(e))
            except Exception as e:
                log.error("Unexpected tool failure", tool=command.action, error=str(e))
                result = ToolResult.fail(f"Tool execution failed: {e}")

        result = result.model_copy(update={"request_id": command.request_id})
        self._fire_hooks(command, result)
        return result

    async def execute_with_logging(
        self,
        command: Command,
        timeout_ms: int,
        context_label: str = "main",
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        started = time.monotonic()
        log.debug("Executing command", action=command.action, request_id=command.request_id, context=context_label)
        result = await self.execute_with_timeout(command, timeout_ms, abort_event=abort_event)
        log.info(
            "Command settled",
            action=command.action,
            request_id=command.request_id,
            success=result.success,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            context=context_label,
        )
        return result

    def _fire_hooks(self, command: Command, result: ToolResult) -> None:
        if self.display_hook is not None:
            self._call_hook("display", self.display_hook, command, result)
        if self.result_hook is not None:
            self._call_hook("result", self.result_hook, result, command)

    def _call_hook(self, label: str, hook: Callable[..., Any], *args: Any) -> None:
        try:
            outcome = hook(*args)
        except Exception as e:
            log.warning("Tool hook failed", hook=label, error=str(e))
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._hook_tasks.add(task)
            task.add_done_callback(lambda t, name=label: self._hook_done(name, t))

    def _hook_done(self, label: str, task: asyncio.Task[Any]) -> None:
        self._hook_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("Tool hook failed", hook=label, error=str(task.exception()))

    async def drain_hooks(self) -> None:
        """Wait for background async hooks to settle."""
        while self._hook_tasks:
            pending = list(self._hook_tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._hook_tasks.difference_update(pending)
