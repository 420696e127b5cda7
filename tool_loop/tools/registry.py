"""Capability registry: the ``Tool`` contract, allow/deny policy and guarded execution."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from tool_loop.commands import ToolResult
from tool_loop.exceptions import (
    ToolBlockedError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolParametersError,
)
from tool_loop.logging import get_logger

log = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0


def _policy_key(name: str) -> str:
    return str(name or "").strip().lower()


@dataclass
class ToolContext:
    """Per-call context handed to a tool.

    ``abort_event`` is set when the call is aborted or runs out of time;
    long-running tools should check it and stop early.
    """

    request_id: str = ""
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    metadata: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """A named capability the model can invoke.

    Declare ``parameters_model`` to have arguments validated and normalized by
    pydantic before ``execute`` runs; otherwise ``parameters`` is a JSON schema
    whose ``required`` list is checked and the raw mapping is passed through.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    parameters_model: type[BaseModel] | None = None
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, parameters: dict[str, Any], context: ToolContext) -> ToolResult:
        """Run the tool and return its result.

        A plain ``{"success": ..., "data"/"error": ...}`` dict is accepted too.
        """

    def get_definition(self) -> dict[str, Any]:
        """Name, description and parameter schema, for the model prompt."""
        schema = self.parameters
        if not schema and self.parameters_model is not None:
            schema = self.parameters_model.model_json_schema(by_alias=True)
        return {"name": self.name, "description": self.description, "parameters": schema}

    def validate_parameters(self, parameters: dict[str, Any]) -> dict[str, Any]:
        """Return normalized parameters or raise ``ToolParametersError``."""
        if self.parameters_model is not None:
            try:
                validated = self.parameters_model.model_validate(parameters)
            except ValidationError as e:
                raise ToolParametersError(self.name, str(e)) from e
            return validated.model_dump(by_alias=True, exclude_none=True)

        schema = self.parameters if isinstance(self.parameters, dict) else {}
        missing = [key for key in schema.get("required", []) if key not in parameters]
        if missing:
            raise ToolParametersError(self.name, f"Missing required argument: {missing[0]}")
        return dict(parameters)


class ToolPolicy(BaseModel):
    """Which tools are enabled: ``allow`` (None = all) minus ``deny``."""

    allow: list[str] | None = None
    deny: list[str] = Field(default_factory=list)

    def permits(self, name: str) -> bool:
        key = _policy_key(name)
        if key in {_policy_key(n) for n in self.deny}:
            return False
        return self.allow is None or key in {_policy_key(n) for n in self.allow}


@dataclass
class _Registration:
    tool: Tool
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Name → tool lookup plus policy-filtered, time-bounded execution."""

    def __init__(self, policy: ToolPolicy | dict[str, Any] | None = None):
        self._registrations: dict[str, _Registration] = {}
        self._policy = self._as_policy(policy)

    @staticmethod
    def _as_policy(policy: ToolPolicy | dict[str, Any] | None) -> ToolPolicy | None:
        if policy is None or isinstance(policy, ToolPolicy):
            return policy
        if isinstance(policy, dict):
            return ToolPolicy.model_validate(policy)
        raise TypeError(f"Expected ToolPolicy or dict, got {type(policy).__name__}")

    def set_policy(self, policy: ToolPolicy | dict[str, Any] | None) -> None:
        self._policy = self._as_policy(policy)

    def _enabled(self, name: str) -> bool:
        return self._policy is None or self._policy.permits(name)

    def register(self, tool: Tool, metadata: dict[str, Any] | None = None) -> None:
        """Add or replace a tool. Replacing keeps old metadata unless new is given."""
        if not tool.name:
            raise ValueError("Cannot register a tool without a name")
        previous = self._registrations.get(tool.name)
        if metadata is not None:
            kept = dict(metadata)
        else:
            kept = previous.metadata if previous is not None else {}
        self._registrations[tool.name] = _Registration(tool=tool, metadata=kept)
        log.debug("Tool registered", tool=tool.name, replaced=previous is not None)

    def unregister(self, name: str) -> None:
        self._registrations.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Whether ``name`` is registered and enabled by the policy."""
        return isinstance(name, str) and name in self._registrations and self._enabled(name)

    def get_tool_metadata(self, name: str) -> dict[str, Any]:
        registration = self._registrations.get(name)
        return dict(registration.metadata) if registration is not None else {}

    def get(self, name: str) -> Tool:
        """Look up a registered tool, enabled or not."""
        registration = self._registrations.get(name)
        if registration is None:
            raise ToolNotFoundError(name)
        return registration.tool

    def list_tools(self) -> list[str]:
        """Enabled tool names, in registration order."""
        return [name for name in self._registrations if self._enabled(name)]

    def known_names(self) -> set[str]:
        return set(self.list_tools())

    def get_definitions(self) -> list[dict[str, Any]]:
        return [self._registrations[name].tool.get_definition() for name in self.list_tools()]

    @staticmethod
    async def _stop_helper(task: asyncio.Task[Any] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def _abandon(task: asyncio.Task[Any]) -> None:
        """Cancel a tool task without waiting for it to honour the cancel."""
        if task.done():
            return

        def _reap(finished: asyncio.Task[Any]) -> None:
            if not finished.cancelled() and finished.exception() is not None:
                log.debug("Abandoned tool task failed", error=str(finished.exception()))

        task.add_done_callback(_reap)
        task.cancel()

    @staticmethod
    def _as_result(name: str, raw: Any) -> ToolResult:
        if isinstance(raw, ToolResult):
            return raw
        if isinstance(raw, dict) and "success" in raw:
            return ToolResult.from_dict(raw)
        raise ToolExecutionError(name, f"Unexpected result type {type(raw).__name__}")

    async def execute(
        self,
        name: str,
        parameters: dict[str, Any],
        request_id: str = "",
        abort_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Validate parameters and run a tool under a deadline and abort signal.

        ``timeout_seconds`` overrides the tool's own ``timeout_seconds``. A
        tool that ignores cancellation is abandoned once the deadline passes
        or the abort event fires.

        Raises:
            ToolNotFoundError: no tool with that name
            ToolBlockedError: the policy disables it
            ToolParametersError: parameters failed validation
            ToolExecutionError: the tool raised, timed out or was aborted
        """
        tool = self.get(name)
        if not self._enabled(name):
            raise ToolBlockedError(name, "Disabled by tool policy")
        arguments = tool.validate_parameters(parameters)
        if abort_event is not None and abort_event.is_set():
            raise ToolExecutionError(name, "Execution aborted")

        deadline = float(timeout_seconds or tool.timeout_seconds or DEFAULT_TOOL_TIMEOUT_SECONDS)
        context = ToolContext(request_id=request_id)
        run_task = asyncio.create_task(tool.execute(arguments, context))
        abort_task = asyncio.create_task(abort_event.wait()) if abort_event is not None else None
        waiting = {run_task} if abort_task is None else {run_task, abort_task}
        log.info("Executing tool", tool=name, request_id=request_id, timeout=deadline)
        try:
            done, _ = await asyncio.wait(waiting, timeout=deadline, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            context.abort_event.set()
            self._abandon(run_task)
            await self._stop_helper(abort_task)
            raise

        try:
            if run_task in done:
                try:
                    result = self._as_result(name, run_task.result())
                except ToolExecutionError:
                    raise
                except Exception as e:
                    log.error("Tool raised", tool=name, error=str(e))
                    raise ToolExecutionError(name, str(e)) from e
                log.info("Tool finished", tool=name, success=result.success)
                return result

            context.abort_event.set()
            self._abandon(run_task)
            if abort_task is not None and abort_task in done:
                raise ToolExecutionError(name, "Execution aborted")
            shown = int(deadline) if deadline.is_integer() else deadline
            raise ToolExecutionError(name, f"Execution timed out after {shown}s")
        finally:
            await self._stop_helper(abort_task)
