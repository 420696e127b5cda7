"""Command-line entry point for tool-loop."""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.prompt import Confirm, Prompt
from rich.table import Table

from tool_loop import __version__
from tool_loop.commands import USER_FEEDBACK_ACTION, Command, TaskState, ToolResult
from tool_loop.config import Config, set_config
from tool_loop.continuation import TaskContinuation, TaskOutcome
from tool_loop.exceptions import ConfigurationError
from tool_loop.formatting import ToolResultFormatter
from tool_loop.handler import AgentResponseHandler
from tool_loop.llm import Message, create_provider
from tool_loop.logging import configure_logging, log
from tool_loop.parser import CommandParser, CommandValidator
from tool_loop.tools import FeedbackBroker, create_default_registry

app = typer.Typer(help="tool-loop - run an LLM agent that calls tools through JSON commands")
console = Console()

SYSTEM_PROMPT = (
    "You can call tools by replying with JSON objects of the form "
    '{"action": "<tool name>", "parameters": {...}}. '
    "Available tools:\n{tools}\n"
    'Use {"action": "thought", ...} to reason step by step and set '
    '"nextTool": "finished" when the task is done.'
)


def _load_config(
    config: str,
    model: str,
    provider: str,
    max_tool_calls: int | None,
    verbose: bool,
) -> Config:
    if verbose:
        os.environ["TOOL_LOOP_LOGGING__LEVEL"] = "DEBUG"
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            console.print(f"[red]Failed to load config {config}: {e}[/red]")
            raise typer.Exit(code=2)
    else:
        cfg = Config.load()
    if verbose:
        cfg.logging.level = "DEBUG"
    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if max_tool_calls is not None:
        cfg.agent_mode.max_tool_calls = max_tool_calls
    set_config(cfg)
    configure_logging(cfg)
    return cfg


def _system_prompt(tools: list[dict[str, Any]]) -> str:
    listing = "\n".join(f"- {tool['name']}: {tool['description']}" for tool in tools)
    return SYSTEM_PROMPT.replace("{tools}", listing)


def _pending_feedback(outcome: TaskOutcome) -> tuple[Command, ToolResult] | None:
    for command, result in reversed(outcome.tool_results):
        if command.action == USER_FEEDBACK_ACTION and result.is_pending:
            return command, result
    return None


def _ask_user(broker: FeedbackBroker, result: ToolResult) -> str:
    data = result.data
    choices = [str(choice) for choice in data.get("choices") or []]
    if data.get("type") == "choice" and choices and not data.get("allowCustomAnswer"):
        answer = Prompt.ask(data["question"], choices=choices)
        choice_index: int | None = choices.index(answer)
    else:
        if choices:
            console.print("Options: " + ", ".join(choices))
        answer = Prompt.ask(data["question"])
        choice_index = choices.index(answer) if answer in choices else None
    broker.answer(
        data["feedbackId"],
        answer,
        choice_index=choice_index,
        is_custom_answer=bool(choices) and choice_index is None,
    )
    return answer


async def _run_task(cfg: Config, prompt: str, stream: bool, interactive: bool) -> TaskOutcome:
    formatter = ToolResultFormatter()
    broker = FeedbackBroker()
    registry = create_default_registry(cfg.agent_mode, broker=broker)

    def show_result(command: Command, result: ToolResult) -> None:
        console.print(Markdown(formatter.format_tool_result(command, result, "markdown")))

    def show_chunk(chunk: str) -> None:
        console.print(chunk, end="", markup=False, highlight=False)

    handler = AgentResponseHandler.from_config(cfg.agent_mode, registry, display_hook=show_result)
    provider = create_provider(cfg.model)
    continuation = TaskContinuation(
        handler,
        provider.as_reply_provider(stream=stream),
        formatter=formatter,
        on_chunk=show_chunk if stream else None,
    )
    abort_event = asyncio.Event()
    messages = [
        Message(role="system", content=_system_prompt(registry.get_definitions())),
        Message(role="user", content=prompt),
    ]

    try:
        outcome = await continuation.run(messages, abort_event=abort_event)
        while interactive:
            if outcome.waiting_for_user:
                pending = _pending_feedback(outcome)
                if pending is None:
                    break
                answer = _ask_user(broker, pending[1])
                outcome = await continuation.resume(outcome, user_message=answer, abort_event=abort_event)
            elif outcome.limit_reached:
                used = outcome.status.tool_execution_count
                if not Confirm.ask(f"Tool limit reached ({used} executions). Continue?", default=False):
                    break
                outcome = await continuation.resume(outcome, abort_event=abort_event)
            else:
                break
        await handler.executor.drain_hooks()
        return outcome
    finally:
        await provider.close()


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Task for the agent"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    max_tool_calls: Optional[int] = typer.Option(
        None, "--max-tool-calls", min=0, help="Override the tool execution limit"
    ),
    no_stream: bool = typer.Option(False, "--no-stream", help="Disable streaming"),
    interactive: bool = typer.Option(True, "--interactive/--no-interactive", help="Ask before continuing"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one task through the tool loop."""
    cfg = _load_config(config, model, provider, max_tool_calls, verbose)
    try:
        outcome = asyncio.run(_run_task(cfg, prompt, not no_stream, interactive))
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(130)

    console.print()
    if no_stream and outcome.content:
        console.print(Markdown(outcome.content))
    style = "green" if outcome.status.status == TaskState.COMPLETED else "yellow"
    console.print(
        f"[{style}]{outcome.status.status.value}[/{style}] "
        f"after {outcome.turns} turn(s), "
        f"{outcome.status.tool_execution_count}/{outcome.status.max_tool_executions} tool executions"
    )
    if outcome.error:
        console.print(f"[red]Model error: {outcome.error}[/red]")
        raise typer.Exit(code=1)


@app.command()
def parse(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File holding a model reply"),
    tool: list[str] = typer.Option([], "--tool", "-t", help="Extra tool names to accept"),
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable output"),
) -> None:
    """Show the commands extracted from a saved model reply."""
    registry = create_default_registry()
    validator = CommandValidator([*registry.known_names(), *tool])
    parsed = CommandParser(validator).parse_response(file.read_text(encoding="utf-8"))

    if as_json:
        payload = {
            "text": parsed.text,
            "finished": parsed.finished,
            "commands": [command.to_dict() for command in parsed.commands],
            "rejected": [item.original_text for item in parsed.rejected],
        }
        console.print_json(json.dumps(payload, ensure_ascii=False))
        return

    table = Table(title=f"Commands in {file.name}")
    table.add_column("#", justify="right")
    table.add_column("Action")
    table.add_column("Request id")
    table.add_column("Parameters")
    for index, command in enumerate(parsed.commands, start=1):
        table.add_row(
            str(index),
            command.action,
            command.request_id,
            json.dumps(command.parameters, ensure_ascii=False),
        )
    console.print(table)
    if parsed.rejected:
        console.print(f"[yellow]{len(parsed.rejected)} candidate(s) rejected[/yellow]")
    if parsed.text:
        console.print("[bold]Remaining text:[/bold]")
        console.print(parsed.text, markup=False)


@app.command()
def tools() -> None:
    """List the built-in tools."""
    registry = create_default_registry()
    table = Table(title="Tools")
    table.add_column("Name")
    table.add_column("Description")
    for definition in registry.get_definitions():
        table.add_row(definition["name"], definition["description"])
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"tool-loop v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
