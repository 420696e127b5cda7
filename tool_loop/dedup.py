"""Skip commands whose exact signature already has a result in history."""

from collections.abc import Iterable, Mapping
from typing import Any

from tool_loop.commands import Command, ExecutionRecord, ToolResult
from tool_loop.history import HistoryEntry
from tool_loop.logging import get_logger

log = get_logger(__name__)

Signature = tuple[str, str, str]


def _iter_assistant_records(history: Iterable[HistoryEntry | Mapping[str, Any]]) -> Iterable[ExecutionRecord]:
    for entry in history or []:
        if isinstance(entry, HistoryEntry):
            role, records = entry.role, entry.tool_results
        elif isinstance(entry, Mapping):
            role = entry.get("role") or entry.get("sender")
            records = entry.get("tool_results") or entry.get("toolResults") or []
        else:
            continue
        if role != "assistant" or not records:
            continue
        for record in records:
            if isinstance(record, ExecutionRecord):
                yield record
            elif isinstance(record, Mapping):
                yield ExecutionRecord.from_dict(dict(record))


class DedupFilter:
    """History-aware deduplication of commands.

    Only ``assistant`` history entries carrying tool results are scanned.
    Nothing is mutated; the index is rebuilt from history on every call.
    """

    @staticmethod
    def signature(command: Command) -> Signature:
        return command.signature()

    def build_index(self, history: Iterable[HistoryEntry | Mapping[str, Any]]) -> dict[Signature, ToolResult]:
        """Map each recorded signature to its first stored result."""
        index: dict[Signature, ToolResult] = {}
        for record in _iter_assistant_records(history):
            index.setdefault(record.command.signature(), record.result)
        return index

    def filter(
        self,
        commands: list[Command],
        history: Iterable[HistoryEntry | Mapping[str, Any]],
    ) -> list[Command]:
        """Commands that have no recorded result yet."""
        index = self.build_index(history)
        fresh: list[Command] = []
        for command in commands:
            if command.signature() in index:
                log.debug(
                    "Skipping already executed command",
                    action=command.action,
                    request_id=command.request_id,
                )
                continue
            fresh.append(command)
        return fresh

    def resolve(
        self,
        commands: list[Command],
        history: Iterable[HistoryEntry | Mapping[str, Any]],
    ) -> list[tuple[Command, ToolResult]]:
        """Recorded results for commands that were already executed."""
        index = self.build_index(history)
        return [
            (command, index[command.signature()])
            for command in commands
            if command.signature() in index
        ]
