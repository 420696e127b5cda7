"""In-memory conversation history with recorded tool executions."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from tool_loop.commands import Command, ExecutionRecord, ToolResult, utc_now_iso


@dataclass
class HistoryEntry:
    """One turn of the conversation."""

    role: str  # "system", "user", "assistant"
    content: str
    tool_results: list[ExecutionRecord] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_results:
            payload["tool_results"] = [record.to_dict() for record in self.tool_results]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        records = data.get("tool_results") or data.get("toolResults") or []
        return cls(
            role=str(data.get("role") or data.get("sender") or ""),
            content=str(data.get("content") or ""),
            tool_results=[ExecutionRecord.from_dict(item) for item in records],
            timestamp=str(data.get("timestamp") or utc_now_iso()),
        )


class ConversationHistory:
    """Ordered turns of one conversation.

    Persistence belongs to the caller: ``to_list``/``from_list`` convert to and
    from plain dicts.
    """

    def __init__(self, entries: list[HistoryEntry] | None = None):
        self._entries: list[HistoryEntry] = list(entries or [])

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def add_turn(
        self,
        role: str,
        content: str,
        tool_results: list[tuple[Command, ToolResult]] | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            role=role,
            content=content,
            tool_results=[
                ExecutionRecord(command=command, result=result)
                for command, result in tool_results or []
            ],
        )
        self._entries.append(entry)
        return entry

    def clear(self) -> None:
        self._entries.clear()

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    @classmethod
    def from_list(cls, items: list[dict[str, Any]]) -> "ConversationHistory":
        return cls([HistoryEntry.from_dict(item) for item in items])
