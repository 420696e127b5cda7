"""Extract tool commands from free-form model text and validate them.

The model is asked to emit JSON objects such as::

    {"action": "file_read", "parameters": {"path": "notes.md"}}

but in practice commands arrive wrapped in prose, fenced code blocks, back to
back without separators, as a JSON array, or as a bare "thought" object. The
extractor tries the following, in order:

1. the whole text is one command object or an array of them;
2. the whole text is a thought object (``thought`` + ``nextTool``);
3. brace-balanced scanning for every top-level ``{...}`` in the text;
4. pattern scanning for fenced and inline objects (only when 3 found nothing).

Unparseable fragments are prose, never errors. Request ids the model omitted
are derived from the fragment text, its occurrence index and a caller-supplied
salt. The same input and salt always yield the same output; the response
handler passes a fresh salt per turn so a repeated command is a new occurrence.
"""

import hashlib
import json
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from tool_loop.commands import (
    THOUGHT_ACTION,
    Command,
    canonical_json,
    is_finished_marker,
)
from tool_loop.logging import get_logger
from tool_loop.tools.registry import ToolRegistry

log = get_logger(__name__)

_CODE_BLOCK_PATTERNS = [
    re.compile(r"```json\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE),
    re.compile(r"```\s*(\{.*?\})\s*```", re.DOTALL),
    re.compile(r"(\{.*?\})", re.DOTALL),
]
_THOUGHT_FIELDS = ("thought", "nextTool", "nextActionDescription", "step", "totalSteps")
_STRIPPED_FIELDS = ("action", "requestId")
_EXCESS_BLANK_LINES_RE = re.compile(r"\n{3,}")
_EMPTY_FENCE_RE = re.compile(r"```[A-Za-z]*\s*```")

RequestIdFactory = Callable[[str, int, str], str]


def default_request_id(source: str, occurrence: int, salt: str = "") -> str:
    """Derive a request id from fragment text, occurrence index and salt."""
    digest = hashlib.sha1(f"{salt}\x00{occurrence}\x00{source}".encode("utf-8")).hexdigest()
    return f"req_{digest[:16]}"


@dataclass
class ExtractedCommand:
    """A candidate command and the exact text it was extracted from."""

    command: Command
    original_text: str


@dataclass
class ParsedResponse:
    """Prose with valid command text removed, plus the valid commands."""

    text: str
    commands: list[Command] = field(default_factory=list)
    rejected: list[ExtractedCommand] = field(default_factory=list)
    finished: bool = False


class _RequestIds:
    """Request ids handed out during one extraction call."""

    def __init__(self, factory: RequestIdFactory, salt: str):
        self._factory = factory
        self._salt = salt
        self._seen: dict[str, int] = {}

    def next(self, source: str) -> str:
        occurrence = self._seen.get(source, 0)
        self._seen[source] = occurrence + 1
        return self._factory(source, occurrence, self._salt)


def extract_balanced_objects(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` spans of top-level balanced ``{...}`` objects.

    Braces inside quoted strings do not count, and escapes inside strings are
    honoured. Quotes are only tracked inside an object so stray quotes in prose
    cannot flip string state. An object that never closes is skipped and the
    scan restarts right after its opening brace.
    """
    spans: list[tuple[int, int]] = []
    length = len(text)
    pos = 0
    while pos < length:
        start = text.find("{", pos)
        if start < 0:
            break
        depth = 0
        in_string = False
        escape_next = False
        end = -1
        for i in range(start, length):
            char = text[i]
            if escape_next:
                escape_next = False
                continue
            if in_string:
                if char == "\\":
                    escape_next = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = i + 1
                    break
        if end < 0:
            pos = start + 1
            continue
        spans.append((start, end))
        pos = end
    return spans


def strip_spans(text: str, spans: Iterable[str]) -> str:
    """Remove every literal span from text.

    Longer spans go first so the result does not depend on span order, and
    removing a span that is already gone changes nothing.
    """
    cleaned = text
    for span in sorted({s for s in spans if s}, key=len, reverse=True):
        cleaned = cleaned.replace(span, "")
    # fences left empty once their command is gone
    cleaned = _EMPTY_FENCE_RE.sub("", cleaned)
    cleaned = _EXCESS_BLANK_LINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def _loads_or_none(fragment: str) -> Any:
    try:
        return json.loads(fragment)
    except (ValueError, TypeError):
        return None


class CommandValidator:
    """Structural and registry-membership checks for candidate commands."""

    def __init__(self, registry: ToolRegistry | Iterable[str]):
        if isinstance(registry, ToolRegistry):
            self._is_known: Callable[[str], bool] = registry.has_tool
        else:
            names = frozenset(registry)
            self._is_known = names.__contains__

    def validate(self, candidate: Any) -> bool:
        """Return True when candidate may be executed."""
        if isinstance(candidate, Command):
            action, parameters = candidate.action, candidate.parameters
        elif isinstance(candidate, Mapping):
            action, parameters = candidate.get("action"), candidate.get("parameters")
        else:
            log.debug("Rejected command: not an object", candidate_type=type(candidate).__name__)
            return False

        if not action or not isinstance(action, str):
            log.debug("Rejected command: missing action", action=action)
            return False
        if parameters is None or not isinstance(parameters, Mapping):
            log.debug("Rejected command: missing parameters", action=action)
            return False
        if not self._is_known(action):
            log.debug("Rejected command: unknown action", action=action)
            return False
        return True


class CommandParser:
    """Extract tool commands from model responses."""

    def __init__(
        self,
        validator: CommandValidator | None = None,
        request_id_factory: RequestIdFactory | None = None,
    ):
        self.validator = validator
        self._request_id_factory = request_id_factory or default_request_id

    def parse_response(self, response: str, salt: str = "") -> ParsedResponse:
        """Split a response into clean prose and valid commands.

        ``salt`` feeds generated request ids; pass a different value per turn.
        """
        if self.validator is None:
            raise ValueError("parse_response requires a validator")

        extracted = self.extract_commands(response, salt=salt)
        valid: list[Command] = []
        rejected: list[ExtractedCommand] = []
        removed: list[str] = []
        finished = False
        for item in extracted:
            if item.command.finished:
                finished = True
            if self.validator.validate(item.command):
                valid.append(item.command)
                removed.append(item.original_text)
            else:
                rejected.append(item)
                # A bare {"action": "finished"} is a signal, not prose.
                if is_finished_marker(item.command.action):
                    removed.append(item.original_text)

        log.debug(
            "Parsed response",
            extracted=len(extracted),
            valid=len(valid),
            rejected=len(rejected),
            finished=finished,
        )
        return ParsedResponse(
            text=strip_spans(response, removed),
            commands=valid,
            rejected=rejected,
            finished=finished,
        )

    def extract_commands(self, text: str, salt: str = "") -> list[ExtractedCommand]:
        """Extract candidate commands with their original text spans."""
        if not text or not text.strip():
            return []

        ids = _RequestIds(self._request_id_factory, salt)
        whole = self._extract_whole_text(text.strip(), ids)
        if whole is not None:
            return whole

        commands: list[ExtractedCommand] = []
        for start, end in extract_balanced_objects(text):
            fragment = text[start:end]
            candidate = self._candidate_from_object(_loads_or_none(fragment), fragment, fragment, ids)
            if candidate is not None:
                commands.append(candidate)
        if commands:
            return commands

        return self._extract_with_patterns(text, ids)

    def _extract_whole_text(
        self,
        trimmed: str,
        ids: _RequestIds,
    ) -> list[ExtractedCommand] | None:
        parsed = _loads_or_none(trimmed)
        if isinstance(parsed, list):
            commands: list[ExtractedCommand] = []
            for item in parsed:
                # Array items share the whole text as their span.
                candidate = self._candidate_from_object(item, canonical_json(item), trimmed, ids)
                if candidate is not None:
                    commands.append(candidate)
            return commands
        if isinstance(parsed, dict):
            candidate = self._candidate_from_object(parsed, trimmed, trimmed, ids)
            if candidate is not None:
                return [candidate]
        return None

    def _extract_with_patterns(self, text: str, ids: _RequestIds) -> list[ExtractedCommand]:
        """Find fenced or inline objects, including ones nested in non-JSON braces."""
        commands: list[ExtractedCommand] = []
        taken: list[tuple[int, int]] = []
        for pattern in _CODE_BLOCK_PATTERNS:
            for match in pattern.finditer(text):
                start, end = match.span()
                if any(start < t_end and t_start < end for t_start, t_end in taken):
                    continue
                candidate = self._candidate_from_object(
                    _loads_or_none(match.group(1)),
                    match.group(1),
                    match.group(0),
                    ids,
                )
                if candidate is not None:
                    commands.append(candidate)
                    taken.append((start, end))
        return commands

    def _candidate_from_object(
        self,
        obj: Any,
        source: str,
        original_text: str,
        ids: _RequestIds,
    ) -> ExtractedCommand | None:
        if not isinstance(obj, dict):
            return None

        action = obj.get("action")
        explicit_id = obj.get("requestId")
        if action:
            parameters = obj.get("parameters")
            if parameters is None:
                parameters = {k: v for k, v in obj.items() if k not in _STRIPPED_FIELDS}
            request_id = str(explicit_id) if explicit_id else ids.next(source)
            command = Command(
                action=action,
                parameters=parameters,
                request_id=request_id,
                finished=obj.get("finished") is True or is_finished_marker(action),
            )
            return ExtractedCommand(command=command, original_text=original_text)

        if obj.get("thought") and obj.get("nextTool"):
            parameters = {key: obj[key] for key in _THOUGHT_FIELDS if obj.get(key) is not None}
            command = Command(
                action=THOUGHT_ACTION,
                parameters=parameters,
                request_id=str(explicit_id) if explicit_id else ids.next(source),
                finished=is_finished_marker(obj.get("nextTool")),
            )
            return ExtractedCommand(command=command, original_text=original_text)

        return None
