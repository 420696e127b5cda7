import pytest

from tool_loop.commands import Command
from tool_loop.parser import (
    CommandParser,
    CommandValidator,
    default_request_id,
    extract_balanced_objects,
    strip_spans,
)

KNOWN_TOOLS = ["file_read", "shell", "thought", "get_user_feedback"]


def _parser() -> CommandParser:
    return CommandParser(CommandValidator(KNOWN_TOOLS))


def test_single_object_reply_becomes_one_command_and_no_prose():
    reply = '{"action": "file_read", "parameters": {"path": "notes.md"}}'

    parsed = _parser().parse_response(reply)

    assert len(parsed.commands) == 1
    command = parsed.commands[0]
    assert command.action == "file_read"
    assert command.parameters == {"path": "notes.md"}
    assert command.request_id.startswith("req_")
    assert parsed.text == ""


def test_back_to_back_objects_are_split_and_removed_from_prose():
    reply = (
        "Reading both files.\n"
        '{"action":"file_read","parameters":{"path":"a.md"}}'
        '{"action":"file_read","parameters":{"path":"b.md"}}'
        "\nDone."
    )

    parsed = _parser().parse_response(reply)

    assert [c.parameters["path"] for c in parsed.commands] == ["a.md", "b.md"]
    assert parsed.text == "Reading both files.\n\nDone."


def test_braces_inside_strings_do_not_break_objects():
    reply = 'Run {"action": "shell", "parameters": {"command": "echo \\"}{\\" done"}} now'

    parsed = _parser().parse_response(reply)

    assert len(parsed.commands) == 1
    assert parsed.commands[0].parameters == {"command": 'echo "}{" done'}
    assert parsed.text == "Run  now"


def test_unclosed_brace_in_prose_does_not_hide_later_command():
    reply = 'Sets look like {a, b and then {"action": "shell", "parameters": {"command": "ls"}}'

    commands = _parser().extract_commands(reply)

    assert [c.command.action for c in commands] == ["shell"]


def test_explicit_request_id_is_kept():
    reply = '{"action": "shell", "parameters": {"command": "ls"}, "requestId": "abc"}'

    parsed = _parser().parse_response(reply)

    assert parsed.commands[0].request_id == "abc"


def test_missing_parameters_default_to_remaining_fields():
    reply = 'Here: {"action": "file_read", "path": "x.md", "requestId": "r1"}'

    parsed = _parser().parse_response(reply)

    assert parsed.commands[0].parameters == {"path": "x.md"}


def test_bare_thought_object_becomes_thought_command():
    reply = '{"thought": "Read the notes first", "nextTool": "file_read", "step": 1, "totalSteps": 2}'

    parsed = _parser().parse_response(reply)

    command = parsed.commands[0]
    assert command.action == "thought"
    assert command.parameters == {
        "thought": "Read the notes first",
        "nextTool": "file_read",
        "step": 1,
        "totalSteps": 2,
    }
    assert command.finished is False


def test_thought_with_finished_next_tool_sets_finished():
    parsed = _parser().parse_response('{"thought": "All done", "nextTool": "finished"}')

    assert parsed.commands[0].finished is True
    assert parsed.finished is True


def test_json_array_yields_each_command_with_distinct_ids():
    reply = (
        '[{"action": "file_read", "parameters": {"path": "a.md"}},'
        ' {"action": "shell", "parameters": {"command": "ls"}}]'
    )

    parsed = _parser().parse_response(reply)

    assert [c.action for c in parsed.commands] == ["file_read", "shell"]
    assert parsed.commands[0].request_id != parsed.commands[1].request_id
    assert parsed.text == ""


def test_fenced_block_is_removed_with_its_fence():
    reply = 'Let me check.\n```json\n{"action": "shell", "parameters": {"command": "ls"}}\n```\nBack soon.'

    parsed = _parser().parse_response(reply)

    assert [c.action for c in parsed.commands] == ["shell"]
    assert parsed.text == "Let me check.\n\nBack soon."


def test_identical_commands_in_one_reply_get_distinct_ids():
    obj = '{"action": "shell", "parameters": {"command": "ls"}}'

    parsed = _parser().parse_response(f"{obj}\n{obj}")

    assert len(parsed.commands) == 2
    assert parsed.commands[0].request_id != parsed.commands[1].request_id
    assert parsed.text == ""


def test_extraction_is_idempotent():
    reply = 'First {"action": "shell", "parameters": {"command": "ls"}} then {"thought": "x", "nextTool": "shell"}'
    parser = _parser()

    first = [item.command for item in parser.extract_commands(reply)]
    second = [item.command for item in parser.extract_commands(reply)]

    assert first == second


def test_request_ids_depend_on_fragment_and_occurrence():
    assert default_request_id("{}", 0) == default_request_id("{}", 0)
    assert default_request_id("{}", 0) != default_request_id("{}", 1)
    assert default_request_id("{}", 0) != default_request_id("{ }", 0)
    assert default_request_id("{}", 0, "turn-1") != default_request_id("{}", 0, "turn-2")


def test_custom_request_id_factory_is_used():
    parser = CommandParser(CommandValidator(KNOWN_TOOLS), request_id_factory=lambda source, n, salt: f"id-{n}")

    parsed = parser.parse_response('{"action": "shell", "parameters": {}} {"action": "shell", "parameters": {}}')

    assert [c.request_id for c in parsed.commands] == ["id-0", "id-1"]


def test_prose_with_non_json_braces_is_left_alone():
    reply = "Use {braces} like {this} in templates."

    parsed = _parser().parse_response(reply)

    assert parsed.commands == []
    assert parsed.text == reply


def test_unknown_action_is_rejected_and_kept_in_prose():
    reply = 'Trying {"action": "rm_everything", "parameters": {}}'

    parsed = _parser().parse_response(reply)

    assert parsed.commands == []
    assert len(parsed.rejected) == 1
    assert parsed.text == reply


def test_finished_action_object_is_a_signal_not_prose():
    parsed = _parser().parse_response('All set.\n{"action": "finished"}')

    assert parsed.commands == []
    assert parsed.finished is True
    assert parsed.text == "All set."


def test_parse_response_requires_validator():
    with pytest.raises(ValueError):
        CommandParser().parse_response("{}")


def test_empty_reply_has_no_commands():
    assert _parser().extract_commands("   ") == []


def test_balanced_spans_skip_braces_in_strings():
    text = 'a {"x": "}"} b {"y": {"z": 1}}'

    spans = extract_balanced_objects(text)

    assert [text[start:end] for start, end in spans] == ['{"x": "}"}', '{"y": {"z": 1}}']


def test_strip_spans_is_order_independent():
    text = "keep {A}{AB} keep"

    assert strip_spans(text, ["{A}", "{AB}"]) == strip_spans(text, ["{AB}", "{A}"]) == "keep  keep"


def test_validator_checks_shape_and_membership():
    validator = CommandValidator(KNOWN_TOOLS)

    assert validator.validate(Command(action="shell", parameters={})) is True
    assert validator.validate({"action": "shell", "parameters": {"command": "ls"}}) is True
    assert validator.validate({"action": "shell", "parameters": "ls"}) is False
    assert validator.validate({"action": "shell"}) is False
    assert validator.validate({"action": "", "parameters": {}}) is False
    assert validator.validate({"action": "unknown", "parameters": {}}) is False
    assert validator.validate(["shell"]) is False


def test_salt_changes_generated_ids_but_not_explicit_ones():
    parser = _parser()
    reply = '{"action": "shell", "parameters": {}} {"action": "shell", "parameters": {}, "requestId": "ls-1"}'

    first = parser.parse_response(reply, salt="task:1").commands
    again = parser.parse_response(reply, salt="task:1").commands
    later = parser.parse_response(reply, salt="task:2").commands

    assert [c.request_id for c in first] == [c.request_id for c in again]
    assert first[0].request_id != later[0].request_id
    assert first[1].request_id == later[1].request_id == "ls-1"


def test_thought_object_keeps_explicit_request_id():
    parsed = _parser().parse_response('{"thought": "Plan", "nextTool": "shell", "requestId": "think-1"}')

    assert parsed.commands[0].action == "thought"
    assert parsed.commands[0].request_id == "think-1"
    assert "requestId" not in parsed.commands[0].parameters


def test_fenced_command_inside_non_json_braces_is_found_by_patterns():
    reply = 'Steps {first, list the files:\n```json\n{"action": "shell", "parameters": {"command": "ls"}}\n```\n}'

    assert [reply[s:e] for s, e in extract_balanced_objects(reply)] == [reply[reply.index("{"):]]
    parsed = _parser().parse_response(reply)

    assert [(c.action, c.parameters) for c in parsed.commands] == [("shell", {"command": "ls"})]
    assert "```" not in parsed.text
    assert parsed.text.startswith("Steps {first, list the files:")
