import json

from streamux.simulated_tools import (
    CLEANUP_PLACEHOLDER,
    build_simulated_tool_instructions,
    classify_call,
    find_marker_blocks,
    first_json_object,
    normalize_call,
    parse_simulated_tool_calls,
    repair_json_arguments,
    safe_prefix_length,
    scrub_markers,
)
from streamux.utils import create_tool


class TestRepairJsonArguments:

    def test_valid_arguments_are_unchanged(self):
        assert repair_json_arguments('{"city": "Paris"}') == '{"city": "Paris"}'

    def test_empty_arguments_become_empty_object(self):
        assert repair_json_arguments("") == "{}"
        assert repair_json_arguments(None) == "{}"

    def test_concatenated_objects_keep_the_first(self):
        repaired = repair_json_arguments('{"city": "Paris"}{"city": "Rome"}')
        assert json.loads(repaired) == {"city": "Paris"}

    def test_garbage_is_not_repairable(self):
        assert repair_json_arguments('{"city": ') is None

    def test_first_json_object_skips_leading_text(self):
        assert first_json_object('noise {"a": 1} {"b": 2}') == {"a": 1}
        assert first_json_object("no object here") is None


class TestCallShapes:

    def test_nested_and_flat_shapes_normalize_alike(self):
        nested = classify_call({"id": "c1", "function": {"name": "f", "arguments": '{"x": 1}'}})
        flat = classify_call({"id": "c1", "name": "f", "arguments": '{"x": 1}'})
        assert nested.shape == "nested"
        assert flat.shape == "flat"
        assert normalize_call(nested) == normalize_call(flat)

    def test_missing_id_is_generated(self):
        call = normalize_call(classify_call({"name": "f"}))
        assert call["id"].startswith("sim_")
        assert call["function"]["arguments"] == "{}"

    def test_object_arguments_are_encoded(self):
        call = normalize_call(classify_call({"name": "f", "arguments": {"x": [1, 2]}}))
        assert json.loads(call["function"]["arguments"]) == {"x": [1, 2]}

    def test_invalid_string_arguments_are_wrapped(self):
        call = normalize_call(classify_call({"name": "f", "arguments": "not json"}))
        assert json.loads(call["function"]["arguments"]) == "not json"

    def test_nameless_call_is_dropped(self):
        assert normalize_call(classify_call({"name": "", "arguments": "{}"})) is None
        assert classify_call({"arguments": "{}"}) is None
        assert classify_call("f") is None


class TestMarkerScanning:

    def test_finds_blocks_with_nested_brackets_in_strings(self):
        text = 'a TOOL_CALLS: [{"name": "f", "arguments": "{\\"q\\": \\"]}\\"}"}] b'
        blocks = find_marker_blocks(text)
        assert len(blocks) == 1
        assert blocks[0].complete
        assert json.loads(blocks[0].payload)[0]["name"] == "f"
        assert text[blocks[0].end:] == " b"

    def test_fenced_block_includes_fences(self):
        text = 'Hi\n```json\nTOOL_CALLS: [{"name": "f"}]\n```'
        assert scrub_markers(text) == "Hi" + CLEANUP_PLACEHOLDER

    def test_truncated_block_runs_to_end(self):
        blocks = find_marker_blocks('x TOOL_CALLS: [{"name": "f"')
        assert len(blocks) == 1
        assert not blocks[0].complete

    def test_marker_without_payload_is_ignored(self):
        assert find_marker_blocks("the TOOL_CALLS: feature is neat") == []

    def test_safe_prefix_holds_back_partial_marker(self):
        assert safe_prefix_length("Hello TOOL_") == len("Hello")
        assert safe_prefix_length("Hello world") == len("Hello world")
        assert safe_prefix_length("Sure.\n```js") == len("Sure.")
        assert safe_prefix_length('Ok TOOL_CALLS: [') == len("Ok")


class TestParseSimulatedToolCalls:

    def test_extracts_calls_and_visible_text(self):
        text = 'Let me check. TOOL_CALLS: [{"function": {"name": "get_weather", "arguments": "{\\"city\\": \\"Paris\\"}"}}]'
        result = parse_simulated_tool_calls(text)
        assert result.handled
        assert result.content == "Let me check."
        assert len(result.tool_calls) == 1
        call = result.tool_calls[0]
        assert call["function"]["name"] == "get_weather"
        assert json.loads(call["function"]["arguments"]) == {"city": "Paris"}

    def test_last_block_wins(self):
        text = (
            'First TOOL_CALLS: [{"name": "old"}] then '
            'TOOL_CALLS: [{"name": "new"}]'
        )
        result = parse_simulated_tool_calls(text)
        assert [c["function"]["name"] for c in result.tool_calls] == ["new"]
        assert result.content == f"First{CLEANUP_PLACEHOLDER} then"

    def test_single_object_payload_is_wrapped(self):
        result = parse_simulated_tool_calls('TOOL_CALLS: {"name": "f", "arguments": {}}')
        assert result.handled
        assert result.content == ""
        assert result.tool_calls[0]["function"]["arguments"] == "{}"

    def test_concatenated_payload_recovers_first_object(self):
        result = parse_simulated_tool_calls('TOOL_CALLS: [{"name": "a"}{"name": "b"}]')
        assert result.handled
        assert [c["function"]["name"] for c in result.tool_calls] == ["a"]

    def test_unparseable_block_degrades_to_scrubbed_text(self):
        result = parse_simulated_tool_calls('Answer TOOL_CALLS: [{"name": oops}]')
        assert not result.handled
        assert result.tool_calls == []
        assert result.content == "Answer" + CLEANUP_PLACEHOLDER

    def test_plain_text_is_untouched(self):
        result = parse_simulated_tool_calls("Just an answer.")
        assert not result.handled
        assert result.content == "Just an answer."


def test_instructions_describe_the_format():
    tool = create_tool("search", "Search the web", {"q": {"type": "string"}}, ["q"])
    text = build_simulated_tool_instructions([tool])
    assert "TOOL_CALLS:" in text
    assert '"name": "search"' in text
