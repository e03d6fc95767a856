import json

import pytest

from tool_relay.exceptions import InvalidStructuredDataError
from tool_relay.repair import find_object_end, is_complete_json, loads_lenient, repair_json


def test_valid_json_is_returned_unchanged():
    text = '{"tool": "read_file", "parameters": {"file_path": "a.txt"}}'
    assert repair_json(text) == text


def test_bare_keys_and_trailing_comma_are_repaired():
    assert loads_lenient('{name: "t", arguments: {a: 1,}}') == {"name": "t", "arguments": {"a": 1}}


def test_missing_closers_are_appended():
    assert loads_lenient('{"tool": "x", "parameters": {"path": "src"') == {
        "tool": "x",
        "parameters": {"path": "src"},
    }


def test_unterminated_string_is_closed():
    assert loads_lenient('{"query": "hello wor') == {"query": "hello wor"}


def test_dangling_key_gets_null():
    assert loads_lenient('{"a": 1, "b":') == {"a": 1, "b": None}


def test_unmatched_closer_is_dropped():
    assert loads_lenient('{"a": [1, 2}') == {"a": [1, 2]}


def test_single_quotes_and_python_literals():
    assert loads_lenient("{'flag': True, 'other': None, 'name': 'it\\'s'}") == {
        "flag": True,
        "other": None,
        "name": "it's",
    }


def test_string_contents_are_never_rewritten():
    value = loads_lenient('{"text": "keep {a: 1,} and True here",}')
    assert value == {"text": "keep {a: 1,} and True here"}


def test_code_fence_is_stripped():
    assert loads_lenient('```json\n{"a": 1}\n```') == {"a": 1}


def test_repaired_text_parses():
    repaired = repair_json("{a: [1, 2,],")
    assert json.loads(repaired) == {"a": [1, 2]}


@pytest.mark.parametrize("text", ["", "   ", "not json at all", "{:::}"])
def test_unrepairable_input_raises(text):
    with pytest.raises(InvalidStructuredDataError):
        loads_lenient(text)


def test_unrepairable_error_carries_snippet():
    with pytest.raises(InvalidStructuredDataError) as exc_info:
        loads_lenient("{:::}")
    assert exc_info.value.snippet == "{:::}"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"a": 1}', True),
        ('[1, {"b": "}"}]', True),
        ('{"a": "unterminated}', False),
        ('{"a": [1, 2}', False),
        ('{"a": "escaped \\" quote"}', True),
        ("plain text", False),
        ("", False),
    ],
)
def test_is_complete_json(text, expected):
    assert is_complete_json(text) is expected


def test_find_object_end_skips_braces_in_strings():
    text = 'x {"a": "}", "b": {"c": 1}} tail'
    start = text.index("{")
    end = find_object_end(text, start)
    assert text[start:end] == '{"a": "}", "b": {"c": 1}}'


def test_find_object_end_unbalanced():
    assert find_object_end('{"a": {"b": 1}', 0) is None
    assert find_object_end("no brace", 0) is None
