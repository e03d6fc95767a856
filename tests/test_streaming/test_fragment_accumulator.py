import pytest

from tool_relay.exceptions import ErrorKind
from tool_relay.llm import InvocationFormat, ResponseFragment
from tool_relay.streaming import StreamingAccumulator


def _split(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def test_single_call_across_fragments():
    accumulator = StreamingAccumulator()
    fragments = [ResponseFragment(index=0, name="read_file")]
    fragments += [ResponseFragment(index=0, arguments=part) for part in _split('{"file_path": "a.txt"}', 4)]
    fragments.append(ResponseFragment(finished=True))

    invocations = accumulator.feed(fragments)

    assert len(invocations) == 1
    assert invocations[0].id == "call_1"
    assert invocations[0].name == "read_file"
    assert invocations[0].arguments == {"file_path": "a.txt"}
    assert invocations[0].source_format == InvocationFormat.NATIVE
    assert invocations[0].complete is True


def test_nothing_is_emitted_before_finish():
    accumulator = StreamingAccumulator()

    assert accumulator.add(ResponseFragment(index=0, name="a", arguments="{}")) is None
    assert accumulator.finished is False

    result = accumulator.add(ResponseFragment(finished=True))
    assert [inv.name for inv in result] == ["a"]


def test_interleaved_fragments_match_sequential_delivery():
    args_a = '{"path": "src", "recursive": true}'
    args_b = '{"query": "needle"}'

    sequential = [ResponseFragment(index=0, name="list_directory")]
    sequential += [ResponseFragment(index=0, arguments=p) for p in _split(args_a, 5)]
    sequential += [ResponseFragment(index=1, name="search_text")]
    sequential += [ResponseFragment(index=1, arguments=p) for p in _split(args_b, 5)]
    sequential.append(ResponseFragment(finished=True))

    parts_a = _split(args_a, 5)
    parts_b = _split(args_b, 5)
    interleaved = [ResponseFragment(index=1, name="search"), ResponseFragment(index=0, name="list_")]
    for i in range(max(len(parts_a), len(parts_b))):
        if i < len(parts_b):
            interleaved.append(ResponseFragment(index=1, arguments=parts_b[i]))
        if i < len(parts_a):
            interleaved.append(ResponseFragment(index=0, arguments=parts_a[i]))
        if i == 0:
            interleaved.append(ResponseFragment(index=0, name="directory"))
            interleaved.append(ResponseFragment(index=1, name="_text"))
    interleaved.append(ResponseFragment(finished=True))

    first = StreamingAccumulator().feed(sequential)
    second = StreamingAccumulator().feed(interleaved)

    assert [(i.id, i.name, i.arguments) for i in first] == [(i.id, i.name, i.arguments) for i in second]
    assert [i.name for i in first] == ["list_directory", "search_text"]


def test_empty_arguments_become_empty_map():
    invocations = StreamingAccumulator().feed([
        ResponseFragment(index=0, name="system_info"),
        ResponseFragment(finished=True),
    ])

    assert invocations[0].arguments == {}
    assert invocations[0].complete is True


def test_truncated_arguments_are_repaired():
    accumulator = StreamingAccumulator()
    invocations = accumulator.feed([
        ResponseFragment(index=0, name="read_file"),
        ResponseFragment(index=0, arguments='{"file_path": "a.t'),
        ResponseFragment(finished=True),
    ])

    assert invocations[0].arguments == {"file_path": "a.t"}
    assert invocations[0].complete is True
    assert accumulator.stats.complete == 0
    assert accumulator.stats.incomplete == 1
    assert accumulator.stats.repaired == 1


def test_balanced_buffers_count_as_complete():
    accumulator = StreamingAccumulator()
    accumulator.feed([
        ResponseFragment(index=0, name="read_file"),
        ResponseFragment(index=0, arguments='{"file_path": "a.txt", "tags": ["x", "}"]}'),
        ResponseFragment(index=1, name="list_directory"),
        ResponseFragment(index=1, arguments='{"path": "src"'),
        ResponseFragment(index=2, name="system_info"),
        ResponseFragment(finished=True),
    ])

    assert accumulator.stats.complete == 2
    assert accumulator.stats.incomplete == 1
    assert accumulator.stats.repaired == 1


def test_unrepairable_arguments_mark_call_incomplete():
    accumulator = StreamingAccumulator()
    invocations = accumulator.feed([
        ResponseFragment(index=0, name="read_file"),
        ResponseFragment(index=0, arguments="{:::}"),
        ResponseFragment(finished=True),
    ])

    assert invocations[0].arguments == {}
    assert invocations[0].complete is False
    assert [error.kind for error in accumulator.errors] == [ErrorKind.INVALID_STRUCTURED_DATA]
    assert accumulator.stats.incomplete == 1


def test_nameless_index_is_dropped():
    invocations = StreamingAccumulator().feed([
        ResponseFragment(index=0, arguments='{"orphan": true}'),
        ResponseFragment(index=1, name="kept", arguments="{}"),
        ResponseFragment(finished=True),
    ])

    assert [inv.name for inv in invocations] == ["kept"]
    assert invocations[0].id == "call_1"


def test_second_finish_returns_same_list():
    accumulator = StreamingAccumulator()
    accumulator.add(ResponseFragment(index=0, name="a"))
    first = accumulator.finish()
    second = accumulator.finish()

    assert first is second
    assert accumulator.add(ResponseFragment(index=1, name="late")) is None
    assert [inv.name for inv in accumulator.finish()] == ["a"]


def test_text_is_collected_and_stats_counted():
    accumulator = StreamingAccumulator()
    accumulator.feed([
        ResponseFragment(text="Hello "),
        ResponseFragment(text="there."),
        ResponseFragment(index=0, name="a", arguments="{}"),
        ResponseFragment(finished=True),
    ])

    assert accumulator.text == "Hello there."
    assert accumulator.stats.fragments == 4
    assert accumulator.stats.complete == 1


def test_reset_clears_state():
    accumulator = StreamingAccumulator()
    accumulator.feed([ResponseFragment(text="x"), ResponseFragment(index=0, name="a")])
    accumulator.reset()

    assert accumulator.text == ""
    assert accumulator.finished is False
    assert accumulator.feed([ResponseFragment(finished=True)]) == []


@pytest.mark.asyncio
async def test_consume_async_stream_without_finished_fragment():
    async def stream():
        yield ResponseFragment(text="Working")
        yield ResponseFragment(index=0, name="a", arguments='{"x": 1}')

    accumulator = StreamingAccumulator()
    invocations = await accumulator.consume(stream())

    assert accumulator.text == "Working"
    assert [(inv.name, inv.arguments) for inv in invocations] == [("a", {"x": 1})]
