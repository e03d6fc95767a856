import pytest

from tool_relay.budget import OutputBudgetTracker
from tool_relay.config import BudgetConfig


@pytest.fixture
def tracker() -> OutputBudgetTracker:
    return OutputBudgetTracker(BudgetConfig())


@pytest.mark.parametrize(
    ("tool", "limit"),
    [
        ("read_file", 1500),
        ("list_directory", 800),
        ("bash", 1000),
        ("Read-File", 1500),
        ("read", 1500),
        ("completely_unknown", 1000),
    ],
)
def test_static_limits(tracker: OutputBudgetTracker, tool, limit):
    assert tracker.limit_for(tool) == limit


def test_config_overrides_limits():
    tracker = OutputBudgetTracker(BudgetConfig(tool_limits={"read_file": 200}, default_tool_limit=50))

    assert tracker.limit_for("read_file") == 200
    assert tracker.limit_for("mystery") == 50


def test_fresh_budget_uses_requested_limit(tracker: OutputBudgetTracker):
    assert tracker.get_adjusted_limit("read_file") == 1500
    assert tracker.get_adjusted_limit("read_file", requested=400) == 400


def test_limit_capped_by_remaining(tracker: OutputBudgetTracker):
    tracker.record_output("read_file", 5500)

    assert tracker.get_adjusted_limit("read_file") == 500


def test_shared_ceiling_after_two_distinct_tools(tracker: OutputBudgetTracker):
    tracker.record_output("read_file", 100)
    assert tracker.get_adjusted_limit("read_file") == 1500

    tracker.record_output("list_directory", 100)
    assert tracker.get_adjusted_limit("read_file") == 800


def test_floor_after_ceiling_reduced_by_overshoot(tracker: OutputBudgetTracker):
    tracker.record_output("read_file", 6000)
    assert tracker.get_adjusted_limit("read_file") == 120

    tracker.record_output("read_file", 50)
    assert tracker.get_adjusted_limit("read_file") == 70

    tracker.record_output("read_file", 500)
    assert tracker.get_adjusted_limit("read_file") == 0


def test_usage_never_exceeds_ceiling_plus_floor(tracker: OutputBudgetTracker):
    tools = ["read_file", "list_directory", "bash", "web_search"]
    for step in range(60):
        tool = tools[step % len(tools)]
        output = "x" * 5000
        limit = tracker.get_adjusted_limit(tool)
        clipped = tracker.truncate_output(tool, output, limit)
        tracker.record_output(tool, len(clipped))
        assert tracker.state.consumed <= tracker.config.turn_ceiling + tracker.config.floor


def test_negative_size_rejected(tracker: OutputBudgetTracker):
    with pytest.raises(ValueError):
        tracker.record_output("read_file", -1)


def test_record_output_does_not_deduplicate(tracker: OutputBudgetTracker):
    tracker.record_output("bash", 10)
    tracker.record_output("bash", 10)

    assert tracker.stats()["consumed"] == 20
    assert tracker.stats()["per_tool"] == {"bash": 20}


def test_truncate_short_text_unchanged():
    assert OutputBudgetTracker.truncate_output("bash", "short", 100) == "short"


def test_truncate_prefers_line_boundary():
    text = "\n".join(f"line {i:03d}" for i in range(100))
    result = OutputBudgetTracker.truncate_output("bash", text, 300)

    assert len(result) <= 300
    head, notice = result.split("\n[Output truncated", 1)
    assert head.endswith(("0", "1", "2", "3", "4", "5", "6", "7", "8", "9"))
    assert all(line.startswith("line ") and len(line) == 8 for line in head.split("\n"))
    assert "Tool: bash" in notice
    assert f"of {len(text)} characters" in notice


def test_truncate_hard_cut_without_newlines():
    text = "y" * 1000
    result = OutputBudgetTracker.truncate_output("read_file", text, 200)

    assert len(result) <= 200
    assert result.startswith("y" * 50)
    assert "Tool: read_file" in result


def test_truncate_limit_smaller_than_notice():
    result = OutputBudgetTracker.truncate_output("read_file", "z" * 1000, 10)

    assert len(result) <= 10


def test_truncate_zero_limit():
    assert OutputBudgetTracker.truncate_output("read_file", "abc", 0) == ""


def test_reset_clears_usage(tracker: OutputBudgetTracker):
    tracker.record_output("bash", 7000)
    tracker.reset()

    assert tracker.stats()["consumed"] == 0
    assert tracker.get_adjusted_limit("bash") == 1000
