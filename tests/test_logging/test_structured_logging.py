import io
import json

import pytest
import structlog

from tool_relay.config import LoggingConfig
from tool_relay.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_structlog():
    yield
    structlog.reset_defaults()


def test_json_lines_carry_key_values():
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="INFO", format="json"), stream=stream)

    get_logger(__name__).info("Executing tool", tool="echo", call_id="call_1")

    record = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert record["event"] == "Executing tool"
    assert record["tool"] == "echo"
    assert record["call_id"] == "call_1"
    assert record["level"] == "info"
    assert "timestamp" in record


def test_level_filters_lower_events():
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="WARNING", format="json"), stream=stream)

    log = get_logger("quiet")
    log.info("Turn started")
    log.warning("Iteration ceiling reached", iterations=12)

    lines = stream.getvalue().strip().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["iterations"] == 12


def test_console_format_renders_event_text():
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="DEBUG", format="console"), stream=stream)

    get_logger().debug("Fragment after finish ignored", index=3)

    output = stream.getvalue()
    assert "Fragment after finish ignored" in output
    assert "index=3" in output


def test_unknown_format_rejected():
    with pytest.raises(ValueError):
        configure_logging(LoggingConfig(format="xml"))
