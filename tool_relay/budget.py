"""Per-turn tool output budget and truncation."""

from dataclasses import dataclass, field
from typing import Any

from tool_relay.config import BudgetConfig
from tool_relay.logging import get_logger

log = get_logger(__name__)

DEFAULT_TOOL_LIMITS: dict[str, int] = {
    "read_file": 1500,
    "search_files": 1000,
    "search_text": 1000,
    "list_directory": 800,
    "code_index": 1200,
    "bash": 1000,
    "bash_command": 1000,
    "execute_command": 1000,
    "http_request": 1500,
    "web_search": 1000,
}

TRUNCATION_NOTICE = "\n[Output truncated - {omitted} of {original} characters omitted. Tool: {tool}]"


def _normalize_tool_name(value: str) -> str:
    return str(value or "").strip().lower().replace("-", "_")


@dataclass
class OutputBudget:
    """Tool output consumed during one turn."""

    consumed: int = 0
    per_tool: dict[str, int] = field(default_factory=dict)

    @property
    def distinct_tools(self) -> int:
        return len(self.per_tool)


class OutputBudgetTracker:
    """Keep cumulative tool output within a per-turn ceiling.

    The tracker never refuses output outright: once the ceiling is reached
    every tool still gets a small floor allowance, reduced by however far
    usage already overshot, so total usage stays below
    ``turn_ceiling + floor``.
    """

    def __init__(self, config: BudgetConfig | None = None):
        self.config = config or BudgetConfig()
        self.tool_limits = {**DEFAULT_TOOL_LIMITS}
        self.tool_limits.update(
            {_normalize_tool_name(name): limit for name, limit in self.config.tool_limits.items()}
        )
        self.state = OutputBudget()

    @property
    def remaining(self) -> int:
        return self.config.turn_ceiling - self.state.consumed

    def limit_for(self, tool_name: str) -> int:
        """Static per-tool limit: exact name, then partial match, then default."""
        normalized = _normalize_tool_name(tool_name)
        if normalized in self.tool_limits:
            return self.tool_limits[normalized]
        for name, limit in self.tool_limits.items():
            if name in normalized or normalized in name:
                return limit
        return self.config.default_tool_limit

    def get_adjusted_limit(self, tool_name: str, requested: int | None = None) -> int:
        """Largest output size the next result of ``tool_name`` may have."""
        requested = self.limit_for(tool_name) if requested is None else requested
        remaining = self.remaining
        if remaining <= 0:
            return max(0, self.config.floor + remaining)

        limit = min(requested, remaining)
        if self.state.distinct_tools >= 2:
            limit = min(limit, self.config.shared_tool_ceiling)
        return max(0, limit)

    def record_output(self, tool_name: str, size: int) -> None:
        """Add ``size`` characters to the turn's usage."""
        if size < 0:
            raise ValueError(f"Output size cannot be negative: {size}")
        key = _normalize_tool_name(tool_name)
        self.state.consumed += size
        self.state.per_tool[key] = self.state.per_tool.get(key, 0) + size
        if self.state.consumed > self.config.turn_ceiling:
            log.debug(
                "Tool output ceiling exceeded",
                tool=tool_name,
                consumed=self.state.consumed,
                ceiling=self.config.turn_ceiling,
            )

    @staticmethod
    def truncate_output(tool_name: str, text: str, limit: int) -> str:
        """Shorten ``text`` to at most ``limit`` characters with a notice appended."""
        limit = max(0, limit)
        if len(text) <= limit:
            return text

        notice = TRUNCATION_NOTICE.format(omitted="{omitted}", original=len(text), tool=tool_name)
        # The omitted count can change the notice length by a few digits.
        reserve = len(notice.format(omitted=len(text)))
        if reserve >= limit:
            return notice.format(omitted=len(text)).strip()[:limit]

        cut = limit - reserve
        newline = text.rfind("\n", 0, cut + 1)
        if newline > 0:
            cut = newline
        head = text[:cut].rstrip()
        return head + notice.format(omitted=len(text) - len(head))

    def reset(self) -> None:
        """Clear usage at the start of a turn."""
        self.state = OutputBudget()

    def stats(self) -> dict[str, Any]:
        return {
            "consumed": self.state.consumed,
            "remaining": max(0, self.remaining),
            "turn_ceiling": self.config.turn_ceiling,
            "distinct_tools": self.state.distinct_tools,
            "per_tool": dict(self.state.per_tool),
        }
