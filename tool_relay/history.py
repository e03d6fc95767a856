"""In-memory conversation history."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tool_relay.exceptions import HistoryError
from tool_relay.llm import Message, ToolInvocation
from tool_relay.logging import get_logger

log = get_logger(__name__)

ROLES = ("system", "user", "assistant", "tool")


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class HistoryEntry:
    """One appended message."""

    role: str
    content: str
    invocations: list[ToolInvocation] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass
class ConversationHistory:
    """Ordered message log for one conversation.

    Tool entries must answer an invocation id carried by an earlier
    assistant entry, and each invocation is answered at most once.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    entries: list[HistoryEntry] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    _open_calls: dict[str, str] = field(default_factory=dict, repr=False)

    def append(
        self,
        role: str,
        content: str,
        invocations: list[ToolInvocation] | None = None,
        tool_call_id: str | None = None,
        tool_name: str | None = None,
    ) -> HistoryEntry:
        """Add a message to the history."""
        if role not in ROLES:
            raise HistoryError(f"Unknown role: {role}")
        if invocations and role != "assistant":
            raise HistoryError("Only assistant entries may carry invocations")

        if role == "tool":
            if not tool_call_id or tool_call_id not in self._open_calls:
                log.warning("Rejected tool entry", tool_call_id=tool_call_id, pending=len(self._open_calls))
                raise HistoryError(
                    f"Tool entry references unknown invocation id: {tool_call_id!r}"
                )
            answered = self._open_calls.pop(tool_call_id)
            tool_name = tool_name or answered

        entry = HistoryEntry(
            role=role,
            content=content,
            invocations=list(invocations or []),
            tool_call_id=tool_call_id,
            tool_name=tool_name,
        )
        for invocation in entry.invocations:
            self._open_calls[invocation.id] = invocation.name
        self.entries.append(entry)
        self.updated_at = entry.timestamp
        return entry

    def pending_call_ids(self) -> list[str]:
        """Invocation ids that have not been answered yet."""
        return list(self._open_calls)

    def to_messages(self) -> list[Message]:
        """Messages in request order."""
        return [
            Message(
                role=entry.role,
                content=entry.content,
                tool_call_id=entry.tool_call_id,
                tool_name=entry.tool_name,
                invocations=list(entry.invocations),
            )
            for entry in self.entries
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "messages": [
                {
                    "role": entry.role,
                    "content": entry.content,
                    "tool_call_id": entry.tool_call_id,
                    "tool_name": entry.tool_name,
                    "invocations": [
                        {"id": inv.id, "name": inv.name, "arguments": inv.arguments}
                        for inv in entry.invocations
                    ],
                    "timestamp": entry.timestamp,
                }
                for entry in self.entries
            ],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __len__(self) -> int:
        return len(self.entries)
