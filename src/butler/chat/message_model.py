"""Chat transcript data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


class ChatSender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True)
class ChatTranscriptEntry:
    """Represents a row inside the chat history list."""

    sender: ChatSender
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.sender = ChatSender(self.sender)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the entry for display or export."""

        return {
            "id": self.id,
            "sender": self.sender.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


class ChatTranscript:
    """Append-only chat history.

    Entries are never reordered or removed individually; assistant entries
    may grow in place while a streamed reply is rendered.
    """

    def __init__(self) -> None:
        self._entries: List[ChatTranscriptEntry] = []
        self._index: Dict[str, ChatTranscriptEntry] = {}

    def add_message(self, sender: ChatSender | str, content: str = "") -> ChatTranscriptEntry:
        entry = ChatTranscriptEntry(sender=ChatSender(sender), content=content)
        self._entries.append(entry)
        self._index[entry.id] = entry
        return entry

    def update_message(self, entry_id: str, content: str) -> ChatTranscriptEntry:
        entry = self._get(entry_id)
        entry.content = content
        return entry

    def append_to(self, entry_id: str, fragment: str) -> ChatTranscriptEntry:
        """Append a streamed fragment to an existing entry."""

        entry = self._get(entry_id)
        entry.content += fragment
        return entry

    def clear(self) -> None:
        self._entries.clear()
        self._index.clear()

    def last(self) -> ChatTranscriptEntry | None:
        return self._entries[-1] if self._entries else None

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def _get(self, entry_id: str) -> ChatTranscriptEntry:
        try:
            return self._index[entry_id]
        except KeyError:
            raise KeyError(f"Unknown transcript entry '{entry_id}'") from None

    def __iter__(self) -> Iterator[ChatTranscriptEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
