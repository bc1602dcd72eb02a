"""Bounded ledger of approval requests awaiting an operator decision.

Entries are keyed by request id and kept most-recent-first. The ledger is not
thread-safe on its own; callers hold the observatory lock.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterator

LEDGER_CAPACITY = 20


@dataclass
class ApprovalRequest:
    id: str
    command: str = ''
    received_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'command': self.command,
            'received_at': time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(self.received_at)),
        }


class ApprovalLedger:
    """Upsert/remove collection of pending approvals, capped at ``capacity``."""

    def __init__(self, capacity: int = LEDGER_CAPACITY):
        self.capacity = max(1, int(capacity))
        self._entries: list[ApprovalRequest] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ApprovalRequest]:
        return iter(list(self._entries))

    def _index_of(self, request_id: str) -> int:
        for idx, entry in enumerate(self._entries):
            if entry.id == request_id:
                return idx
        return -1

    def get(self, request_id: str) -> ApprovalRequest | None:
        idx = self._index_of(request_id)
        return self._entries[idx] if idx >= 0 else None

    def upsert(self, request: ApprovalRequest) -> ApprovalRequest:
        """Insert or merge ``request``, move it to the front and enforce the cap."""
        idx = self._index_of(request.id)
        if idx >= 0:
            entry = self._entries.pop(idx)
            if request.command:
                entry.command = request.command
            entry.received_at = request.received_at
        else:
            entry = request
        self._entries.insert(0, entry)
        del self._entries[self.capacity:]
        return entry

    def remove(self, request_id: str) -> bool:
        idx = self._index_of(request_id)
        if idx < 0:
            return False
        del self._entries[idx]
        return True

    def most_recent(self) -> ApprovalRequest | None:
        return self._entries[0] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]
