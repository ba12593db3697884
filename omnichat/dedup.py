"""
Per-room duplicate suppression and backlog ordering.
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .events import ChatEvent

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class SeenIdSet:
    """
    Bounded insertion-ordered set of event ids.

    When an insert pushes the set past ``capacity``, the oldest
    ``evict_batch`` ids are dropped in one pass.
    """

    def __init__(self, capacity: int = 5000, evict_batch: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.evict_batch = max(1, min(evict_batch, capacity))
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, event_id: str) -> bool:
        """Insert ``event_id``; return False if it was already present."""
        if event_id in self._ids:
            return False
        self._ids[event_id] = None
        if len(self._ids) > self.capacity:
            for _ in range(self.evict_batch):
                self._ids.popitem(last=False)
        return True

    def clear(self) -> None:
        self._ids.clear()


class DedupReconciler:
    """Owns one ``SeenIdSet`` per room for a single client."""

    def __init__(self, capacity: int = 5000, evict_batch: int = 1000):
        self.capacity = capacity
        self.evict_batch = evict_batch
        self._rooms: Dict[str, SeenIdSet] = {}

    def seen_set(self, room_id: str) -> SeenIdSet:
        seen = self._rooms.get(room_id)
        if seen is None:
            seen = SeenIdSet(self.capacity, self.evict_batch)
            self._rooms[room_id] = seen
        return seen

    def first_seen(self, room_id: str, event_id: Optional[str]) -> bool:
        """Return True if this is the first delivery of ``event_id`` in the room."""
        if not event_id:
            return True
        return self.seen_set(room_id).add(event_id)

    def filter(self, room_id: str, events: Iterable[ChatEvent]) -> List[ChatEvent]:
        return [e for e in events if self.first_seen(room_id, e.event_id)]

    def release(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)

    def reset(self) -> None:
        self._rooms.clear()

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms


def sort_backlog(events: Iterable[ChatEvent]) -> List[ChatEvent]:
    """Sort by timestamp, then by id. Missing timestamps sort first."""
    return sorted(events, key=lambda e: (e.occurred_at or _EPOCH, e.event_id or ""))
