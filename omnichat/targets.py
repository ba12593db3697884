"""
Desired-room bookkeeping.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .events import Platform


@dataclass(frozen=True)
class RoomTarget:
    """A room a consumer asked to watch, by its human handle."""
    platform: Platform
    handle: str


@dataclass
class RoomIdentity:
    """Resolved platform ids for a room."""
    platform: Platform
    room_id: str
    aux: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TargetDiff:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


class TargetRegistry:
    """Ordered set of wanted handles with add/remove diffing."""

    def __init__(self, platform: Platform, normalize=None):
        self.platform = platform
        self._normalize = normalize or (lambda handle: handle.strip())
        self._handles: Dict[str, None] = {}

    def normalize(self, handle: str) -> str:
        return self._normalize(handle)

    def apply(self, handles: Iterable[str]) -> TargetDiff:
        """Replace the wanted set; return what was added and removed."""
        wanted: Dict[str, None] = {}
        for handle in handles:
            key = self.normalize(handle)
            if key:
                wanted[key] = None
        diff = TargetDiff(
            added=[h for h in wanted if h not in self._handles],
            removed=[h for h in self._handles if h not in wanted],
        )
        self._handles = wanted
        return diff

    def discard(self, handle: str) -> None:
        self._handles.pop(self.normalize(handle), None)

    def clear(self) -> List[str]:
        removed = list(self._handles)
        self._handles = {}
        return removed

    def target(self, handle: str) -> Optional[RoomTarget]:
        key = self.normalize(handle)
        if key not in self._handles:
            return None
        return RoomTarget(self.platform, key)

    def __contains__(self, handle: str) -> bool:
        return self.normalize(handle) in self._handles

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._handles))

    def __len__(self) -> int:
        return len(self._handles)
