"""
Structured records of unexpected wire shapes, kept for offline triage.
"""

import json
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

PREVIEW_LIMIT = 2000


class DiagnosticsSink:
    """
    Receives ``(category, kind, preview, fields)`` records.

    Records go to the debug log and, when ``path`` is set, to a JSONL file
    through a queued loguru sink, so the caller's loop never waits on disk.
    ``record`` never raises: a failing sink must not disturb the socket or
    poll loop that called it.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._handler_id: Optional[int] = None
        if path:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._handler_id = logger.add(
                path,
                level="DEBUG",
                format="{extra[diagnostic]}",
                filter=self._owns,
                encoding="utf-8",
                enqueue=True,
            )

    def _owns(self, record) -> bool:
        return record["extra"].get("diagnostic_sink") == id(self)

    def record(self, category: str, kind: str, preview: Optional[str] = None, **fields: Any) -> None:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "category": category,
            "kind": kind,
        }
        if preview is not None:
            entry["preview"] = preview[:PREVIEW_LIMIT]
        entry.update(fields)
        try:
            self.write(entry)
        except Exception as e:
            logger.debug(f"[Diagnostics] Failed to write {category}/{kind}: {e}")

    def write(self, entry: Dict[str, Any]) -> None:
        line = json.dumps(entry, default=str, ensure_ascii=False)
        logger.bind(diagnostic_sink=id(self), diagnostic=line).debug(
            f"[Diagnostics] {entry['category']}/{entry['kind']} {entry.get('preview', '')[:200]}"
        )

    def close(self) -> None:
        """Flush queued records and detach the JSONL file."""
        handler_id, self._handler_id = self._handler_id, None
        if handler_id is not None:
            logger.remove(handler_id)


class TypeTracker:
    """Counts frame type tokens seen during one session."""

    def __init__(self):
        self.counts: Counter = Counter()

    def observe(self, token: str) -> bool:
        """Count ``token``; return True the first time it is seen this session."""
        self.counts[token] += 1
        return self.counts[token] == 1

    def reset(self) -> None:
        self.counts.clear()
