"""
In-memory registry of active calls.

Rebuilt wholesale from every snapshot and patched by lifecycle events.
Lookups and removals of unknown call ids are silent no-ops.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog

from .models import CallRecord

logger = structlog.get_logger(__name__)


class CallRegistry:
    """Call id -> last-known CallRecord."""

    def __init__(self):
        self._calls: Dict[str, CallRecord] = {}

    def apply_snapshot(self, records: Iterable[CallRecord]) -> int:
        """Replace the whole registry; records without a call id are skipped."""
        self._calls.clear()
        for record in records:
            if record.call_id:
                self._calls[record.call_id] = record
        return len(self._calls)

    def upsert(self, call_id: str, **fields: Any) -> CallRecord:
        """Create the record or merge ``fields`` into the existing one."""
        record = self._calls.get(call_id)
        if record is None:
            record = CallRecord(call_id=call_id)
            self._calls[call_id] = record
        record.merge(**fields)
        return record

    def update(self, call_id: str, **fields: Any) -> bool:
        """Merge into an existing record only; returns False if the call is unknown."""
        record = self._calls.get(call_id)
        if record is None:
            logger.debug("Update for unknown call ignored", call_id=call_id, fields=list(fields))
            return False
        record.merge(**fields)
        return True

    def remove(self, call_id: str) -> Optional[CallRecord]:
        return self._calls.pop(call_id, None)

    def get(self, call_id: str) -> Optional[CallRecord]:
        return self._calls.get(call_id)

    def list(self) -> List[CallRecord]:
        return list(self._calls.values())

    def clear(self) -> None:
        self._calls.clear()

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)
