"""Tool-call identity: names, fingerprints and the rolling status history."""

import json
import struct
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .logger import get_logger
from .models import FunctionCall, ToolCallStatus, UNKNOWN_TOOL, parse_function_call

_log = get_logger(__name__)

__all__ = ["tool_name", "fingerprint", "rolling_hash", "ToolCallHistory", "HISTORY_LIMIT"]

HISTORY_LIMIT = 10
STATUSES = ("pending", "success", "error")


def tool_name(call: Any) -> str:
    call = parse_function_call(call)
    return call.name or UNKNOWN_TOOL


def _canonical_args(args: Dict[str, Any]) -> str:
    return json.dumps(args, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def rolling_hash(text: str) -> int:
    """32-bit signed ``h = h * 31 + unit`` over UTF-16 code units.

    Used for cache keys only, not security.
    """
    h = 0
    raw = text.encode("utf-16-le")
    for (unit,) in struct.iter_unpack("<H", raw):
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def fingerprint(call: Any) -> str:
    """Stable id for a tool call.

    A provider-assigned id wins. Otherwise the id is derived from the name
    and the key-sorted argument JSON, so the same call always maps to the
    same id within and across processes.
    """
    call = parse_function_call(call)
    if call.id:
        return call.id
    name = call.name or UNKNOWN_TOOL
    return f"tool_{abs(rolling_hash(f'{name}_{_canonical_args(call.args)}'))}_{name}"


class ToolCallHistory:
    """Bounded, ordered record of recent tool-call outcomes.

    Presentation only: recording a status never blocks or orders execution.
    """

    def __init__(self, limit: int = HISTORY_LIMIT, clock: Callable[[], float] = time.time):
        self.limit = limit
        self._clock = clock
        self._entries: List[ToolCallStatus] = []
        self._lock = threading.Lock()

    def record_status(self, call: FunctionCall, status: str,
                      error_message: Optional[str] = None) -> ToolCallStatus:
        if status not in STATUSES:
            raise ValueError(f"Unknown tool status: {status}")
        call_id = fingerprint(call)
        now = self._clock()
        with self._lock:
            for i, entry in enumerate(self._entries):
                if entry.id == call_id:
                    record = entry.updated(status, now, error_message)
                    self._entries[i] = record
                    break
            else:
                record = ToolCallStatus(
                    id=call_id, name=tool_name(call), status=status,
                    timestamp=now, error_message=error_message,
                )
                self._entries.append(record)
            self._entries = self._entries[-self.limit:]
        _log.info("tool %s -> %s", call_id, status)
        return record

    def entries(self) -> List[ToolCallStatus]:
        with self._lock:
            return list(self._entries)

    def get(self, call_id: str) -> Optional[ToolCallStatus]:
        with self._lock:
            return next((e for e in self._entries if e.id == call_id), None)

    def clear(self):
        with self._lock:
            self._entries = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
