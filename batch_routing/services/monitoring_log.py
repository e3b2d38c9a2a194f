"""
Append-only audit log of optimization decisions.
"""
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from batch_routing.core.route_types import LogSeverity, MonitoringLogEntry
from batch_routing.utils.helpers import safe_json_dumps

logger = logging.getLogger(__name__)


class MonitoringLog:
    """
    Thread-safe in-memory store of MonitoringLogEntry records.

    Every entry is mirrored to the module logger at the matching level and
    forwarded to any registered sinks (e.g. a persistence layer).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: List[MonitoringLogEntry] = []
        self._sinks: List[Callable[[MonitoringLogEntry], None]] = []

    def add_sink(self, sink: Callable[[MonitoringLogEntry], None]) -> None:
        with self._lock:
            self._sinks.append(sink)

    def record(
        self,
        batch_id: str,
        event_type: str,
        severity: LogSeverity,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> MonitoringLogEntry:
        entry = MonitoringLogEntry(
            batch_id=batch_id,
            event_type=event_type,
            severity=LogSeverity(severity),
            message=message,
            data=dict(data or {}),
        )
        with self._lock:
            self._entries.append(entry)
            sinks = list(self._sinks)

        if entry.data:
            logger.log(entry.severity.level, f"[{batch_id}] {event_type}: {message} {safe_json_dumps(entry.data)}")
        else:
            logger.log(entry.severity.level, f"[{batch_id}] {event_type}: {message}")

        for sink in sinks:
            try:
                sink(entry)
            except Exception as e:
                logger.error(f"Monitoring log sink failed: {e}", exc_info=True)
        return entry

    def entries(self, batch_id: Optional[str] = None, event_type: Optional[str] = None) -> List[MonitoringLogEntry]:
        with self._lock:
            result = list(self._entries)
        if batch_id is not None:
            result = [e for e in result if e.batch_id == batch_id]
        if event_type is not None:
            result = [e for e in result if e.event_type == event_type]
        return result

    def __len__(self):
        with self._lock:
            return len(self._entries)
