"""
Audit logger.

Every logged event is appended to a capped in-memory ring (serving search,
statistics and export) and to a write buffer that is flushed to the file sink
when it reaches ``buffer_size`` or on the flush timer, whichever comes first.
Sink failures are reported through loguru and never reach the caller.
"""

import threading
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from loguru import logger

from ..config import AuditConfig
from ..errors import StorageUnavailableError
from ..scheduler import PeriodicTask
from .export import export_events
from .models import AuditEvent, AuditQuery, AuditStatistics, Category, Severity
from .storage import AuditFileStorage


_HIGH_SEVERITY_MARKERS = ("error", "failed", "breach")
_MEDIUM_SEVERITY_MARKERS = ("warning", "suspicious")
_CATEGORY_PREFIXES = (
    ("auth.", Category.AUTH),
    ("user.", Category.USER),
    ("api.", Category.API),
    ("security.", Category.SECURITY),
    ("data.", Category.DATA),
)

PURGE_INTERVAL_SECONDS = 24 * 60 * 60
TOP_N = 10


def infer_severity(event: str) -> Severity:
    name = event.lower()
    if any(marker in name for marker in _HIGH_SEVERITY_MARKERS):
        return Severity.HIGH
    if any(marker in name for marker in _MEDIUM_SEVERITY_MARKERS):
        return Severity.MEDIUM
    return Severity.LOW


def infer_category(event: str) -> Category:
    for prefix, category in _CATEGORY_PREFIXES:
        if event.startswith(prefix):
            return category
    return Category.SYSTEM


class AuditLogger:
    """
    Buffered, queryable audit event sink.

    Attributes:
        retention_days: In-memory events older than this are purged
        buffer_size: Flush threshold
        storage: File sink (None when file output is disabled)
    """

    def __init__(
        self,
        log_directory: Union[str, Path] = "./logs/audit",
        max_file_size: int = 10 * 1024 * 1024,
        max_files: int = 10,
        retention_days: int = 90,
        buffer_size: int = 100,
        flush_interval_seconds: float = 5.0,
        max_events_in_memory: int = 10000,
        enable_console_output: bool = True,
        enable_file_output: bool = True,
        enabled: bool = True,
        purge_interval_seconds: float = PURGE_INTERVAL_SECONDS,
    ):
        self.enabled = enabled
        self.retention_days = retention_days
        self.buffer_size = buffer_size
        self.enable_console_output = enable_console_output

        self.storage: Optional[AuditFileStorage] = None
        if enable_file_output:
            self.storage = AuditFileStorage(Path(log_directory), max_file_size, max_files)

        self._events: Deque[AuditEvent] = deque(maxlen=max_events_in_memory)
        self._events_lock = threading.RLock()

        self._buffer: List[AuditEvent] = []
        self._buffer_lock = threading.Lock()

        self._flush_task = PeriodicTask("audit-flush", self.flush, flush_interval_seconds)
        self._purge_task = PeriodicTask("audit-purge", self.purge_old_logs, purge_interval_seconds)

    @classmethod
    def from_config(cls, config: AuditConfig, purge_interval_seconds: float = PURGE_INTERVAL_SECONDS) -> "AuditLogger":
        return cls(
            log_directory=config.log_directory,
            max_file_size=config.max_file_size,
            max_files=config.max_files,
            retention_days=config.retention_days,
            buffer_size=config.buffer_size,
            flush_interval_seconds=config.flush_interval_seconds,
            max_events_in_memory=config.max_events_in_memory,
            enable_console_output=config.enable_console_output,
            enable_file_output=config.enable_file_output,
            enabled=config.enabled,
            purge_interval_seconds=purge_interval_seconds,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start the flush and daily purge timers."""
        if not self.enabled:
            return
        self._flush_task.start()
        self._purge_task.start()

    def close(self) -> None:
        """Stop the timers and flush whatever is still buffered."""
        self._flush_task.stop()
        self._purge_task.stop()
        self.flush()

    # ========================================================================
    # Logging
    # ========================================================================

    def log(
        self,
        event: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[Union[Severity, str]] = None,
        category: Optional[Union[Category, str]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """
        Record an audit event.

        Severity and category are inferred from the event name when omitted.

        Returns:
            The recorded event, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        audit_event = AuditEvent(
            id=f"audit_{uuid.uuid4().hex}",
            timestamp=datetime.now(timezone.utc),
            event=event,
            severity=Severity(severity) if severity else infer_severity(event),
            category=Category(category) if category else infer_category(event),
            success=success,
            details=dict(details or {}),
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            resource=resource,
            action=action,
            error_message=error_message,
        )

        with self._events_lock:
            self._events.append(audit_event)

        with self._buffer_lock:
            self._buffer.append(audit_event)
            should_flush = len(self._buffer) >= self.buffer_size

        if self.enable_console_output:
            self._log_to_console(audit_event)

        if should_flush:
            self.flush()

        return audit_event

    def log_auth_event(self, event: str, details: Optional[Dict[str, Any]] = None, success: bool = True, **options) -> Optional[AuditEvent]:
        return self.log(
            event,
            details,
            category=Category.AUTH,
            severity=Severity.LOW if success else Severity.MEDIUM,
            success=success,
            **options,
        )

    def log_security_event(
        self,
        event: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Union[Severity, str] = Severity.HIGH,
        **options,
    ) -> Optional[AuditEvent]:
        severity = Severity(severity)
        return self.log(
            event,
            details,
            category=Category.SECURITY,
            severity=severity,
            success=severity is Severity.LOW,
            **options,
        )

    def log_data_access(self, resource: str, action: str, details: Optional[Dict[str, Any]] = None, **options) -> Optional[AuditEvent]:
        return self.log(
            f"data.{action}",
            details,
            category=Category.DATA,
            severity=Severity.LOW,
            resource=resource,
            action=action,
            **options,
        )

    def log_api_call(
        self,
        endpoint: str,
        method: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        **options,
    ) -> Optional[AuditEvent]:
        method = method.lower()
        return self.log(
            f"api.{method}",
            details,
            category=Category.API,
            severity=Severity.LOW if success else Severity.MEDIUM,
            resource=endpoint,
            action=method,
            success=success,
            **options,
        )

    def _log_to_console(self, event: AuditEvent) -> None:
        message = f"[AUDIT] [{event.category.value.upper()}] {event.event} {event.details}"
        if event.success:
            logger.info(message)
        else:
            logger.warning(f"{message} {event.error_message or ''}".rstrip())

    # ========================================================================
    # Durability
    # ========================================================================

    def flush(self) -> int:
        """
        Write buffered events to the file sink.

        A sink failure is logged and the batch is dropped from the buffer;
        the events stay queryable in memory.

        Returns:
            Number of events taken from the buffer
        """
        with self._buffer_lock:
            batch = self._buffer
            self._buffer = []

        if not batch or self.storage is None:
            return len(batch)

        try:
            self.storage.write(batch)
        except StorageUnavailableError as e:
            logger.error(f"Audit sink unavailable, {len(batch)} events not persisted: {e.message}")
        return len(batch)

    def pending(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def load_from_storage(self) -> int:
        """
        Rehydrate the in-memory ring from the persisted files.

        Returns:
            Number of events loaded
        """
        if self.storage is None:
            return 0

        loaded = list(self.storage.read_events())
        with self._events_lock:
            known = {e.id for e in self._events}
            fresh = [e for e in loaded if e.id not in known]
            merged = sorted(list(self._events) + fresh, key=lambda e: e.timestamp)
            self._events.clear()
            self._events.extend(merged)

        logger.info(f"Loaded {len(fresh)} audit events from {self.storage.directory}")
        return len(fresh)

    # ========================================================================
    # Queries
    # ========================================================================

    def _snapshot(self) -> List[AuditEvent]:
        with self._events_lock:
            return list(self._events)

    def recent(self, count: int = 50) -> List[AuditEvent]:
        """Latest events, newest first."""
        events = self._snapshot()
        return list(reversed(events[-count:])) if count > 0 else []

    def search(self, query: Optional[AuditQuery] = None, **criteria) -> List[AuditEvent]:
        """
        Filter events, newest first, with offset/limit pagination.

        Args:
            query: AuditQuery; alternatively pass its fields as keywords
        """
        if query is None:
            query = AuditQuery(**criteria)

        matched = [e for e in self._snapshot() if query.matches(e)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[query.offset:query.offset + query.limit]

    def get_statistics(self, time_range: Optional[Tuple[datetime, datetime]] = None) -> AuditStatistics:
        events = self._snapshot()
        if time_range is not None:
            start, end = time_range
            events = [e for e in events if start <= e.timestamp <= end]

        by_category = Counter(e.category.value for e in events)
        by_severity = Counter(e.severity.value for e in events)
        users = Counter(e.user_id for e in events if e.user_id)
        ips = Counter(e.ip_address for e in events if e.ip_address)
        failures = sum(1 for e in events if not e.success)

        if time_range is None:
            if events:
                timestamps = [e.timestamp for e in events]
                time_range = (min(timestamps), max(timestamps))
            else:
                now = datetime.now(timezone.utc)
                time_range = (now, now)

        return AuditStatistics(
            total_events=len(events),
            events_by_category=dict(by_category),
            events_by_severity=dict(by_severity),
            top_users=users.most_common(TOP_N),
            top_ip_addresses=ips.most_common(TOP_N),
            failure_rate=failures / len(events) if events else 0.0,
            time_range=time_range,
        )

    def export_logs(self, export_format: str = "json", query: Optional[AuditQuery] = None) -> str:
        """
        Export events as json, csv or xml.

        Without a query every in-memory event is exported, oldest first.

        Raises:
            UnsupportedExportFormatError: For an unknown format
        """
        events = self.search(query) if query is not None else self._snapshot()
        return export_events(events, export_format)

    # ========================================================================
    # Retention
    # ========================================================================

    def purge_old_logs(self, now: Optional[datetime] = None) -> int:
        """
        Drop in-memory events older than the retention window.

        Always records an ``audit.purge`` event carrying the purged count.

        Returns:
            Number of events purged
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.retention_days)

        with self._events_lock:
            before = len(self._events)
            kept = [e for e in self._events if e.timestamp >= cutoff]
            self._events.clear()
            self._events.extend(kept)
            purged = before - len(kept)

        self.log(
            "audit.purge",
            {
                "purgedCount": purged,
                "cutoffDate": cutoff.isoformat(),
                "retentionDays": self.retention_days,
            },
            category=Category.SYSTEM,
            severity=Severity.LOW,
        )
        return purged

    def __len__(self) -> int:
        with self._events_lock:
            return len(self._events)
