"""
Audit Logging Service

Write-only event log for scheduling and calendar operations. Writing an
audit event never blocks or fails the operation being audited.
"""

import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditCategory(Enum):
    """Categories of audit events"""
    APPOINTMENT = "appointment"
    AVAILABILITY = "availability"
    CALENDAR = "calendar"
    AUTHENTICATION = "authentication"
    SYNC = "sync"


class AuditLevel(Enum):
    """Severity levels for audit events"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """Represents an audit event"""
    category: AuditCategory
    action: str
    outcome: str  # success, failure, partial
    level: AuditLevel = AuditLevel.INFO
    doctor_id: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['category'] = self.category.value
        result['level'] = self.level.value
        return result


class AuditSink:
    """Abstract destination for audit events"""

    async def write(self, event: AuditEvent) -> None:
        raise NotImplementedError


class InMemoryAuditSink(AuditSink):
    """Keeps the most recent events in memory (tests, local development)"""

    def __init__(self, maxlen: int = 1000):
        self.events = deque(maxlen=maxlen)

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def find(self, action: str) -> List[AuditEvent]:
        return [e for e in self.events if e.action == action]


class SupabaseAuditSink(AuditSink):
    """Writes audit events to the event_logs table"""

    def __init__(self, supabase_client, table_name: str = "event_logs"):
        self.client = supabase_client
        self.table_name = table_name

    async def write(self, event: AuditEvent) -> None:
        self.client.table(self.table_name).insert(event.to_dict()).execute()


class AuditLogger:
    """Service for logging audit events"""

    def __init__(self, sinks: Optional[List[AuditSink]] = None):
        self.sinks = list(sinks) if sinks is not None else [InMemoryAuditSink()]

    async def log_event(
        self,
        category: AuditCategory,
        action: str,
        outcome: str = "success",
        level: AuditLevel = AuditLevel.INFO,
        doctor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """
        Log an audit event to every sink.

        Sink failures are logged and swallowed: auditing must never block
        the calling operation.

        Args:
            category: Event category
            action: Action performed (e.g., 'event_created')
            outcome: success / failure / partial
            level: Severity level
            doctor_id: Doctor the event belongs to
            resource_id: Affected resource identifier
            resource_type: Affected resource type (appointment, calendar_event, ...)
            details: Extra context; must be JSON-serializable
        """
        event = AuditEvent(
            category=category,
            action=action,
            outcome=outcome,
            level=level,
            doctor_id=doctor_id,
            resource_id=resource_id,
            resource_type=resource_type,
            details=details or {},
        )

        log_method = getattr(logger, level.value, logger.info)
        log_method(f"AUDIT: {json.dumps(event.to_dict(), default=str)}")

        for sink in self.sinks:
            try:
                await sink.write(event)
            except Exception as e:
                logger.warning(f"Failed to write audit event {event.action} to {type(sink).__name__}: {e}")

        return event
