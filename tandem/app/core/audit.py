############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# audit.py: Audit sink for lock, synthesis and evaluation events
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Audit sink.

Every accelerator lock acquire/release/forced release, synthesis phase
transition and evaluation outcome is recorded here. The default sink
writes a structured log line and keeps the most recent records in a
bounded ring for the status endpoint.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from tandem.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    component: str
    action: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink:
    """Structured-log audit sink with an in-memory ring of recent records."""

    def __init__(self, capacity: int = 500, enabled: bool = True):
        self.enabled = enabled
        self._records: Deque[AuditRecord] = deque(maxlen=capacity)

    def record(self, component: str, action: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if not self.enabled:
            return
        entry = AuditRecord(component=component, action=action, metadata=dict(metadata or {}))
        self._records.append(entry)
        logger.info("audit", component=component, action=action, metadata=entry.metadata)

    def recent(self, limit: int = 50, component: Optional[str] = None) -> List[AuditRecord]:
        """Newest-first records, optionally filtered by component."""
        records = [r for r in reversed(self._records) if component is None or r.component == component]
        return records[:limit]

    def __len__(self) -> int:
        return len(self._records)


# Global audit sink instance
_audit_sink: Optional[AuditSink] = None


def get_audit_sink() -> AuditSink:
    """Get the global audit sink, creating it from settings on first use."""
    global _audit_sink
    if _audit_sink is None:
        from tandem.app.settings import get_settings

        settings = get_settings()
        _audit_sink = AuditSink(
            capacity=settings.audit_buffer_size,
            enabled=settings.audit_log_enabled,
        )
    return _audit_sink
