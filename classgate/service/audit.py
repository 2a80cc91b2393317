from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from classgate.logging import get_logger, redact_sensitive
from classgate.service.errors import ValidationError
from classgate.storage.cursors import decode_time_id_cursor, encode_time_id_cursor
from classgate.storage.models import (
    AuditAction,
    AuditEvent,
    AuditFilter,
    AuditStatus,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self,
        filters: Optional[AuditFilter] = None,
        *,
        limit: int = 50,
        offset: int = 0,
        before: Optional[Tuple[Any, str]] = None,
    ) -> List[AuditEvent]: ...

    def count_audit_events(self, filters: Optional[AuditFilter] = None) -> int: ...


@dataclass
class RequestMeta:
    """Who and where a request came from, as recorded on audit events."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None


class AuditRecorder:
    """Append-only audit trail.

    ``record`` writes synchronously and lets store failures propagate: an
    action that cannot be audited must not look successful.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        *,
        actor_id: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Severity = Severity.LOW,
        status: AuditStatus = AuditStatus.SUCCESS,
        request: Optional[RequestMeta] = None,
    ) -> AuditEvent:
        meta = request or RequestMeta()
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=AuditAction(action),
            user_id=actor_id,
            resource=resource,
            resource_id=resource_id,
            details=redact_sensitive(details or {}),
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            severity=Severity(severity),
            status=AuditStatus(status),
            timestamp=utcnow(),
        )
        self.store.append_audit_event(event)
        log = logger.warning if event.severity in (Severity.HIGH, Severity.CRITICAL) else logger.info
        log(
            "audit_event_recorded",
            action=event.action.value,
            severity=event.severity.value,
            status=event.status.value,
            user_id=actor_id,
            resource=resource,
            resource_id=resource_id,
        )
        return event

    def user_activity(
        self, user_id: str, *, limit: int = 50, cursor: Optional[str] = None
    ) -> Tuple[List[AuditEvent], Optional[str]]:
        """Newest-first events for one actor plus the cursor for the next page."""
        before = None
        if cursor:
            try:
                before = decode_time_id_cursor(cursor)
            except ValueError:
                raise ValidationError("Invalid cursor", error_code="INVALID_CURSOR")
        events = self.store.list_audit_events(
            AuditFilter(user_id=user_id), limit=limit + 1, before=before
        )
        next_cursor = None
        if len(events) > limit:
            events = events[:limit]
            last = events[-1]
            next_cursor = encode_time_id_cursor(last.timestamp, last.id)
        return events, next_cursor

    def system_activity(
        self,
        filters: Optional[AuditFilter] = None,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[AuditEvent], int]:
        """One page of system-wide events (newest first) and the match total."""
        filters = filters or AuditFilter()
        offset = (max(page, 1) - 1) * limit
        events = self.store.list_audit_events(filters, limit=limit, offset=offset)
        return events, self.store.count_audit_events(filters)

    def recent(self, limit: int = 20) -> List[AuditEvent]:
        return self.store.list_audit_events(None, limit=limit)
