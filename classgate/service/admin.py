from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from classgate.config import Settings
from classgate.logging import get_logger, redact_sensitive
from classgate.service.audit import AuditRecorder, RequestMeta
from classgate.service.errors import ValidationError
from classgate.service.system_settings import SystemSettingsService
from classgate.storage.models import (
    Account,
    AccountQuery,
    AuditAction,
    AuditEvent,
    AuditFilter,
    Role,
    Severity,
    utcnow,
)

logger = get_logger(__name__)

EXPORT_TYPES = ("users", "audit-logs")
EXPORT_MAX_RECORDS = 10_000


class AdminStore(Protocol):
    def verify_connection(self) -> bool: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def search_accounts(self, query: AccountQuery) -> Tuple[List[Account], int]: ...

    def count_accounts(self, *, is_active: Optional[bool] = None, created_since: Any = None) -> int: ...

    def count_accounts_by_role(self) -> Dict[str, int]: ...

    def registrations_by_day(self, since: datetime) -> List[Tuple[str, int]]: ...

    def list_audit_events(self, filters: Optional[AuditFilter] = None, *, limit: int = 50, offset: int = 0) -> List[AuditEvent]: ...

    def audit_action_counts(self, since: datetime) -> List[Tuple[str, int]]: ...

    def top_audit_actors(self, since: datetime, limit: int = 10) -> List[Tuple[str, int]]: ...


@dataclass
class DashboardStats:
    total: int
    active: int
    inactive: int
    new_today: int
    new_this_week: int
    new_this_month: int
    by_role: Dict[str, int]
    recent_activity: List[AuditEvent] = field(default_factory=list)


@dataclass
class Analytics:
    days: int
    registrations: List[Tuple[str, int]]
    activity_by_action: List[Tuple[str, int]]
    top_active_users: List[Tuple[Account, int]]


@dataclass
class ExportResult:
    export_type: str
    records: List[Any]

    @property
    def record_count(self) -> int:
        return len(self.records)


class AdminService:
    """Dashboard figures, audit browsing, system settings and exports."""

    def __init__(
        self,
        store: AdminStore,
        audit: AuditRecorder,
        system_settings: SystemSettingsService,
        settings: Settings,
        *,
        cache: Any = None,
        cache_fallback: bool = False,
    ) -> None:
        self.store = store
        self.audit = audit
        self.system_settings = system_settings
        self.settings = settings
        self.cache = cache
        self.cache_fallback = cache_fallback
        self._started = time.monotonic()

    def dashboard(self) -> DashboardStats:
        now = utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        by_role = {role.value: 0 for role in Role}
        by_role.update(self.store.count_accounts_by_role())
        total = self.store.count_accounts()
        active = self.store.count_accounts(is_active=True)
        return DashboardStats(
            total=total,
            active=active,
            inactive=total - active,
            new_today=self.store.count_accounts(created_since=day_start),
            new_this_week=self.store.count_accounts(created_since=now - timedelta(days=7)),
            new_this_month=self.store.count_accounts(created_since=month_start),
            by_role=by_role,
            recent_activity=self.audit.recent(20),
        )

    def analytics(self, days: int = 30) -> Analytics:
        since = utcnow() - timedelta(days=days)
        top: List[Tuple[Account, int]] = []
        for user_id, count in self.store.top_audit_actors(since, 10):
            account = self.store.get_account(user_id)
            if account:
                top.append((account, count))
        return Analytics(
            days=days,
            registrations=self.store.registrations_by_day(since),
            activity_by_action=self.store.audit_action_counts(since),
            top_active_users=top,
        )

    def audit_logs(
        self, filters: AuditFilter, *, page: int = 1, limit: int = 50
    ) -> Tuple[List[AuditEvent], int]:
        if filters.start and filters.end and filters.start > filters.end:
            raise ValidationError("startDate must be before endDate", error_code="INVALID_DATE_RANGE")
        return self.audit.system_activity(filters, page=page, limit=limit)

    def get_settings(self) -> Dict[str, Any]:
        return redact_sensitive(self.system_settings.effective())

    def update_settings(
        self,
        actor: Account,
        changes: Dict[str, Dict[str, Any]],
        *,
        request: Optional[RequestMeta] = None,
    ) -> Dict[str, Any]:
        effective, diff = self.system_settings.update(changes)
        self.audit.record(
            AuditAction.SYSTEM_CONFIG_UPDATE,
            actor_id=actor.id,
            resource="System",
            details={
                "updatedSettings": sorted(k for k, v in changes.items() if v),
                "changes": diff,
            },
            severity=Severity.HIGH,
            request=request,
        )
        return redact_sensitive(effective)

    def _cache_status(self) -> str:
        if self.cache is None:
            return "fallback" if self.cache_fallback else "disabled"
        try:
            self.cache.verify_connection()
            return "connected"
        except Exception as exc:
            logger.warning("health_cache_probe_failed", error=str(exc))
            return "disconnected"

    def health(self) -> Dict[str, Any]:
        """Blocking probe of the store and cache; run it off the event loop."""
        db_ok = self.store.verify_connection()
        cache_status = self._cache_status()
        return {
            "status": "healthy" if db_ok and cache_status != "disconnected" else "degraded",
            "timestamp": utcnow().isoformat(),
            "uptime": round(time.monotonic() - self._started, 3),
            "database": "connected" if db_ok else "disconnected",
            "cache": cache_status,
            "version": self.settings.app_version,
            "environment": self.settings.environment,
        }

    def export(
        self,
        actor: Account,
        export_type: str,
        *,
        request: Optional[RequestMeta] = None,
    ) -> ExportResult:
        if export_type not in EXPORT_TYPES:
            raise ValidationError(
                f"Export type must be one of: {', '.join(EXPORT_TYPES)}",
                error_code="INVALID_EXPORT_TYPE",
            )
        if export_type == "users":
            records, _ = self.store.search_accounts(
                AccountQuery(limit=EXPORT_MAX_RECORDS)
            )
        else:
            records = self.store.list_audit_events(None, limit=EXPORT_MAX_RECORDS)
        result = ExportResult(export_type=export_type, records=list(records))
        self.audit.record(
            AuditAction.DATA_EXPORT,
            actor_id=actor.id,
            resource="System",
            details={"exportType": export_type, "recordCount": result.record_count},
            severity=Severity.MEDIUM,
            request=request,
        )
        return result
