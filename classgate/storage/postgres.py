from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from classgate.logging import get_logger
from classgate.storage.errors import ConstraintViolation
from classgate.storage.models import (
    Account,
    AccountQuery,
    AuditAction,
    AuditEvent,
    AuditFilter,
    AuditStatus,
    Role,
    Severity,
    default_preferences,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student'
            CHECK (role IN ('admin', 'instructor', 'student')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        email_verification_token TEXT,
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        profile JSONB NOT NULL DEFAULT '{}'::jsonb,
        preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_account_email_key ON app_account (lower(email))",
    "CREATE INDEX IF NOT EXISTS app_account_created_idx ON app_account (created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES app_account(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        resource TEXT,
        resource_id TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_address TEXT,
        user_agent TEXT,
        severity TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_user_idx ON audit_event (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS audit_event_action_idx ON audit_event (action, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS audit_event_created_idx ON audit_event (created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS system_setting (
        name TEXT PRIMARY KEY,
        config JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_UPDATABLE_COLUMNS = frozenset({
    "email",
    "first_name",
    "last_name",
    "role",
    "is_active",
    "is_email_verified",
    "failed_login_count",
    "lock_until",
    "last_login",
    "email_verification_token",
    "password_reset_token",
    "password_reset_expires",
    "profile",
    "preferences",
})
_JSON_COLUMNS = frozenset({"profile", "preferences"})


class PostgresStore:
    """Postgres-backed account and audit store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes when they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except Exception as exc:
            self.logger.warning("postgres_health_check_failed", error=str(exc))
            return False

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=Role(row.get("role", Role.STUDENT.value)),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            failed_login_count=row.get("failed_login_count", 0),
            lock_until=row.get("lock_until"),
            last_login=row.get("last_login"),
            email_verification_token=row.get("email_verification_token"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            profile=row.get("profile") or {},
            preferences=row.get("preferences") or default_preferences(),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        return AuditEvent(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            action=AuditAction(row["action"]),
            resource=row.get("resource"),
            resource_id=row.get("resource_id"),
            details=row.get("details") or {},
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            severity=Severity(row["severity"]),
            status=AuditStatus(row["status"]),
            timestamp=row["created_at"],
        )

    # accounts
    def create_account(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str,
        role: Role = Role.STUDENT,
        is_active: bool = True,
        is_email_verified: bool = False,
        email_verification_token: Optional[str] = None,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_account (
                        id, email, first_name, last_name, role, is_active,
                        is_email_verified, email_verification_token, preferences
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        email.lower(),
                        first_name,
                        last_name,
                        Role(role).value,
                        is_active,
                        is_email_verified,
                        email_verification_token,
                        json.dumps(default_preferences()),
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, code="USER_EXISTS"
            )
        return self._account_from_row(row)

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_account WHERE {where} LIMIT 1", params
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("lower(email) = lower(%s)", (email,))

    def claim_verification_token(self, token: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET is_email_verified = TRUE, email_verification_token = NULL, updated_at = now()
                WHERE email_verification_token = %s
                RETURNING *
                """,
                (token,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def claim_reset_token(self, token: str) -> Optional[Account]:
        """Clear an unexpired reset token and return its holder, at most once."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET password_reset_token = NULL, password_reset_expires = NULL, updated_at = now()
                WHERE password_reset_token = %s AND password_reset_expires > now()
                RETURNING *
                """,
                (token,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        assignments = []
        params: List[Any] = []
        for column, value in fields.items():
            if column in _JSON_COLUMNS:
                value = json.dumps(value)
            elif column == "role":
                value = Role(value).value
            elif column == "email":
                value = value.lower()
            assignments.append(f"{column} = %s")
            params.append(value)
        params.append(account_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_account SET {', '.join(assignments)}, updated_at = now() "
                    "WHERE id = %s RETURNING *",
                    tuple(params),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, code="USER_EXISTS"
            )
        return self._account_from_row(row) if row else None

    def register_failed_login(
        self, account_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Optional[Account]:
        """Single-statement counter bump; every CASE reads the pre-update row."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account SET
                    failed_login_count = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= now() THEN 1
                        ELSE failed_login_count + 1
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until > now() THEN lock_until
                        WHEN lock_until IS NOT NULL AND lock_until <= now() THEN
                            CASE WHEN 1 >= %(max)s THEN now() + %(lockout)s ELSE NULL END
                        WHEN failed_login_count + 1 >= %(max)s THEN now() + %(lockout)s
                        ELSE NULL
                    END,
                    updated_at = now()
                WHERE id = %(id)s
                RETURNING *
                """,
                {"id": account_id, "max": max_attempts, "lockout": lockout},
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login_success(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET failed_login_count = 0, lock_until = NULL,
                    last_login = now(), updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    @staticmethod
    def _account_where(query: AccountQuery) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.text:
            pattern = f"%{query.text}%"
            clauses.append("(first_name ILIKE %s OR last_name ILIKE %s OR email ILIKE %s)")
            params.extend([pattern, pattern, pattern])
        if query.role is not None:
            clauses.append("role = %s")
            params.append(Role(query.role).value)
        if query.is_active is not None:
            clauses.append("is_active = %s")
            params.append(query.is_active)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def search_accounts(self, query: AccountQuery) -> Tuple[List[Account], int]:
        where, params = self._account_where(query)
        # sort_field is an enum so the column name is never caller-controlled
        direction = "DESC" if query.descending else "ASC"
        order = f"ORDER BY {query.sort_field.attribute} {direction} NULLS LAST, id {direction}"
        page_sql = ""
        page_params: List[Any] = []
        if query.limit is not None:
            page_sql = "LIMIT %s OFFSET %s"
            page_params = [query.limit, query.offset]
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_account {where} {order} {page_sql}",
                tuple(params + page_params),
            ).fetchall()
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM app_account {where}", tuple(params)
            ).fetchone()
        return [self._account_from_row(r) for r in rows], int(total_row["total"])

    def count_accounts(
        self,
        *,
        is_active: Optional[bool] = None,
        created_since: Optional[datetime] = None,
    ) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        if created_since is not None:
            clauses.append("created_at >= %s")
            params.append(created_since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS total FROM app_account {where}", tuple(params)
            ).fetchone()
        return int(row["total"])

    def count_accounts_by_role(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role, count(*) AS total FROM app_account GROUP BY role"
            ).fetchall()
        return {row["role"]: int(row["total"]) for row in rows}

    def registrations_by_day(self, since: datetime) -> List[Tuple[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT to_char(date_trunc('day', created_at AT TIME ZONE 'UTC'), 'YYYY-MM-DD') AS day,
                       count(*) AS total
                FROM app_account
                WHERE created_at >= %s
                GROUP BY 1
                ORDER BY 1
                """,
                (since,),
            ).fetchall()
        return [(row["day"], int(row["total"])) for row in rows]

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (
                    id, user_id, action, resource, resource_id, details,
                    ip_address, user_agent, severity, status, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.action.value,
                    event.resource,
                    event.resource_id,
                    json.dumps(event.details),
                    event.ip_address,
                    event.user_agent,
                    event.severity.value,
                    event.status.value,
                    event.timestamp,
                ),
            )
        return event

    @staticmethod
    def _audit_where(filters: Optional[AuditFilter]) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters is None:
            return clauses, params
        if filters.action is not None:
            clauses.append("action = %s")
            params.append(filters.action.value)
        if filters.resource is not None:
            clauses.append("resource = %s")
            params.append(filters.resource)
        if filters.severity is not None:
            clauses.append("severity = %s")
            params.append(filters.severity.value)
        if filters.status is not None:
            clauses.append("status = %s")
            params.append(filters.status.value)
        if filters.user_id is not None:
            clauses.append("user_id = %s")
            params.append(filters.user_id)
        if filters.start is not None:
            clauses.append("created_at >= %s")
            params.append(filters.start)
        if filters.end is not None:
            clauses.append("created_at <= %s")
            params.append(filters.end)
        return clauses, params

    def list_audit_events(
        self,
        filters: Optional[AuditFilter] = None,
        *,
        limit: int = 50,
        offset: int = 0,
        before: Optional[Tuple[datetime, str]] = None,
    ) -> List[AuditEvent]:
        clauses, params = self._audit_where(filters)
        if before is not None:
            clauses.append("(created_at, id) < (%s, %s)")
            params.extend(before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} "
                "ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
                tuple(params + [limit, offset]),
            ).fetchall()
        return [self._audit_from_row(r) for r in rows]

    def count_audit_events(self, filters: Optional[AuditFilter] = None) -> int:
        clauses, params = self._audit_where(filters)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS total FROM audit_event {where}", tuple(params)
            ).fetchone()
        return int(row["total"])

    def audit_action_counts(self, since: datetime) -> List[Tuple[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT action, count(*) AS total FROM audit_event
                WHERE created_at >= %s
                GROUP BY action ORDER BY total DESC, action ASC
                """,
                (since,),
            ).fetchall()
        return [(row["action"], int(row["total"])) for row in rows]

    def top_audit_actors(self, since: datetime, limit: int = 10) -> List[Tuple[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, count(*) AS total FROM audit_event
                WHERE created_at >= %s AND user_id IS NOT NULL
                GROUP BY user_id ORDER BY total DESC LIMIT %s
                """,
                (since, limit),
            ).fetchall()
        return [(row["user_id"], int(row["total"])) for row in rows]

    # system settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config FROM system_setting WHERE name = %s", ("default",)
            ).fetchone()
        raw_config = row.get("config") if row else {}
        if isinstance(raw_config, str):
            try:
                return json.loads(raw_config)
            except ValueError as exc:
                self.logger.warning("system_settings_parse_failed", error=str(exc))
                return {}
        return dict(raw_config or {})

    def set_system_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_setting (name, config, created_at, updated_at)
                VALUES (%s, %s, now(), now())
                ON CONFLICT (name) DO UPDATE SET config = EXCLUDED.config, updated_at = EXCLUDED.updated_at
                """,
                ("default", json.dumps(settings)),
            )
        return dict(settings)
