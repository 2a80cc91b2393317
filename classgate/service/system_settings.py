from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Protocol, Tuple

from classgate.config import Settings
from classgate.logging import get_logger

logger = get_logger(__name__)

# Sections admins may change; "email" mirrors SMTP env and is read-only
EDITABLE_SECTIONS = ("general", "security", "features")


class SettingsStore(Protocol):
    def get_system_settings(self) -> Dict[str, Any]: ...

    def set_system_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class SecurityPolicy:
    max_login_attempts: int
    lockout_duration: timedelta
    token_ttl: timedelta
    password_min_length: int = 8


class SystemSettingsService:
    """Admin-managed settings persisted in the store, env values as defaults."""

    def __init__(self, store: SettingsStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _defaults(self) -> Dict[str, Any]:
        return {
            "general": {
                "siteName": "Classgate",
                "siteDescription": "Learning management platform",
                "maintenanceMode": False,
            },
            "security": {
                "maxLoginAttempts": self.settings.max_login_attempts,
                "lockoutDuration": self.settings.lockout_duration_minutes,
                "sessionTimeout": max(1, self.settings.token_ttl.days),
                "passwordMinLength": 8,
            },
            "email": {
                "smtpHost": self.settings.smtp_host,
                "smtpPort": self.settings.smtp_port,
                "smtpUser": self.settings.smtp_user,
                "fromEmail": self.settings.email_from_address,
                "fromName": self.settings.email_from_name,
            },
            "features": {
                "userRegistration": self.settings.allow_signup,
                "emailVerification": True,
            },
        }

    def overrides(self) -> Dict[str, Any]:
        stored = self.store.get_system_settings() or {}
        return {
            section: dict(stored.get(section) or {})
            for section in EDITABLE_SECTIONS
            if stored.get(section)
        }

    def effective(self) -> Dict[str, Any]:
        merged = self._defaults()
        for section, values in self.overrides().items():
            merged[section].update(values)
        return merged

    def security_policy(self) -> SecurityPolicy:
        overrides = self.overrides().get("security", {})
        security = self.effective()["security"]
        if "sessionTimeout" in overrides:
            token_ttl = timedelta(days=int(overrides["sessionTimeout"]))
        else:
            token_ttl = self.settings.token_ttl
        return SecurityPolicy(
            max_login_attempts=int(security["maxLoginAttempts"]),
            lockout_duration=timedelta(minutes=int(security["lockoutDuration"])),
            token_ttl=token_ttl,
            password_min_length=int(security["passwordMinLength"]),
        )

    def registration_enabled(self) -> bool:
        return bool(self.effective()["features"]["userRegistration"])

    def update(self, changes: Dict[str, Dict[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Merge ``changes`` into the persisted overrides.

        Returns the new effective settings and a ``{"section.key": {"from", "to"}}``
        diff of values that actually changed.
        """
        before = self.effective()
        stored = copy.deepcopy(self.overrides())
        for section, values in changes.items():
            if section not in EDITABLE_SECTIONS or not values:
                continue
            stored.setdefault(section, {}).update(values)
        self.store.set_system_settings(stored)
        after = self.effective()
        diff: Dict[str, Any] = {}
        for section in EDITABLE_SECTIONS:
            for key, value in after[section].items():
                previous = before[section].get(key)
                if previous != value:
                    diff[f"{section}.{key}"] = {"from": previous, "to": value}
        logger.info("system_settings_updated", changed=sorted(diff))
        return after, diff
