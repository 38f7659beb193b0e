"""Security audit trail.

Events are appended as JSON lines to one file per calendar day
(``security-YYYY-MM-DD.log`` under ``settings.security_log_dir``) and mirrored to the
``agencyhub.security`` application logger.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from agencyhub.context import get_correlation_id
from agencyhub.core.config import get_settings
from agencyhub.platform.security.context import Identity


logger = logging.getLogger("agencyhub.security")

ACCESS_DENIED = "ACCESS_DENIED"
AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
PRIVILEGE_ESCALATION_ATTEMPT = "PRIVILEGE_ESCALATION_ATTEMPT"
DATA_ACCESS = "DATA_ACCESS"
SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"

UNKNOWN = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityLogger:
    def __init__(self, log_dir: str | Path | None = None, *, clock: Callable[[], datetime] | None = None) -> None:
        self._log_dir = Path(log_dir) if log_dir is not None else None
        self._clock = clock or _utcnow
        self._write_lock = Lock()

    @property
    def log_dir(self) -> Path:
        if self._log_dir is not None:
            return self._log_dir
        return Path(get_settings().security_log_dir)

    def log_file_for(self, day: date) -> Path:
        return self.log_dir / f"security-{day.isoformat()}.log"

    def log_access_denied(
        self,
        identity: Identity,
        resource: str,
        reason: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        entry = {
            "timestamp": now.isoformat(),
            "event": ACCESS_DENIED,
            "user_id": identity.id or UNKNOWN,
            "user_email": identity.email or UNKNOWN,
            "user_role": identity.role_name or UNKNOWN,
            "attempted_resource": resource,
            "reason": reason,
            "ip_address": ip_address or UNKNOWN,
            "user_agent": user_agent or UNKNOWN,
        }
        self._write(entry, now)
        logger.warning(
            "Security: %s - User %s (%s) attempted %s",
            reason,
            entry["user_email"],
            entry["user_role"],
            resource,
            extra={"user_id": entry["user_id"], "user_role": entry["user_role"], "path": resource, "reason": reason},
        )
        return entry

    def log_authentication_failure(
        self,
        email: str,
        reason: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        entry = {
            "timestamp": now.isoformat(),
            "event": AUTHENTICATION_FAILURE,
            "attempted_email": email,
            "reason": reason,
            "ip_address": ip_address or UNKNOWN,
            "user_agent": user_agent or UNKNOWN,
        }
        self._write(entry, now)
        logger.warning("Security: Authentication failure for %s - %s", email, reason, extra={"reason": reason})
        return entry

    def log_privilege_escalation(
        self,
        identity: Identity,
        required_role: str,
        action: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        entry = {
            "timestamp": now.isoformat(),
            "event": PRIVILEGE_ESCALATION_ATTEMPT,
            "user_id": identity.id or UNKNOWN,
            "user_email": identity.email or UNKNOWN,
            "user_role": identity.role_name or UNKNOWN,
            "required_role": required_role,
            "attempted_action": action,
            "ip_address": ip_address or UNKNOWN,
            "user_agent": user_agent or UNKNOWN,
        }
        self._write(entry, now)
        logger.warning(
            "Security: Privilege escalation attempt by %s (%s) - %s requires %s",
            entry["user_email"],
            entry["user_role"],
            action,
            required_role,
            extra={"user_id": entry["user_id"], "user_role": entry["user_role"]},
        )
        return entry

    def log_data_access(
        self,
        identity: Identity,
        resource_type: str,
        resource_id: str,
        action: str,
        *,
        ip_address: str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        entry = {
            "timestamp": now.isoformat(),
            "event": DATA_ACCESS,
            "user_id": identity.id or UNKNOWN,
            "user_email": identity.email or UNKNOWN,
            "user_role": identity.role_name or UNKNOWN,
            "agency_id": identity.agency_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
            "ip_address": ip_address or UNKNOWN,
        }
        self._write(entry, now)
        return entry

    def log_suspicious_activity(
        self,
        identity: Identity,
        activity: str,
        metadata: dict[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        entry = {
            "timestamp": now.isoformat(),
            "event": SUSPICIOUS_ACTIVITY,
            "user_id": identity.id or UNKNOWN,
            "user_email": identity.email or UNKNOWN,
            "user_role": identity.role_name or UNKNOWN,
            "activity": activity,
            "metadata": metadata or {},
            "ip_address": ip_address or UNKNOWN,
            "user_agent": user_agent or UNKNOWN,
        }
        self._write(entry, now)
        logger.critical("Security: Suspicious activity by %s - %s", entry["user_email"], activity, extra={"user_id": entry["user_id"]})
        return entry

    def parse_security_log(self, day: date | str) -> list[dict[str, Any]]:
        """Read one day's events; unparseable lines are skipped."""

        resolved = date.fromisoformat(day) if isinstance(day, str) else day
        log_file = self.log_file_for(resolved)
        if not log_file.exists():
            return []

        events: list[dict[str, Any]] = []
        with log_file.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    decoded = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(decoded, dict):
                    events.append(decoded)
        return events

    def get_user_security_events(self, user_id: str, days: int = 7) -> list[dict[str, Any]]:
        return [event for event in self._iter_recent(days) if event.get("user_id") == user_id]

    def get_events_by_type(self, event_type: str, days: int = 7, limit: int = 100) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for event in self._iter_recent(days):
            if event.get("event") != event_type:
                continue
            events.append(event)
            if len(events) >= limit:
                break
        return events

    def _iter_recent(self, days: int) -> Iterator[dict[str, Any]]:
        today = self._clock().date()
        for offset in range(max(days, 0)):
            yield from self.parse_security_log(today - timedelta(days=offset))

    def _write(self, entry: dict[str, Any], now: datetime) -> None:
        correlation_id = get_correlation_id()
        if correlation_id is not None:
            entry.setdefault("correlation_id", correlation_id)
        log_file = self.log_file_for(now.date())
        line = json.dumps(entry, default=str) + "\n"
        with self._write_lock:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with log_file.open("a", encoding="utf-8") as handle:
                handle.write(line)


security_logger = SecurityLogger()
