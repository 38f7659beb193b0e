from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from agencyhub.core.config import get_settings
from agencyhub.crm.models import utcnow
from agencyhub.portal.models import PortalAccessToken, PortalActivityLog, PortalSession

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_MAGIC_LINK = "magic_link"
TOKEN_TYPE_API = "api"
TOKEN_TYPES = frozenset({TOKEN_TYPE_ACCESS, TOKEN_TYPE_MAGIC_LINK, TOKEN_TYPE_API})

# Credentials usable directly as bearer tokens. Magic links are redeemed only
# through consume_magic_link so the single-use guarantee cannot be sidestepped.
BEARER_TOKEN_TYPES = (TOKEN_TYPE_ACCESS, TOKEN_TYPE_API)

DEFAULT_PERMISSIONS: dict[str, bool] = {
    "view_invoices": True,
    "view_proposals": True,
    "view_projects": True,
    "make_payments": True,
    "download_files": True,
    "submit_feedback": True,
}


def generate_token() -> str:
    return secrets.token_hex(32)


class PortalAccessRepository:
    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self._clock = clock

    def _active_clause(self, now: datetime):
        return and_(
            PortalAccessToken.is_active.is_(True),
            or_(PortalAccessToken.expires_at.is_(None), PortalAccessToken.expires_at > now),
        )

    def create_access(
        self,
        client_id: str,
        email: str,
        *,
        contact_id: str | None = None,
        permissions: dict[str, bool] | None = None,
        expires_at: datetime | None = None,
        token_type: str = TOKEN_TYPE_ACCESS,
    ) -> PortalAccessToken:
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown portal token type: {token_type}")

        access = PortalAccessToken(
            client_id=str(client_id),
            contact_id=contact_id,
            email=email,
            token=generate_token(),
            token_type=token_type,
            permissions=dict(DEFAULT_PERMISSIONS if permissions is None else permissions),
            expires_at=expires_at,
            is_active=True,
        )
        self.session.add(access)
        self.session.commit()
        self.session.refresh(access)
        return access

    def create_magic_link(self, client_id: str, email: str) -> PortalAccessToken:
        now = self._clock()
        self.session.execute(
            update(PortalAccessToken)
            .where(
                PortalAccessToken.email == email,
                PortalAccessToken.token_type == TOKEN_TYPE_MAGIC_LINK,
                PortalAccessToken.is_active.is_(True),
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        link = PortalAccessToken(
            client_id=str(client_id),
            email=email,
            token=generate_token(),
            token_type=TOKEN_TYPE_MAGIC_LINK,
            permissions=None,
            expires_at=now + timedelta(minutes=get_settings().portal_magic_link_minutes),
            is_active=True,
        )
        self.session.add(link)
        self.session.commit()
        self.session.refresh(link)
        return link

    def validate_token(self, token: str) -> PortalAccessToken | None:
        if not token:
            return None

        now = self._clock()
        access = self.session.scalar(
            select(PortalAccessToken).where(
                PortalAccessToken.token == token,
                PortalAccessToken.token_type.in_(BEARER_TOKEN_TYPES),
                self._active_clause(now),
            )
        )
        if access is None:
            return None

        access.last_used_at = now
        self.session.commit()
        return access

    def consume_magic_link(self, token: str) -> PortalAccessToken | None:
        """Redeem a magic link exactly once and return the client's access credential.

        Deactivation is a single conditional UPDATE; only the caller whose statement
        flips ``is_active`` observes a row count of one, concurrent redeemers see zero.
        """

        if not token:
            return None

        now = self._clock()
        result = self.session.execute(
            update(PortalAccessToken)
            .where(
                PortalAccessToken.token == token,
                PortalAccessToken.token_type == TOKEN_TYPE_MAGIC_LINK,
                PortalAccessToken.is_active.is_(True),
                PortalAccessToken.expires_at > now,
            )
            .values(is_active=False, last_used_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            return None

        link = self.session.scalar(select(PortalAccessToken).where(PortalAccessToken.token == token))
        self.session.commit()
        if link is None:
            return None

        existing = self.session.scalar(
            select(PortalAccessToken)
            .where(
                PortalAccessToken.client_id == link.client_id,
                PortalAccessToken.email == link.email,
                PortalAccessToken.token_type == TOKEN_TYPE_ACCESS,
                self._active_clause(now),
            )
            .order_by(PortalAccessToken.created_at.desc())
            .limit(1)
        )
        if existing is not None:
            existing.last_used_at = now
            self.session.commit()
            return existing

        return self.create_access(link.client_id, link.email, contact_id=link.contact_id)

    def get(self, access_id: str) -> PortalAccessToken | None:
        return self.session.get(PortalAccessToken, str(access_id))

    def get_active(self, access_id: str) -> PortalAccessToken | None:
        return self.session.scalar(
            select(PortalAccessToken).where(
                PortalAccessToken.id == str(access_id),
                PortalAccessToken.token_type.in_(BEARER_TOKEN_TYPES),
                self._active_clause(self._clock()),
            )
        )

    def get_by_client_id(self, client_id: str) -> list[PortalAccessToken]:
        return list(
            self.session.scalars(
                select(PortalAccessToken)
                .where(
                    PortalAccessToken.client_id == str(client_id),
                    PortalAccessToken.token_type == TOKEN_TYPE_ACCESS,
                    PortalAccessToken.is_active.is_(True),
                )
                .order_by(PortalAccessToken.created_at.desc())
            )
        )

    def revoke_access(self, access_id: str) -> bool:
        result = self.session.execute(
            update(PortalAccessToken)
            .where(PortalAccessToken.id == str(access_id), PortalAccessToken.is_active.is_(True))
            .values(is_active=False, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount > 0

    def revoke_all_client_access(self, client_id: str) -> int:
        result = self.session.execute(
            update(PortalAccessToken)
            .where(PortalAccessToken.client_id == str(client_id), PortalAccessToken.is_active.is_(True))
            .values(is_active=False, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def update_permissions(self, access_id: str, permissions: dict[str, bool]) -> bool:
        access = self.get(access_id)
        if access is None:
            return False
        access.permissions = dict(permissions)
        self.session.commit()
        return True

    def cleanup_expired(self) -> int:
        result = self.session.execute(
            update(PortalAccessToken)
            .where(
                PortalAccessToken.expires_at.is_not(None),
                PortalAccessToken.expires_at < self._clock(),
                PortalAccessToken.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount


class PortalSessionRepository:
    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self._clock = clock

    def _expiry(self) -> datetime:
        return self._clock() + timedelta(hours=get_settings().portal_session_hours)

    def create_session(
        self,
        access_token_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PortalSession:
        portal_session = PortalSession(
            access_token_id=str(access_token_id),
            session_token=generate_token(),
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=self._expiry(),
        )
        self.session.add(portal_session)
        self.session.commit()
        self.session.refresh(portal_session)
        return portal_session

    def validate_session(self, session_token: str) -> tuple[PortalSession, PortalAccessToken] | None:
        if not session_token:
            return None

        now = self._clock()
        row = self.session.execute(
            select(PortalSession, PortalAccessToken)
            .join(PortalAccessToken, PortalAccessToken.id == PortalSession.access_token_id)
            .where(
                PortalSession.session_token == session_token,
                PortalSession.expires_at > now,
                PortalAccessToken.is_active.is_(True),
                or_(PortalAccessToken.expires_at.is_(None), PortalAccessToken.expires_at > now),
            )
        ).first()
        if row is None:
            return None
        return row[0], row[1]

    def extend_session(self, session_token: str) -> bool:
        result = self.session.execute(
            update(PortalSession)
            .where(PortalSession.session_token == session_token, PortalSession.expires_at > self._clock())
            .values(expires_at=self._expiry())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount > 0

    def terminate_session(self, session_token: str) -> bool:
        if not session_token:
            return False
        result = self.session.execute(
            delete(PortalSession)
            .where(PortalSession.session_token == session_token)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount > 0

    def terminate_all_for_access_token(self, access_token_id: str) -> int:
        result = self.session.execute(
            delete(PortalSession)
            .where(PortalSession.access_token_id == str(access_token_id))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def get_active_by_access_token(self, access_token_id: str) -> list[PortalSession]:
        return list(
            self.session.scalars(
                select(PortalSession)
                .where(
                    PortalSession.access_token_id == str(access_token_id),
                    PortalSession.expires_at > self._clock(),
                )
                .order_by(PortalSession.created_at.desc())
            )
        )

    def count_active_sessions(self) -> int:
        return int(
            self.session.scalar(
                select(func.count()).select_from(PortalSession).where(PortalSession.expires_at > self._clock())
            )
            or 0
        )

    def cleanup_expired(self) -> int:
        result = self.session.execute(
            delete(PortalSession)
            .where(PortalSession.expires_at < self._clock())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount


class PortalActivityRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        client_id: str,
        action: str,
        *,
        access_token_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> PortalActivityLog:
        entry = PortalActivityLog(
            client_id=str(client_id),
            access_token_id=access_token_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def list_for_client(self, client_id: str, *, limit: int = 50) -> list[PortalActivityLog]:
        return list(
            self.session.scalars(
                select(PortalActivityLog)
                .where(PortalActivityLog.client_id == str(client_id))
                .order_by(PortalActivityLog.created_at.desc())
                .limit(limit)
            )
        )
