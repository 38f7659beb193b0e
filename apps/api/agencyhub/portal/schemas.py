from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field


class PortalTokenLogin(BaseModel):
    token: str = Field(min_length=1)


class MagicLinkRequest(BaseModel):
    email: EmailStr


class PortalSessionRead(BaseModel):
    session_token: str
    expires_at: datetime
    type: str
    client_id: str
    permissions: dict[str, bool]


class PortalMeRead(BaseModel):
    email: str
    client: dict[str, Any] | None
    permissions: dict[str, bool]


class ProposalResponse(BaseModel):
    decision: Literal["accepted", "rejected"]
    name: str | None = None
    reason: str | None = None
