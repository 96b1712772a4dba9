from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_sid() -> str:
    return secrets.token_urlsafe(24)


@dataclass
class ClientMeta:
    """Audit metadata describing the caller of a sign-in or refresh."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


class RotationOutcome(str, Enum):
    """Result of the atomic refresh-jti compare-and-swap."""

    ROTATED = "rotated"
    # presented jti was stale; the session was revoked in the same step
    REUSED = "reused"
    # session missing, revoked or expired; nothing changed
    INACTIVE = "inactive"


@dataclass
class SessionRecord:
    sid: str
    user_id: str
    sub: str
    aud: str
    current_refresh_jti: str
    created_at: datetime
    refresh_expires_at: datetime
    revoked_at: Optional[datetime] = None
    invalidate_before: Optional[datetime] = None
    chain_id: Optional[int] = None
    created_ip: Optional[str] = None
    created_user_agent: Optional[str] = None
    last_refresh_at: Optional[datetime] = None
    last_refresh_ip: Optional[str] = None
    last_refresh_user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        user_id: str,
        sub: str,
        aud: str,
        refresh_jti: str,
        refresh_expires_at: datetime,
        sid: str | None = None,
        chain_id: int | None = None,
        client: ClientMeta | None = None,
    ) -> "SessionRecord":
        client = client or ClientMeta()
        return cls(
            sid=sid or new_sid(),
            user_id=user_id,
            sub=sub,
            aud=aud,
            current_refresh_jti=refresh_jti,
            created_at=utcnow(),
            refresh_expires_at=refresh_expires_at,
            chain_id=chain_id,
            created_ip=client.ip,
            created_user_agent=client.user_agent,
        )


def is_active(record: SessionRecord | None, now: datetime | None = None) -> bool:
    """A session is active iff it is not revoked and its refresh window is open."""
    if record is None or record.revoked_at is not None:
        return False
    return record.refresh_expires_at > (now or utcnow())
