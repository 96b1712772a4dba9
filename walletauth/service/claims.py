"""Closed vocabularies carried inside tokens: permission scopes and consents."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence


class Permission(str, Enum):
    """Account fields a partner may request access to."""

    DISCORD = "discord"
    EMAIL = "email"
    GOOGLE = "google"
    TELEGRAM = "telegram"
    X = "x"


class ConsentKind(str, Enum):
    PERSONALIZATION_ADS = "personalization_ads"
    SHARING_DATA = "sharing_data"


# Short keys keep the consent claim small inside every access token
CONSENT_CLAIM_KEYS: Dict[ConsentKind, str] = {
    ConsentKind.PERSONALIZATION_ADS: "pa",
    ConsentKind.SHARING_DATA: "sd",
}


def normalize_scope(values: Iterable[str | Permission]) -> List[Permission]:
    """Validate scope values, dropping duplicates but keeping first-seen order.

    Raises:
        ValueError: If any value is not a known permission.
    """
    scope: List[Permission] = []
    for value in values:
        try:
            permission = Permission(value)
        except ValueError:
            raise ValueError(f"unknown scope '{value}'") from None
        if permission not in scope:
            scope.append(permission)
    return scope


def pack_scope(scope: Sequence[Permission]) -> str:
    return " ".join(permission.value for permission in scope)


def unpack_scope(raw: object) -> List[Permission]:
    """Parse a scope claim (space-delimited string or list) back into permissions."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        return normalize_scope(raw.split())
    if isinstance(raw, (list, tuple)):
        return normalize_scope(raw)
    raise ValueError("scope claim must be a string or list")


@dataclass(frozen=True)
class ConsentGrant:
    kind: ConsentKind
    start_time: datetime


class ConsentSource(Protocol):
    async def active_consents(self, user_id: str) -> List[ConsentGrant]: ...

    def grant(
        self, user_id: str, kind: ConsentKind, start_time: Optional[datetime] = None
    ) -> ConsentGrant: ...

    def withdraw(self, user_id: str, kind: ConsentKind) -> bool: ...


def consent_claims(grants: Iterable[ConsentGrant]) -> Optional[Dict[str, int]]:
    """Map active grants to ``{short_kind: unix_seconds}``; ``None`` when empty.

    When a kind is granted more than once the latest grant wins.
    """
    claims: Dict[str, int] = {}
    for grant in grants:
        key = CONSENT_CLAIM_KEYS[ConsentKind(grant.kind)]
        granted_at = int(grant.start_time.timestamp())
        claims[key] = max(granted_at, claims.get(key, granted_at))
    return claims or None


class MemoryConsentSource:
    """Process-local consent records keyed by user id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._grants: Dict[str, Dict[ConsentKind, ConsentGrant]] = {}

    def grant(
        self, user_id: str, kind: ConsentKind, start_time: Optional[datetime] = None
    ) -> ConsentGrant:
        """Record a consent; an already active grant of the same kind is returned as is."""
        kind = ConsentKind(kind)
        with self._lock:
            grants = self._grants.setdefault(user_id, {})
            if kind not in grants:
                grants[kind] = ConsentGrant(
                    kind=kind, start_time=start_time or datetime.now(timezone.utc)
                )
            return grants[kind]

    def withdraw(self, user_id: str, kind: ConsentKind) -> bool:
        with self._lock:
            return self._grants.get(user_id, {}).pop(ConsentKind(kind), None) is not None

    async def active_consents(self, user_id: str) -> List[ConsentGrant]:
        with self._lock:
            grants = self._grants.get(user_id, {}).values()
            return sorted(grants, key=lambda grant: grant.kind.value)
