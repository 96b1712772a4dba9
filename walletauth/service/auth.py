from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from walletauth.config import Settings
from walletauth.logging import get_logger
from walletauth.service.claims import (
    ConsentGrant,
    ConsentKind,
    ConsentSource,
    Permission,
    consent_claims,
    normalize_scope,
    pack_scope,
    unpack_scope,
)
from walletauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    InvalidSignatureError,
    NonceMismatchError,
    NotFoundError,
    ServerError,
)
from walletauth.service.partners import PartnerRegistry
from walletauth.service.signature import SignatureVerifier
from walletauth.service.tokens import InvalidTokenError, SignedToken, TokenCodec, TokenType
from walletauth.storage.models import (
    ClientMeta,
    RotationOutcome,
    SessionRecord,
    new_sid,
)

logger = get_logger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class SessionStore(Protocol):
    def create(self, record: SessionRecord) -> None: ...

    def get_by_sid(self, sid: str) -> Optional[SessionRecord]: ...

    def is_active(self, record: Optional[SessionRecord], now: Optional[datetime] = None) -> bool: ...

    def rotate_refresh_jti(
        self,
        sid: str,
        expected_jti: str,
        new_jti: str,
        new_expires_at: datetime,
        *,
        client: Optional[ClientMeta] = None,
    ) -> RotationOutcome: ...

    def revoke_sid(self, sid: str) -> bool: ...

    def revoke_all_for_user(self, user_id: str) -> int: ...

    def invalidate_access_before(self, sid: str, ts: datetime) -> bool: ...

    def list_active_for_user(
        self, user_id: str, aud: Optional[str] = None
    ) -> List[SessionRecord]: ...


@dataclass
class SignedMessage:
    """EIP-712 typed data the wallet signed during sign-in."""

    domain: Dict[str, Any]
    types: Dict[str, Any]
    primary_type: str
    message: Dict[str, Any]


@dataclass
class NonceGrant:
    nonce: str
    nonce_token: str
    expires_at: int


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    sid: str
    access_expires_at: int
    refresh_expires_at: int


@dataclass
class AccessClaims:
    """Verified access-token claims attached to an authenticated request."""

    sub: str
    aud: str
    user_id: str
    scope: List[Permission]
    iat: int
    exp: int
    sid: Optional[str] = None
    chain_id: Optional[int] = None
    consent: Optional[Dict[str, int]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "AccessClaims":
        aud = claims.get("aud")
        user_id = claims.get("userId")
        if not isinstance(aud, str) or not isinstance(user_id, str) or not user_id:
            raise ValueError("access token is missing aud or userId")
        return cls(
            sub=claims["sub"],
            aud=aud,
            user_id=user_id,
            scope=unpack_scope(claims.get("scope")),
            iat=int(claims["iat"]),
            exp=int(claims["exp"]),
            sid=claims.get("sid"),
            chain_id=claims.get("chainId"),
            consent=claims.get("consent"),
            raw=dict(claims),
        )


@dataclass
class SessionView:
    sid: str
    aud: str
    created_at: datetime
    refresh_expires_at: datetime
    created_ip: Optional[str]
    created_user_agent: Optional[str]
    last_refresh_at: Optional[datetime]
    chain_id: Optional[int]
    current: bool


def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not _ADDRESS_RE.match(address.strip()):
        raise BadRequestError("invalid wallet address", detail={"address": address})
    return address.strip().lower()


class AuthService:
    """Nonce sign-in, token issuance, refresh rotation and session revocation.

    Holds no per-call state and takes no locks: every durable decision,
    including refresh reuse detection, is a single atomic store operation.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        signatures: SignatureVerifier,
        partners: PartnerRegistry,
        consents: Optional[ConsentSource] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.signatures = signatures
        self.partners = partners
        self.consents = consents
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _unauthorized(self, reason: str, **context: Any) -> AuthenticationError:
        # the reason is logged only; callers always see the same message
        self.logger.info("auth_rejected", reason=reason, **context)
        return AuthenticationError()

    async def _verify(self, token: Optional[str], token_type: TokenType) -> Dict[str, Any]:
        try:
            return await self.codec.verify(token, token_type)
        except InvalidTokenError as exc:
            raise self._unauthorized(
                f"{token_type.value}_token_invalid", error=str(exc)
            ) from None

    def _validate_scope(self, scope: Sequence[str]) -> List[Permission]:
        try:
            return normalize_scope(scope)
        except ValueError as exc:
            raise BadRequestError(str(exc), detail={"scope": list(scope)}) from None

    def _validate_chain_id(self, chain_id: Optional[int]) -> Optional[int]:
        if chain_id is None:
            return None
        if chain_id not in self.settings.supported_chain_ids:
            raise BadRequestError("unsupported chain id", detail={"chain_id": chain_id})
        return chain_id

    async def _consent_claims(self, user_id: str) -> Optional[Dict[str, int]]:
        if self.consents is None:
            return None
        return consent_claims(await self.consents.active_consents(user_id))

    async def issue_nonce(
        self,
        address: str,
        aud: str,
        scope: Sequence[str],
        user_id: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> NonceGrant:
        address = normalize_address(address)
        self.partners.assert_exists(aud)
        permissions = self._validate_scope(scope)
        chain_id = self._validate_chain_id(chain_id)
        nonce = secrets.token_hex(16)
        signed = await self.codec.issue(
            {
                "sub": address,
                "aud": aud,
                "nonce": nonce,
                "address": address,
                "scope": pack_scope(permissions),
                "userId": user_id,
                "chainId": chain_id,
            },
            TokenType.NONCE,
            ttl_seconds=self.settings.nonce_ttl_seconds,
        )
        self.logger.info("nonce_issued", address=address, aud=aud, chain_id=chain_id)
        return NonceGrant(nonce=nonce, nonce_token=signed.token, expires_at=signed.expires_at)

    async def sign_in_and_issue_tokens(
        self,
        address: str,
        signed_message: SignedMessage,
        signature: str,
        nonce_token: str,
        client: Optional[ClientMeta] = None,
    ) -> IssuedTokens:
        address = normalize_address(address)
        claims = await self._verify(nonce_token, TokenType.NONCE)

        message = signed_message.message or {}
        if message.get("nonce") != claims.get("nonce"):
            raise NonceMismatchError("nonce does not match the signed message")
        if str(claims.get("address", "")).lower() != address:
            raise NonceMismatchError("nonce was issued for a different address")
        signer = message.get("from")
        if signer is not None and str(signer).lower() != address:
            raise NonceMismatchError("signed message names a different signer")
        audience = message.get("audience")
        if audience is not None and audience != claims.get("aud"):
            raise NonceMismatchError("signed message names a different audience")

        try:
            valid = await self.signatures.verify(
                address,
                signature,
                signed_message.domain,
                signed_message.types,
                signed_message.primary_type,
                message,
            )
        except Exception as exc:
            self.logger.error(
                "signature_verification_error",
                address=address,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            valid = False
        if not valid:
            self.logger.info("signature_rejected", address=address)
            raise InvalidSignatureError("signature verification failed")

        try:
            scope = unpack_scope(claims.get("scope"))
        except ValueError:
            raise self._unauthorized("nonce_scope_invalid") from None
        return await self._start_session(
            sub=address,
            aud=claims["aud"],
            user_id=claims.get("userId") or address,
            scope=scope,
            chain_id=claims.get("chainId"),
            client=client,
        )

    async def _start_session(
        self,
        *,
        sub: str,
        aud: str,
        user_id: str,
        scope: List[Permission],
        chain_id: Optional[int],
        client: Optional[ClientMeta],
    ) -> IssuedTokens:
        sid = new_sid()
        jti = str(uuid.uuid4())
        access, refresh = await self._issue_pair(
            sub=sub, aud=aud, user_id=user_id, scope=scope, chain_id=chain_id, sid=sid, jti=jti
        )
        record = SessionRecord.new(
            sid=sid,
            user_id=user_id,
            sub=sub,
            aud=aud,
            refresh_jti=jti,
            refresh_expires_at=datetime.fromtimestamp(refresh.expires_at, tz=timezone.utc),
            chain_id=chain_id,
            client=client,
        )
        self.store.create(record)
        self.logger.info("session_started", sid=sid, user_id=user_id, aud=aud)
        return IssuedTokens(
            access_token=access.token,
            refresh_token=refresh.token,
            sid=sid,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def _issue_pair(
        self,
        *,
        sub: str,
        aud: str,
        user_id: str,
        scope: List[Permission],
        chain_id: Optional[int],
        sid: str,
        jti: str,
    ) -> tuple[SignedToken, SignedToken]:
        common = {
            "sub": sub,
            "aud": aud,
            "userId": user_id,
            "scope": pack_scope(scope),
            "sid": sid,
            "chainId": chain_id,
        }
        access = await self.codec.issue(
            {**common, "consent": await self._consent_claims(user_id)},
            TokenType.ACCESS,
            ttl_seconds=self.settings.access_token_ttl_seconds,
        )
        refresh = await self.codec.issue(
            {**common, "jti": jti},
            TokenType.REFRESH,
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        return access, refresh

    async def issue_access_token(
        self,
        *,
        sub: str,
        aud: str,
        user_id: str,
        scope: Sequence[str] = (),
        chain_id: Optional[int] = None,
    ) -> SignedToken:
        """Issue a session-less access token for a trusted server-side caller."""
        self.partners.assert_exists(aud)
        permissions = self._validate_scope(scope)
        chain_id = self._validate_chain_id(chain_id)
        return await self.codec.issue(
            {
                "sub": sub,
                "aud": aud,
                "userId": user_id,
                "scope": pack_scope(permissions),
                "chainId": chain_id,
                "consent": await self._consent_claims(user_id),
            },
            TokenType.ACCESS,
            ttl_seconds=self.settings.access_token_ttl_seconds,
        )

    async def refresh(
        self, refresh_token: str, client: Optional[ClientMeta] = None
    ) -> IssuedTokens:
        claims = await self._verify(refresh_token, TokenType.REFRESH)
        sid = claims.get("sid")
        jti = claims.get("jti")
        user_id = claims.get("userId")
        if not sid or not jti or not user_id:
            raise self._unauthorized("refresh_claims_incomplete")
        session = self.store.get_by_sid(sid)
        if not self.store.is_active(session, self._now()):
            raise self._unauthorized("refresh_session_inactive", sid=sid)
        if session.user_id != user_id:
            raise self._unauthorized("refresh_user_mismatch", sid=sid)
        try:
            scope = unpack_scope(claims.get("scope"))
        except ValueError:
            raise self._unauthorized("refresh_scope_invalid", sid=sid) from None

        new_jti = str(uuid.uuid4())
        access, refresh = await self._issue_pair(
            sub=claims["sub"],
            aud=claims["aud"],
            user_id=user_id,
            scope=scope,
            chain_id=claims.get("chainId"),
            sid=sid,
            jti=new_jti,
        )
        outcome = self.store.rotate_refresh_jti(
            sid,
            jti,
            new_jti,
            datetime.fromtimestamp(refresh.expires_at, tz=timezone.utc),
            client=client,
        )
        if outcome is RotationOutcome.REUSED:
            # the store has already revoked the session
            self.logger.warning(
                "refresh_reuse_detected",
                sid=sid,
                user_id=user_id,
                ip=client.ip if client else None,
            )
            raise AuthenticationError()
        if outcome is not RotationOutcome.ROTATED:
            raise self._unauthorized("refresh_session_inactive", sid=sid)

        self.logger.info("session_rotated", sid=sid, user_id=user_id)
        return IssuedTokens(
            access_token=access.token,
            refresh_token=refresh.token,
            sid=sid,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def verify_access_token(self, token: Optional[str]) -> AccessClaims:
        claims = await self._verify(token, TokenType.ACCESS)
        if not self.partners.exists(claims.get("aud")):
            raise self._unauthorized("access_audience_unknown", aud=claims.get("aud"))
        try:
            access = AccessClaims.from_claims(claims)
        except ValueError as exc:
            raise self._unauthorized("access_claims_invalid", error=str(exc)) from None
        if access.sid is None:
            return access

        session = self.store.get_by_sid(access.sid)
        if not self.store.is_active(session, self._now()):
            raise self._unauthorized("access_session_inactive", sid=access.sid)
        if (
            session.invalidate_before is not None
            # iat has whole-second precision, so the cut-off is truncated to match
            and access.iat < int(session.invalidate_before.timestamp())
        ):
            raise self._unauthorized("access_token_invalidated", sid=access.sid)
        return access

    async def revoke_by_refresh_token(self, token: Optional[str]) -> bool:
        """Best-effort logout; never raises for any input."""
        try:
            claims = await self.codec.verify(token, TokenType.REFRESH)
            sid = claims.get("sid")
            if not sid:
                return False
            revoked = self.store.revoke_sid(sid)
        except InvalidTokenError as exc:
            self.logger.info("logout_token_ignored", error=str(exc))
            return False
        except Exception as exc:
            self.logger.warning(
                "logout_revoke_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return False
        self.logger.info("session_revoked", sid=sid, reason="logout", changed=revoked)
        return revoked

    async def revoke_session_for_user(self, user_id: str, sid: str) -> None:
        session = self.store.get_by_sid(sid)
        if session is None:
            raise NotFoundError("session not found", detail={"sid": sid})
        if session.user_id != user_id:
            raise ForbiddenError("session belongs to another user")
        revoked = self.store.revoke_sid(sid)
        self.logger.info("session_revoked", sid=sid, reason="user", changed=revoked)

    async def list_active_sessions_for_user(
        self,
        user_id: str,
        aud: Optional[str] = None,
        *,
        current_sid: Optional[str] = None,
    ) -> List[SessionView]:
        return [
            SessionView(
                sid=record.sid,
                aud=record.aud,
                created_at=record.created_at,
                refresh_expires_at=record.refresh_expires_at,
                created_ip=record.created_ip,
                created_user_agent=record.created_user_agent,
                last_refresh_at=record.last_refresh_at,
                chain_id=record.chain_id,
                current=record.sid == current_sid,
            )
            for record in self.store.list_active_for_user(user_id, aud)
        ]

    async def revoke_all_sessions_for_user(self, user_id: str) -> int:
        revoked = self.store.revoke_all_for_user(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    async def invalidate_access_tokens(
        self, sid: str, before: Optional[datetime] = None
    ) -> bool:
        """Reject access tokens of ``sid`` issued before ``before`` (default: now)."""
        ts = before or self._now()
        changed = self.store.invalidate_access_before(sid, ts)
        self.logger.info("access_tokens_invalidated", sid=sid, before=ts.isoformat(), changed=changed)
        return changed

    def _consent_source(self) -> ConsentSource:
        if self.consents is None:
            raise ServerError("consent source not configured")
        return self.consents

    async def list_consents(self, user_id: str) -> List[ConsentGrant]:
        return await self._consent_source().active_consents(user_id)

    async def give_consent(self, user_id: str, kind: ConsentKind) -> ConsentGrant:
        """Grant ``kind``; it is embedded in access tokens from the next issuance on."""
        grant = self._consent_source().grant(user_id, kind)
        self.logger.info("consent_granted", user_id=user_id, kind=grant.kind.value)
        return grant

    async def withdraw_consent(self, user_id: str, kind: ConsentKind) -> bool:
        changed = self._consent_source().withdraw(user_id, kind)
        self.logger.info(
            "consent_withdrawn", user_id=user_id, kind=ConsentKind(kind).value, changed=changed
        )
        return changed
