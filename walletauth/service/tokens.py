from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import jwt
from jwt.algorithms import ECAlgorithm, RSAAlgorithm

from walletauth.config import Settings
from walletauth.service.keys import KeyProvider, TokenFamily

# Claims every token must carry before its payload is trusted
_REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub", "aud"]


class InvalidTokenError(Exception):
    """A token failed decoding or any signature/claim check."""


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    NONCE = "nonce"

    @property
    def family(self) -> TokenFamily:
        # nonce tokens are signed with the access key under their own issuer
        if self is TokenType.REFRESH:
            return TokenFamily.REFRESH
        return TokenFamily.ACCESS


@dataclass
class SignedToken:
    token: str
    claims: Dict[str, Any]

    @property
    def expires_at(self) -> int:
        return int(self.claims["exp"])


class TokenCodec:
    """Signs and verifies compact JWS tokens for the access and refresh families."""

    def __init__(
        self,
        keys: KeyProvider,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keys = keys
        self.settings = settings
        self.algorithm = settings.jwt_algorithm
        self.leeway = settings.jwt_leeway_seconds
        self._clock = clock

    def issuer_for(self, token_type: TokenType) -> str:
        if token_type is TokenType.REFRESH:
            return self.settings.refresh_issuer
        if token_type is TokenType.NONCE:
            return self.settings.nonce_issuer
        return self.settings.jwt_issuer

    async def _signing_key(self, family: TokenFamily) -> Tuple[Any, str]:
        if family is TokenFamily.REFRESH:
            return await self.keys.get_refresh_private_key(), await self.keys.get_refresh_kid()
        return await self.keys.get_access_private_key(), await self.keys.get_access_kid()

    async def _verification_key(self, family: TokenFamily) -> Tuple[Any, str]:
        if family is TokenFamily.REFRESH:
            return await self.keys.get_refresh_public_key(), await self.keys.get_refresh_kid()
        return await self.keys.get_access_public_key(), await self.keys.get_access_kid()

    async def issue(
        self, claims: Dict[str, Any], token_type: TokenType, *, ttl_seconds: int
    ) -> SignedToken:
        """Sign ``claims`` as ``token_type``; ``None`` values are dropped."""
        now = int(self._clock())
        payload = {key: value for key, value in claims.items() if value is not None}
        payload.update(
            iat=now,
            exp=now + ttl_seconds,
            iss=self.issuer_for(token_type),
            typ=token_type.value,
        )
        private_key, kid = await self._signing_key(token_type.family)
        token = jwt.encode(
            payload, private_key, algorithm=self.algorithm, headers={"kid": kid}
        )
        return SignedToken(token=token, claims=payload)

    async def verify(
        self,
        token: Optional[str],
        token_type: TokenType,
        *,
        audience: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return verified claims or raise :class:`InvalidTokenError`.

        The audience is only enforced when ``audience`` is given; callers
        that accept any registered partner check ``aud`` themselves.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError("missing token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("malformed token") from exc
        if header.get("alg") != self.algorithm:
            raise InvalidTokenError("unexpected algorithm")
        public_key, kid = await self._verification_key(token_type.family)
        if header.get("kid") != kid:
            raise InvalidTokenError("unknown key id")

        options: Dict[str, Any] = {"require": list(_REQUIRED_CLAIMS)}
        if audience is None:
            options["verify_aud"] = False
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=[self.algorithm],
                issuer=self.issuer_for(token_type),
                audience=audience,
                leeway=self.leeway,
                options=options,
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(str(exc)) from exc
        if claims.get("typ") != token_type.value:
            raise InvalidTokenError("unexpected token type")
        return claims

    async def public_jwk(self) -> Dict[str, Any]:
        """Export the current access public key; refresh keys are never published."""
        public_key = await self.keys.get_access_public_key()
        kid = await self.keys.get_access_kid()
        exporter = ECAlgorithm if self.algorithm.startswith("ES") else RSAAlgorithm
        jwk = exporter.to_jwk(public_key, as_dict=True)
        jwk.update(kid=kid, alg=self.algorithm, use="sig")
        return jwk
