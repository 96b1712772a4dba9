from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from walletauth.service.auth import AccessClaims
from walletauth.service.errors import AuthenticationError
from walletauth.service.runtime import get_runtime


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def credential_from(cookie: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Pick the bearer credential for a request; the cookie takes precedence."""
    if cookie:
        return cookie
    return extract_bearer(authorization)


async def require_access(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AccessClaims:
    """Resolve verified access claims or fail with a generic 401."""
    runtime = get_runtime()
    token = credential_from(
        request.cookies.get(runtime.settings.access_cookie_name), authorization
    )
    if not token:
        raise AuthenticationError("missing bearer credential")
    claims = await runtime.auth.verify_access_token(token)
    request.state.claims = claims
    return claims
