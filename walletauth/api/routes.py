from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from walletauth.api.guard import credential_from, require_access
from walletauth.api.schemas import (
    ConsentRequest,
    ConsentResponse,
    Envelope,
    MeResponse,
    NonceRequest,
    NonceResponse,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
    VerifyRequest,
)
from walletauth.config import Settings, get_settings
from walletauth.logging import get_logger
from walletauth.service.auth import AccessClaims, IssuedTokens, SignedMessage
from walletauth.service.claims import ConsentKind
from walletauth.service.runtime import get_runtime
from walletauth.storage.models import ClientMeta

logger = get_logger(__name__)

router = APIRouter()

MAX_USER_AGENT_LENGTH = 1024
# Proxy headers consulted for the caller address, most trusted first
_CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "true-client-ip",
    "x-client-ip",
    "x-real-ip",
)
_DEFAULT_JWKS_MAX_AGE = 300


def client_meta(request: Request) -> ClientMeta:
    ip: Optional[str] = None
    for header in _CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            ip = value.strip()
            break
    if ip is None:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip() or None
    if ip is None and request.client:
        ip = request.client.host
    if ip and ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]
    user_agent = request.headers.get("user-agent")
    if user_agent:
        user_agent = user_agent[:MAX_USER_AGENT_LENGTH]
    return ClientMeta(ip=ip, user_agent=user_agent)


def _apply_auth_cookies(response: Response, settings: Settings, tokens: IssuedTokens) -> None:
    response.set_cookie(
        settings.access_cookie_name,
        tokens.access_token,
        max_age=settings.access_token_ttl_seconds,
        path="/",
        domain=settings.cookie_domain,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
        domain=settings.cookie_domain,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    response.set_cookie(
        settings.access_cookie_name,
        "",
        max_age=0,
        path="/",
        domain=settings.cookie_domain,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        "",
        max_age=0,
        path=settings.refresh_cookie_path,
        domain=settings.cookie_domain,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


def _token_response(tokens: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        sid=tokens.sid,
        access_token_expires_at=tokens.access_expires_at,
        refresh_token_expires_at=tokens.refresh_expires_at,
    )


def _refresh_credential(
    request: Request,
    settings: Settings,
    authorization: Optional[str],
    body: Optional[RefreshRequest],
) -> Optional[str]:
    token = credential_from(request.cookies.get(settings.refresh_cookie_name), authorization)
    if token:
        return token
    return body.refresh_token if body else None


@router.post("/auth/nonce", response_model=Envelope, tags=["auth"])
async def issue_nonce(body: NonceRequest):
    """Issue a short-lived nonce token binding a sign-in attempt to an address.

    Raises:
        400: unknown scope value or unsupported chain id
        403: audience is not a registered partner
    """
    runtime = get_runtime()
    grant = await runtime.auth.issue_nonce(
        body.address,
        body.audience,
        body.scope,
        user_id=body.user_id,
        chain_id=body.chain_id,
    )
    return Envelope(
        status="ok",
        data=NonceResponse(
            nonce=grant.nonce, nonce_token=grant.nonce_token, expires_at=grant.expires_at
        ),
    )


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_sign_in(body: VerifyRequest, request: Request, response: Response):
    """Exchange a signed nonce message for an access/refresh token pair.

    Sets the access and refresh cookies on success.
    """
    runtime = get_runtime()
    tokens = await runtime.auth.sign_in_and_issue_tokens(
        body.address,
        SignedMessage(
            domain=body.typed_data.domain,
            types=body.typed_data.types,
            primary_type=body.typed_data.primary_type,
            message=body.typed_data.message,
        ),
        body.signature,
        body.nonce_token,
        client=client_meta(request),
    )
    _apply_auth_cookies(response, runtime.settings, tokens)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = _refresh_credential(request, runtime.settings, authorization, body)
    tokens = await runtime.auth.refresh(token, client=client_meta(request))
    _apply_auth_cookies(response, runtime.settings, tokens)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke the session behind the refresh credential, if any, and clear cookies."""
    runtime = get_runtime()
    token = _refresh_credential(request, runtime.settings, authorization, body)
    if token:
        await runtime.auth.revoke_by_refresh_token(token)
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(require_access)):
    return Envelope(
        status="ok",
        data=MeResponse(
            sub=claims.sub,
            aud=claims.aud,
            user_id=claims.user_id,
            scope=[permission.value for permission in claims.scope],
            sid=claims.sid,
            chain_id=claims.chain_id,
            consent=claims.consent,
            exp=claims.exp,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    audience: Optional[str] = Query(None, max_length=255),
    claims: AccessClaims = Depends(require_access),
):
    runtime = get_runtime()
    sessions = await runtime.auth.list_active_sessions_for_user(
        claims.user_id, audience, current_sid=claims.sid
    )
    return Envelope(
        status="ok",
        data={
            "sessions": [
                SessionResponse(
                    sid=view.sid,
                    aud=view.aud,
                    created_at=view.created_at,
                    refresh_expires_at=view.refresh_expires_at,
                    created_ip=view.created_ip,
                    created_user_agent=view.created_user_agent,
                    last_refresh_at=view.last_refresh_at,
                    chain_id=view.chain_id,
                    current=view.current,
                )
                for view in sessions
            ]
        },
    )


@router.delete("/auth/sessions/{sid}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    sid: str,
    response: Response,
    claims: AccessClaims = Depends(require_access),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session_for_user(claims.user_id, sid)
    if sid == claims.sid:
        _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"sid": sid, "revoked": True})


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    response: Response,
    claims: AccessClaims = Depends(require_access),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_sessions_for_user(claims.user_id)
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/me/consent", response_model=Envelope, tags=["consent"])
async def list_consents(claims: AccessClaims = Depends(require_access)):
    runtime = get_runtime()
    grants = await runtime.auth.list_consents(claims.user_id)
    return Envelope(
        status="ok",
        data={
            "consents": [
                ConsentResponse(kind=grant.kind.value, start_time=grant.start_time)
                for grant in grants
            ]
        },
    )


@router.post("/me/consent", response_model=Envelope, tags=["consent"])
async def give_consent(body: ConsentRequest, claims: AccessClaims = Depends(require_access)):
    """Grant a consent kind; access tokens carry it from the next refresh on."""
    runtime = get_runtime()
    grant = await runtime.auth.give_consent(claims.user_id, body.kind)
    return Envelope(
        status="ok",
        data=ConsentResponse(kind=grant.kind.value, start_time=grant.start_time),
    )


@router.delete("/me/consent/{kind}", response_model=Envelope, tags=["consent"])
async def withdraw_consent(kind: ConsentKind, claims: AccessClaims = Depends(require_access)):
    runtime = get_runtime()
    changed = await runtime.auth.withdraw_consent(claims.user_id, kind)
    return Envelope(status="ok", data={"kind": kind.value, "changed": changed})


@router.get("/.well-known/jwks.json", tags=["keys"])
async def jwks() -> JSONResponse:
    """Publish the current access-token public key.

    Any failure degrades to an empty key set so verifiers fail closed.
    """
    max_age = _DEFAULT_JWKS_MAX_AGE
    try:
        max_age = get_settings().jwks_max_age_seconds
        keys = [await get_runtime().codec.public_jwk()]
    except Exception as exc:
        logger.error("jwks_export_failed", error_type=type(exc).__name__, error=str(exc))
        keys = []
    return JSONResponse(
        content={"keys": keys},
        headers={"Cache-Control": f"public, max-age={max_age}, must-revalidate"},
    )
