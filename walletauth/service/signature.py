from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

import httpx

from walletauth.logging import get_logger

logger = get_logger(__name__)


class SignatureVerifier(Protocol):
    """Pass/fail check of a typed-data signature made by ``address``."""

    async def verify(
        self,
        address: str,
        signature: str,
        domain: Mapping[str, Any],
        types: Mapping[str, Any],
        primary_type: str,
        message: Mapping[str, Any],
    ) -> bool: ...


class HttpSignatureVerifier:
    """Delegates verification to a remote verifier service.

    The service receives the typed-data payload and answers
    ``{"valid": true|false}``. Transport errors count as a failed check.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def verify(
        self,
        address: str,
        signature: str,
        domain: Mapping[str, Any],
        types: Mapping[str, Any],
        primary_type: str,
        message: Mapping[str, Any],
    ) -> bool:
        payload = {
            "address": address,
            "signature": signature,
            "domain": dict(domain),
            "types": dict(types),
            "primaryType": primary_type,
            "message": dict(message),
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(
                    self.url, json=payload, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
                result = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "signature_verifier_request_failed",
                address=address,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return isinstance(result, dict) and result.get("valid") is True


class RejectingSignatureVerifier:
    """Used when no verifier is configured: every sign-in is refused."""

    async def verify(
        self,
        address: str,
        signature: str,
        domain: Mapping[str, Any],
        types: Mapping[str, Any],
        primary_type: str,
        message: Mapping[str, Any],
    ) -> bool:
        logger.warning("signature_verifier_not_configured", address=address)
        return False
