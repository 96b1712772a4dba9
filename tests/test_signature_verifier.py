import json

import httpx

from walletauth.service.signature import HttpSignatureVerifier, RejectingSignatureVerifier

VERIFIER_URL = "https://verifier.internal/verify"

ARGS = (
    "0x" + "ab" * 20,
    "0xsignature",
    {"name": "Sophon SSO", "version": "1"},
    {"Login": [{"name": "nonce", "type": "string"}]},
    "Login",
    {"nonce": "abc"},
)


def _verifier(handler):
    return HttpSignatureVerifier(VERIFIER_URL, timeout=2.0, transport=httpx.MockTransport(handler))


class TestHttpSignatureVerifier:
    async def test_posts_typed_data_and_accepts_valid(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"valid": True})

        assert await _verifier(handler).verify(*ARGS) is True
        assert seen[0]["primaryType"] == "Login"
        assert seen[0]["message"] == {"nonce": "abc"}
        assert seen[0]["address"] == ARGS[0]

    async def test_invalid_answer_rejected(self):
        verifier = _verifier(lambda request: httpx.Response(200, json={"valid": False}))
        assert await verifier.verify(*ARGS) is False

    async def test_truthy_non_boolean_rejected(self):
        verifier = _verifier(lambda request: httpx.Response(200, json={"valid": "yes"}))
        assert await verifier.verify(*ARGS) is False

    async def test_server_error_rejected(self):
        verifier = _verifier(lambda request: httpx.Response(502, text="bad gateway"))
        assert await verifier.verify(*ARGS) is False

    async def test_non_json_body_rejected(self):
        verifier = _verifier(lambda request: httpx.Response(200, text="<html>"))
        assert await verifier.verify(*ARGS) is False

    async def test_transport_error_rejected(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert await _verifier(handler).verify(*ARGS) is False


class TestRejectingSignatureVerifier:
    async def test_always_rejects(self):
        assert await RejectingSignatureVerifier().verify(*ARGS) is False
