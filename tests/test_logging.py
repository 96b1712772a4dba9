from walletauth.logging import (
    _add_correlation_id,
    _redact_credentials,
    get_correlation_id,
    set_correlation_id,
)


class TestRedaction:
    def test_credential_values_are_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "session_started",
                "refresh_token": "eyJhbGciOiJFUzI1NiJ9.payload.sig",
                "signature": "0xdeadbeefcafe",
                "sid": "sid-visible",
            },
        )

        assert event["refresh_token"] == "ey***ig"
        assert event["signature"] == "0x***fe"
        assert event["sid"] == "sid-visible"

    def test_short_and_non_string_values_untouched(self):
        event = _redact_credentials(None, "info", {"token": "abc", "cookie_count": 2})

        assert event == {"token": "abc", "cookie_count": 2}


class TestCorrelationId:
    def test_explicit_id_is_kept(self):
        assert set_correlation_id("req-1") == "req-1"
        assert get_correlation_id() == "req-1"
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-1"

    def test_generated_when_missing(self):
        generated = set_correlation_id(None)

        assert len(generated) == 36
        assert get_correlation_id() == generated
