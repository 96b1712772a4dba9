from datetime import datetime, timedelta, timezone

import pytest

from walletauth.service.claims import (
    ConsentGrant,
    ConsentKind,
    MemoryConsentSource,
    Permission,
    consent_claims,
    normalize_scope,
    pack_scope,
    unpack_scope,
)


class TestScope:
    def test_normalize_keeps_first_seen_order_without_duplicates(self):
        assert normalize_scope(["x", "email", "x", "discord"]) == [
            Permission.X,
            Permission.EMAIL,
            Permission.DISCORD,
        ]

    @pytest.mark.parametrize("value", ["admin", "EMAIL", "email ", "*"])
    def test_unknown_values_rejected(self, value):
        with pytest.raises(ValueError):
            normalize_scope([value])

    def test_pack_is_space_delimited(self):
        assert pack_scope([Permission.EMAIL, Permission.TELEGRAM]) == "email telegram"

    def test_unpack_accepts_string_and_list(self):
        assert unpack_scope("google x") == [Permission.GOOGLE, Permission.X]
        assert unpack_scope(["google"]) == [Permission.GOOGLE]
        assert unpack_scope(None) == []
        assert unpack_scope("") == []

    def test_unpack_rejects_unknown_or_malformed(self):
        with pytest.raises(ValueError):
            unpack_scope("email superuser")
        with pytest.raises(ValueError):
            unpack_scope({"email": True})


class TestConsentClaims:
    def test_short_keys_and_unix_seconds(self):
        granted = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        claims = consent_claims(
            [
                ConsentGrant(kind=ConsentKind.PERSONALIZATION_ADS, start_time=granted),
                ConsentGrant(kind=ConsentKind.SHARING_DATA, start_time=granted),
            ]
        )
        assert claims == {"pa": int(granted.timestamp()), "sd": int(granted.timestamp())}

    def test_latest_grant_per_kind_wins(self):
        early = datetime(2024, 1, 1, tzinfo=timezone.utc)
        late = early + timedelta(days=30)
        claims = consent_claims(
            [
                ConsentGrant(kind=ConsentKind.SHARING_DATA, start_time=late),
                ConsentGrant(kind=ConsentKind.SHARING_DATA, start_time=early),
            ]
        )
        assert claims == {"sd": int(late.timestamp())}

    def test_no_grants_omits_claim(self):
        assert consent_claims([]) is None


class TestMemoryConsentSource:
    async def test_grant_and_withdraw(self):
        source = MemoryConsentSource()
        now = datetime.now(timezone.utc)
        source.grant("user-1", ConsentKind.PERSONALIZATION_ADS, now)

        grants = await source.active_consents("user-1")
        assert [g.kind for g in grants] == [ConsentKind.PERSONALIZATION_ADS]
        assert await source.active_consents("user-2") == []

        assert source.withdraw("user-1", ConsentKind.PERSONALIZATION_ADS) is True
        assert source.withdraw("user-1", ConsentKind.PERSONALIZATION_ADS) is False
        assert await source.active_consents("user-1") == []

    async def test_grant_is_idempotent_per_kind(self):
        source = MemoryConsentSource()
        first = source.grant("user-1", ConsentKind.SHARING_DATA)

        again = source.grant("user-1", "sharing_data", first.start_time + timedelta(days=1))

        assert again == first
        assert first.start_time.tzinfo is not None
        assert len(await source.active_consents("user-1")) == 1

    async def test_active_consents_sorted_by_kind(self):
        source = MemoryConsentSource()
        source.grant("user-1", ConsentKind.SHARING_DATA)
        source.grant("user-1", ConsentKind.PERSONALIZATION_ADS)

        grants = await source.active_consents("user-1")

        assert [g.kind for g in grants] == [
            ConsentKind.PERSONALIZATION_ADS,
            ConsentKind.SHARING_DATA,
        ]

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            MemoryConsentSource().grant("user-1", "marketing")
