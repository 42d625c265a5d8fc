"""JWT codec and token revocation list."""

import time
from unittest.mock import AsyncMock, MagicMock

from itemtraxx.service.tokens import RevocationList, TokenCodec

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def _codec(**overrides):
    kwargs = dict(issuer="itemtraxx", audience="itemtraxx-clients")
    kwargs.update(overrides)
    return TokenCodec(SECRET, **kwargs)


class TestTokenCodec:
    def test_round_trip_adds_issuer_and_audience(self):
        codec = _codec()
        token = codec.encode({"sub": "u1", "token_type": "access", "exp": time.time() + 60})
        claims = codec.decode(token, token_type="access")
        assert claims["sub"] == "u1"
        assert claims["iss"] == "itemtraxx"
        assert claims["aud"] == "itemtraxx-clients"

    def test_wrong_token_type(self):
        codec = _codec()
        token = codec.encode({"token_type": "refresh", "exp": time.time() + 60})
        assert codec.decode(token, token_type="access") is None

    def test_expired_beyond_leeway(self):
        codec = _codec(leeway_seconds=5)
        token = codec.encode({"token_type": "access", "exp": time.time() - 30})
        assert codec.decode(token, token_type="access") is None

    def test_expired_within_leeway(self):
        codec = _codec(leeway_seconds=120)
        token = codec.encode({"token_type": "access", "exp": time.time() - 30})
        assert codec.decode(token, token_type="access") is not None

    def test_other_audience(self):
        token = _codec(audience="someone-else").encode({"token_type": "access", "exp": time.time() + 60})
        assert _codec().decode(token, token_type="access") is None

    def test_malformed(self):
        codec = _codec()
        assert codec.decode("abc", token_type="access") is None
        assert codec.decode("a.b.c", token_type="access") is None


class TestRevocationList:
    async def test_local_only(self):
        revocations = RevocationList(None)
        assert await revocations.is_refresh_revoked("r1") is False
        await revocations.revoke_refresh("r1", 60)
        await revocations.denylist_access("a1", 60)
        assert await revocations.is_refresh_revoked("r1") is True
        assert await revocations.is_access_denylisted("a1") is True

    async def test_cache_outage_treats_refresh_as_revoked(self):
        cache = MagicMock()
        cache.is_refresh_revoked = AsyncMock(side_effect=ConnectionError("down"))
        cache.is_access_token_denylisted = AsyncMock(side_effect=ConnectionError("down"))
        revocations = RevocationList(cache)
        assert await revocations.is_refresh_revoked("r1") is True
        assert await revocations.is_access_denylisted("a1") is False

    async def test_writes_mirrored_to_cache(self):
        cache = MagicMock()
        cache.mark_refresh_revoked = AsyncMock()
        cache.denylist_access_token = AsyncMock()
        revocations = RevocationList(cache)
        await revocations.revoke_refresh("r1", 30)
        await revocations.denylist_access("a1", 0)
        cache.mark_refresh_revoked.assert_awaited_once_with("r1", 30)
        cache.denylist_access_token.assert_not_awaited()
