import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.services.errors import NotFoundError, TransientStoreError
from app.utils.code_generator import generate_referral_code
from app.utils.log_mask import mask_device_id, mask_ip
from app.utils.rate_limit import get_real_ip
from app.utils.retry import with_store_retry


class TestReferralCode:
    def test_format(self):
        code = generate_referral_code("1f3e9c2a-7b1d-4c55-9a0e-3d2f1b6c8e70")
        assert code.startswith("REF1F3E9C")
        assert len(code) == 15
        assert code.isalnum()

    def test_suffix_is_random(self):
        codes = {generate_referral_code("abcdef-123") for _ in range(20)}
        assert len(codes) > 1


class TestLogMask:
    def test_ipv4(self):
        assert mask_ip("203.0.113.42") == "203.0.113.***"

    def test_ipv6(self):
        assert mask_ip("2001:db8:85a3::8a2e:370:7334") == "2001:db8:85a3:***"

    def test_empty_ip(self):
        assert mask_ip(None) == "***"

    def test_device_id(self):
        assert mask_device_id("abcdef123456") == "abcd***"

    def test_short_device_id(self):
        assert mask_device_id("abc") == "***"


def _make_request(remote_addr: str = "127.0.0.1", forwarded: str | None = None):
    req = MagicMock()
    req.client.host = remote_addr
    headers = {}
    if forwarded is not None:
        headers["X-Forwarded-For"] = forwarded
    req.headers = headers
    return req


class TestRealIp:
    def test_no_proxy_ignores_forwarded_header(self):
        with patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "0"}):
            req = _make_request(forwarded="6.6.6.6")
            with patch("app.utils.rate_limit.get_remote_address", return_value="192.168.1.1"):
                assert get_real_ip(req) == "192.168.1.1"

    def test_single_proxy(self):
        with patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "1"}):
            req = _make_request(forwarded="10.0.0.1, 192.168.1.1")
            assert get_real_ip(req) == "192.168.1.1"


class TestStoreRetry:
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        db = AsyncMock()
        operation = AsyncMock(side_effect=[OperationalError("SELECT 1", {}, Exception("gone")), "ok"])

        result = await with_store_retry(db, operation, name="lookup")

        assert result == "ok"
        assert operation.await_count == 2
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhaustion_raises_transient_store_error(self):
        db = AsyncMock()
        operation = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(TransientStoreError):
            await with_store_retry(db, operation, name="lookup", attempts=2)
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_business_errors_fail_fast(self):
        db = AsyncMock()
        operation = AsyncMock(side_effect=NotFoundError("Referral not found"))

        with pytest.raises(NotFoundError):
            await with_store_retry(db, operation, name="lookup")
        assert operation.await_count == 1
        db.rollback.assert_not_awaited()
