"""Tests for the IP reputation list synchronization."""

import httpx
import pytest
import respx

from edgelimit.app.core.config import settings
from edgelimit.app.exceptions import IpDenyListFetchError, ThresholdError
from edgelimit.app.services.deny_list.ip_deny_list import (
    MILLISECONDS_IN_DAY,
    MILLISECONDS_IN_HOUR,
    disable_ip_deny_list,
    get_ip_deny_list,
    get_ip_list_ttl,
    update_ip_deny_list,
    validate_threshold,
)

from conftest import EPOCH_START

PREFIX = "test"
ALL_KEY = "test:denyList:all"
IP_KEY = "test:denyList:ipDenyList"
STATUS_KEY = "test:ipDenyListStatus"


def list_url(threshold):
    return f"{settings.ip_deny_list_base_url}/{threshold}.txt"


class TestIpListTtl:
    """Tests for the time until the next 02:00 UTC."""

    def test_at_midnight(self):
        assert get_ip_list_ttl(EPOCH_START) == 2 * MILLISECONDS_IN_HOUR

    def test_at_two_am(self):
        assert get_ip_list_ttl(EPOCH_START + 2 * MILLISECONDS_IN_HOUR) == MILLISECONDS_IN_DAY

    def test_just_after_two_am(self):
        now = EPOCH_START + 3 * MILLISECONDS_IN_HOUR
        assert get_ip_list_ttl(now) == 23 * MILLISECONDS_IN_HOUR

    def test_defaults_to_clock(self, fake_clock):
        assert get_ip_list_ttl() == 2 * MILLISECONDS_IN_HOUR


class TestThreshold:
    @pytest.mark.parametrize("threshold", [1, 6, 8])
    def test_valid(self, threshold):
        assert validate_threshold(threshold) == threshold

    @pytest.mark.parametrize("threshold", [0, 9, -1, "3", 3.0, True, None])
    def test_invalid(self, threshold):
        with pytest.raises(ThresholdError) as exc_info:
            validate_threshold(threshold)
        assert "from 1 to 8" in str(exc_info.value)


class TestGetIpDenyList:
    """Tests for downloading the list."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_parses_lines(self):
        respx.get(list_url(3)).mock(
            return_value=httpx.Response(200, text="1.1.1.1\n\n2.2.2.2\n")
        )

        assert await get_ip_deny_list(3) == ["1.1.1.1", "2.2.2.2"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_uses_base_url_override(self):
        route = respx.get("https://mirror.example/levels/5.txt").mock(
            return_value=httpx.Response(200, text="3.3.3.3\n")
        )

        result = await get_ip_deny_list(5, base_url="https://mirror.example/levels/")

        assert route.called
        assert result == ["3.3.3.3"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error(self):
        respx.get(list_url(3)).mock(return_value=httpx.Response(404))

        with pytest.raises(IpDenyListFetchError) as exc_info:
            await get_ip_deny_list(3)
        assert "404" in str(exc_info.value)

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self):
        respx.get(list_url(3)).mock(side_effect=httpx.ConnectError("unreachable"))

        with pytest.raises(IpDenyListFetchError) as exc_info:
            await get_ip_deny_list(3)
        assert str(exc_info.value).startswith("Failed to fetch ip deny list")

    @pytest.mark.asyncio
    async def test_threshold_checked_before_fetch(self):
        with pytest.raises(ThresholdError):
            await get_ip_deny_list(0)

    @pytest.mark.asyncio
    @respx.mock
    async def test_reuses_given_client(self):
        respx.get(list_url(2)).mock(return_value=httpx.Response(200, text="4.4.4.4"))

        async with httpx.AsyncClient() as client:
            assert await get_ip_deny_list(2, http_client=client) == ["4.4.4.4"]


class TestUpdateIpDenyList:
    """Tests for update_ip_deny_list."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_replaces_ip_entries_and_keeps_manual_ones(self, redis, fake_clock):
        redis._sadd(ALL_KEY, "manual", "2.2.2.2", "9.9.9.9")
        redis._sadd(IP_KEY, "9.9.9.9")
        respx.get(list_url(6)).mock(
            return_value=httpx.Response(200, text="1.1.1.1\n2.2.2.2\n")
        )

        await update_ip_deny_list(redis, PREFIX, 6, ttl=1_000)

        assert redis._smembers(IP_KEY) == {"1.1.1.1"}
        assert redis._smembers(ALL_KEY) == {"manual", "2.2.2.2", "1.1.1.1"}
        assert redis.data[STATUS_KEY] == "valid"
        assert redis.expiry[STATUS_KEY] == EPOCH_START + 1_000

    @pytest.mark.asyncio
    @respx.mock
    async def test_runs_as_one_transaction(self, redis, fake_clock):
        respx.get(list_url(6)).mock(return_value=httpx.Response(200, text="1.1.1.1\n"))

        await update_ip_deny_list(redis, PREFIX, 6)

        assert len(redis.pipelines) == 1
        pipeline = redis.pipelines[0]
        assert pipeline.transaction is True
        assert [name for name, _, _ in pipeline.commands] == [
            "sdiffstore", "delete", "sadd", "sdiffstore", "sunionstore", "set",
        ]

    @pytest.mark.asyncio
    @respx.mock
    async def test_default_ttl_is_next_two_am(self, redis, fake_clock):
        respx.get(list_url(6)).mock(return_value=httpx.Response(200, text="1.1.1.1\n"))

        await update_ip_deny_list(redis, PREFIX, 6)

        assert redis.expiry[STATUS_KEY] == EPOCH_START + 2 * MILLISECONDS_IN_HOUR

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_list(self, redis, fake_clock):
        redis._sadd(ALL_KEY, "manual", "old")
        redis._sadd(IP_KEY, "old")
        respx.get(list_url(6)).mock(return_value=httpx.Response(200, text=""))

        await update_ip_deny_list(redis, PREFIX, 6)

        assert redis._smembers(ALL_KEY) == {"manual"}
        assert redis._smembers(IP_KEY) == set()
        assert redis.data[STATUS_KEY] == "valid"

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_failure_leaves_redis_untouched(self, redis, fake_clock):
        redis._sadd(ALL_KEY, "manual")
        respx.get(list_url(6)).mock(return_value=httpx.Response(500))

        with pytest.raises(IpDenyListFetchError):
            await update_ip_deny_list(redis, PREFIX, 6)

        assert redis.pipelines == []
        assert STATUS_KEY not in redis.data


class TestDisableIpDenyList:
    @pytest.mark.asyncio
    async def test_removes_ip_entries(self, redis, fake_clock):
        redis._sadd(ALL_KEY, "manual", "1.1.1.1")
        redis._sadd(IP_KEY, "1.1.1.1")
        redis._set(STATUS_KEY, "valid", px=1_000)

        await disable_ip_deny_list(redis, PREFIX)

        assert redis._smembers(ALL_KEY) == {"manual"}
        assert IP_KEY not in redis.data
        assert redis.data[STATUS_KEY] == "disabled"
        assert redis._ttl(STATUS_KEY) == -1
