"""
Tests for lendflow/utils/locks.py - Redis single-flight lock.
"""
from unittest.mock import AsyncMock, patch

import pytest

from lendflow.utils.locks import LockTimeoutError, single_flight


class TestSingleFlight:
    async def test_acquires_and_releases(self, mock_redis):
        ran = False
        async with single_flight("outbound_dispatch", ttl=60):
            ran = True

        assert ran is True
        args, kwargs = mock_redis.set.call_args
        assert args[0] == "lendflow:lock:outbound_dispatch"
        assert kwargs == {"nx": True, "ex": 60}
        mock_redis.eval.assert_awaited_once()
        # Released with the same token it was acquired with
        assert mock_redis.eval.call_args[0][3] == args[1]

    async def test_held_lock_raises(self, mock_redis):
        mock_redis.set = AsyncMock(return_value=False)

        with pytest.raises(LockTimeoutError):
            async with single_flight("outbound_dispatch"):
                pytest.fail("body must not run")

        mock_redis.eval.assert_not_awaited()

    async def test_waits_for_release(self, mock_redis):
        mock_redis.set = AsyncMock(side_effect=[False, True])

        with patch("lendflow.utils.locks.asyncio.sleep", new_callable=AsyncMock):
            async with single_flight("outbound_dispatch", wait=1.0):
                pass

        assert mock_redis.set.await_count == 2

    async def test_released_when_body_raises(self, mock_redis):
        with pytest.raises(RuntimeError):
            async with single_flight("outbound_dispatch"):
                raise RuntimeError("boom")

        mock_redis.eval.assert_awaited_once()

    async def test_redis_unavailable_proceeds(self):
        with patch(
            "lendflow.utils.redis_client.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("redis down"),
        ):
            ran = False
            async with single_flight("outbound_dispatch"):
                ran = True

        assert ran is True
