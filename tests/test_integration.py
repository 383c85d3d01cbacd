import asyncio
import os

import pytest

from liquidation_monitor.config import Settings
from liquidation_monitor.services.price import FeedState, PriceFeedAggregator, PriceSource

has_live_feed = bool(os.getenv("LIVE_FEED_TESTS"))


@pytest.mark.integration
@pytest.mark.skipif(not has_live_feed, reason="LIVE_FEED_TESTS not enabled")
class TestLivePriceFeed:
    @pytest.mark.asyncio
    async def test_poll_real_endpoint(self):
        feed = PriceFeedAggregator.from_settings(Settings())
        await feed.start()
        try:
            accepted = await feed.poll_once()
            assert accepted > 0
            assert feed.get_asset_price("ETH").source == PriceSource.POLL
        finally:
            await feed.stop()

    @pytest.mark.asyncio
    async def test_stream_delivers_prices(self):
        feed = PriceFeedAggregator.from_settings(Settings())
        await feed.start()
        try:
            for _ in range(100):
                if feed.state == FeedState.STREAMING:
                    break
                await asyncio.sleep(0.1)
            assert feed.state == FeedState.STREAMING
            assert feed.get_price("BTC") > 0
        finally:
            await feed.stop()
