"""Live price feed aggregator.

This module keeps the latest price per symbol, fed by a streaming websocket
subscription with an HTTP polling fallback. Both paths write through
``apply_update``, where the newest ``observed_at`` wins regardless of source.
The price map is replaced wholesale on every accepted update, so readers
always see a complete snapshot.
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Set

import aiohttp

from liquidation_monitor.config import Settings
from liquidation_monitor.core.errors import FeedUnavailable
from liquidation_monitor.services import metrics

logger = logging.getLogger(__name__)


class PriceSource(Enum):
    STREAM = "stream"
    POLL = "poll"
    FALLBACK_DEFAULT = "fallback_default"


class FeedState(Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    POLLING = "polling"


@dataclass(frozen=True)
class AssetPrice:
    symbol: str
    price: float
    observed_at: datetime
    source: PriceSource

    def __post_init__(self):
        if self.price < 0:
            raise ValueError(f"Price for {self.symbol} must not be negative")

    @property
    def is_live(self) -> bool:
        """False for hardcoded defaults, which must never pass for a live quote."""
        return self.source is not PriceSource.FALLBACK_DEFAULT


PriceCallback = Callable[[Dict[str, AssetPrice]], None]


def parse_price_map(data: Any) -> Dict[str, float]:
    """Coerce a ``{symbol: price}`` payload, dropping unusable entries.

    Prices may arrive as numbers or numeric strings. Non-numeric, non-finite
    and negative values are skipped.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"Expected a symbol -> price mapping, got {type(data).__name__}")

    prices: Dict[str, float] = {}
    for symbol, raw in data.items():
        if isinstance(raw, bool):
            continue
        try:
            price = float(raw)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(price) or price < 0:
            logger.debug(f"Ignoring invalid price for {symbol}: {raw!r}")
            continue
        prices[str(symbol)] = price
    return prices


class PriceFeedAggregator:
    """
    Price map fed by two paths:
    1. Streaming subscription (primary) - ``allMids`` over a websocket
    2. HTTP polling (fallback) - runs while the stream is unhealthy

    During a reconnect race both may be active; last write wins per symbol
    by ``observed_at``.
    """

    def __init__(
        self,
        stream_url: str | None,
        poll_url: str,
        symbols: List[str],
        poll_interval_seconds: float = 10.0,
        reconnect_delay_seconds: float = 5.0,
        timeout_seconds: float = 8.0,
        default_prices: Mapping[str, float] | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self._stream_url = stream_url
        self._poll_url = poll_url
        self._symbols = list(symbols)
        self._poll_interval = poll_interval_seconds
        self._reconnect_delay = reconnect_delay_seconds
        self._timeout = timeout_seconds
        self._default_prices = dict(default_prices or {})

        self._session = session
        self._owns_session = session is None

        self._prices: Dict[str, AssetPrice] = {}
        self._subscribers: List[PriceCallback] = []
        self._last_update: datetime | None = None
        self._last_stream_activity = 0.0  # monotonic
        self._reported_missing: Set[str] = set()

        self._state = FeedState.STOPPED
        self._running = False
        self._stream_healthy = False
        self._stream_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceFeedAggregator":
        return cls(
            stream_url=settings.stream_url,
            poll_url=settings.poll_url,
            symbols=settings.watch_symbols,
            poll_interval_seconds=settings.poll_interval_seconds,
            reconnect_delay_seconds=settings.stream_reconnect_delay_seconds,
            timeout_seconds=settings.fetch_timeout_seconds,
            default_prices=settings.default_prices,
        )

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def symbols(self) -> List[str]:
        return list(self._symbols)

    @property
    def last_update(self) -> datetime | None:
        return self._last_update

    # Read side

    def get_price(self, symbol: str) -> float | None:
        """Latest live price, or None if no path ever produced one."""
        entry = self._prices.get(symbol)
        return entry.price if entry else None

    def get_asset_price(self, symbol: str) -> AssetPrice | None:
        return self._prices.get(symbol)

    def get_all_prices(self) -> Dict[str, float]:
        """Plain ``symbol -> price`` copy of the current snapshot."""
        return {symbol: entry.price for symbol, entry in self._prices.items()}

    def require_price(self, symbol: str) -> float:
        price = self.get_price(symbol)
        if price is None:
            raise FeedUnavailable(symbol)
        return price

    def price_or_default(self, symbol: str) -> AssetPrice | None:
        """Live price if known, else an explicit FALLBACK_DEFAULT entry."""
        entry = self._prices.get(symbol)
        if entry is not None:
            return entry

        default = self._default_prices.get(symbol)
        if default is None:
            return None
        logger.debug(f"Using default price for {symbol}: {default}")
        return AssetPrice(
            symbol=symbol,
            price=default,
            observed_at=datetime.now(timezone.utc),
            source=PriceSource.FALLBACK_DEFAULT,
        )

    def subscribe(self, callback: PriceCallback) -> Callable[[], None]:
        """Register a callback receiving the full price snapshot on every update.

        Returns a function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "stream_healthy": self._stream_healthy,
            "symbols": len(self._prices),
            "last_update": self._last_update.isoformat() if self._last_update else None,
        }

    # Write side

    def apply_update(
        self,
        prices: Mapping[str, float],
        source: PriceSource,
        observed_at: datetime | None = None,
    ) -> int:
        """Merge an update into the price map.

        Entries older than the held quote for a symbol are discarded.

        Returns:
            Number of symbols updated
        """
        if source is PriceSource.FALLBACK_DEFAULT:
            raise ValueError("Default prices are never stored in the live price map")

        observed_at = observed_at or datetime.now(timezone.utc)
        updated = dict(self._prices)
        accepted = 0

        for symbol, price in prices.items():
            if price < 0:
                logger.warning(f"Rejecting negative price for {symbol} from {source.value}")
                continue
            current = updated.get(symbol)
            if current is not None and current.observed_at > observed_at:
                continue
            updated[symbol] = AssetPrice(
                symbol=symbol,
                price=price,
                observed_at=observed_at,
                source=source,
            )
            accepted += 1

        if accepted == 0:
            return 0

        self._prices = updated
        if self._last_update is None or observed_at > self._last_update:
            self._last_update = observed_at
        metrics.record_price_update(source.value, accepted, len(updated))
        self._notify_subscribers()
        return accepted

    def handle_stream_message(self, message: str | Mapping[str, Any]) -> int:
        """Apply one inbound stream message; returns the number of symbols updated."""
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError as e:
                logger.warning(f"Dropping malformed stream message: {e}")
                return 0

        if not isinstance(message, Mapping) or message.get("channel") != "allMids":
            return 0

        payload = message.get("data")
        if isinstance(payload, Mapping) and isinstance(payload.get("mids"), Mapping):
            payload = payload["mids"]

        try:
            prices = parse_price_map(payload)
        except ValueError as e:
            logger.warning(f"Dropping stream message with bad payload: {e}")
            return 0

        if prices:
            self._last_stream_activity = time.monotonic()
            self._report_missing(prices)
        accepted = self.apply_update(prices, PriceSource.STREAM)
        if accepted and not self._stream_healthy:
            self._stream_healthy = True
            self._set_state(FeedState.STREAMING)
            logger.info("Price stream healthy, polling fallback will stop")
        return accepted

    async def poll_once(self) -> int:
        prices = await self._fetch_polled_prices()
        self._report_missing(prices)
        return self.apply_update(prices, PriceSource.POLL)

    # Lifecycle

    async def start(self):
        if self._running:
            return
        self._running = True
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._timeout)
            )
            self._owns_session = True

        self._last_stream_activity = time.monotonic()
        self._set_state(FeedState.CONNECTING)
        if self._stream_url:
            self._stream_task = asyncio.create_task(self._stream_loop())
            self._watchdog_task = asyncio.create_task(self._stream_watchdog())
        else:
            self._on_stream_down("no stream configured")
        logger.info("Price feed aggregator started")

    async def stop(self):
        self._running = False
        tasks = [
            t for t in (self._stream_task, self._poll_task, self._watchdog_task)
            if t is not None
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._stream_task = None
        self._poll_task = None
        self._watchdog_task = None
        self._stream_healthy = False

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._set_state(FeedState.STOPPED)
        logger.info("Price feed aggregator stopped")

    # Internals

    def _set_state(self, state: FeedState):
        if state is not self._state:
            logger.debug(f"Price feed state {self._state.value} -> {state.value}")
        self._state = state
        metrics.set_feed_state(state.value, [s.value for s in FeedState])

    def _notify_subscribers(self):
        for callback in list(self._subscribers):
            try:
                callback(dict(self._prices))
            except Exception as e:
                logger.error(f"Error in price subscription callback: {e}")

    def _report_missing(self, prices: Mapping[str, float]):
        for symbol in self._symbols:
            if symbol in prices or symbol in self._reported_missing:
                continue
            self._reported_missing.add(symbol)
            logger.warning(f"Upstream feed has no quote for {symbol}, it stays unpriced unless a default applies")

    def _subscription_message(self) -> Dict[str, Any]:
        return {
            "method": "subscribe",
            "subscription": {"type": "allMids", "coins": self._symbols},
        }

    def _on_stream_down(self, reason: str):
        self._stream_healthy = False
        if not self._running:
            return
        logger.warning(f"Price stream unavailable ({reason}), using HTTP polling")
        self._set_state(FeedState.POLLING)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _stream_loop(self):
        while self._running:
            try:
                self._last_stream_activity = time.monotonic()
                await self._stream_once()
                reason = "connection closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                metrics.record_feed_error("stream", e)
                reason = f"{type(e).__name__}: {e}"

            self._on_stream_down(reason)
            await asyncio.sleep(self._reconnect_delay)

    async def _stream_watchdog(self):
        """Fall back to polling when the stream stays open but delivers no prices."""
        window = self._poll_interval
        while self._running:
            idle = time.monotonic() - self._last_stream_activity
            if idle < window:
                await asyncio.sleep(window - idle)
                continue
            if self._state is not FeedState.POLLING:
                self._on_stream_down(f"no price data for {window:g}s")
            await asyncio.sleep(window)

    async def _stream_once(self):
        """Connect, subscribe and consume until the stream closes or errors."""
        async with self._session.ws_connect(self._stream_url, heartbeat=30.0) as ws:
            await ws.send_json(self._subscription_message())
            logger.info(f"Connected to price stream {self._stream_url}")

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_stream_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise ws.exception() or ConnectionError("websocket error")

    async def _poll_loop(self):
        logger.info("Starting HTTP price polling")
        while self._running and not self._stream_healthy:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                metrics.record_feed_error("poll", e)
                logger.warning(f"Price poll failed: {e}")

            await asyncio.sleep(self._poll_interval)
        logger.info("Stopped HTTP price polling")

    async def _fetch_polled_prices(self) -> Dict[str, float]:
        if self._session is None:
            raise RuntimeError("Price feed aggregator is not started")

        async with self._session.post(
            self._poll_url,
            json={"type": "allMids"},
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        ) as response:
            response.raise_for_status()
            data = await response.json()
        return parse_price_map(data)
