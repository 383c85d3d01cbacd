"""Core monitoring engine.

This module wires the price feed, borrower snapshot source, scanner and
executor together and exposes the interface consumed by the UI layer:
opportunity and borrower subscriptions, user-triggered execution and the
execution history. It also implements optional auto-liquidation of the most
profitable opportunities after each scan.
"""

import asyncio
import logging
import random
from typing import Callable, Dict, List, Set, Tuple

from liquidation_monitor.config import Settings, get_settings
from liquidation_monitor.core.errors import DuplicateExecutionInProgress, OpportunityNotFound
from liquidation_monitor.core.executor import ExecutionHistory, ExecutionRecord, OpportunityExecutor
from liquidation_monitor.core.health import calculate_health_factor
from liquidation_monitor.core.scanner import (
    BorrowerCallback,
    BorrowerHealth,
    LiquidationOpportunity,
    LiquidationPolicy,
    OpportunityCallback,
    OpportunityScanner,
    ScanResult,
)
from liquidation_monitor.services.execution import ExecutionBackend, SimulatedExecutionBackend
from liquidation_monitor.services.price import AssetPrice, PriceFeedAggregator
from liquidation_monitor.sources.base import SnapshotSource
from liquidation_monitor.sources.demo import DemoSnapshotSource
from liquidation_monitor.sources.http import HttpSnapshotSource
from liquidation_monitor.sources.static import StaticSnapshotSource

logger = logging.getLogger(__name__)


def create_snapshot_source(settings: Settings) -> SnapshotSource:
    if settings.snapshot_source == "http":
        return HttpSnapshotSource(
            settings.snapshot_url,
            timeout_seconds=settings.fetch_timeout_seconds,
        )
    if settings.snapshot_source == "static":
        return StaticSnapshotSource.from_file(settings.snapshot_file)
    return DemoSnapshotSource(rng=random.Random(settings.demo_seed))


class MonitoringEngine:
    def __init__(
        self,
        settings: Settings | None = None,
        price_feed: PriceFeedAggregator | None = None,
        snapshot_source: SnapshotSource | None = None,
        backend: ExecutionBackend | None = None,
        history: ExecutionHistory | None = None,
    ):
        self._settings = settings or get_settings()
        self._price_feed = price_feed or PriceFeedAggregator.from_settings(self._settings)
        self._snapshot_source = snapshot_source or create_snapshot_source(self._settings)
        self._backend = backend or SimulatedExecutionBackend(
            success_rate=self._settings.simulated_success_rate,
            latency_seconds=self._settings.simulated_latency_seconds,
        )

        self._scanner = OpportunityScanner(
            self._snapshot_source,
            self._price_feed,
            policy=LiquidationPolicy.from_settings(self._settings),
            scan_interval_seconds=self._settings.scan_interval_seconds,
            fetch_timeout_seconds=self._settings.fetch_timeout_seconds,
        )
        self._executor = OpportunityExecutor(
            self._backend,
            history=history,
            timeout_seconds=self._settings.execution_timeout_seconds,
            revalidate=(
                self._revalidate_opportunity
                if self._settings.revalidate_before_execution
                else None
            ),
        )

        self._running = False
        self._auto_tasks: Set[asyncio.Task] = set()
        self._unsubscribe_auto: Callable[[], None] | None = None

    @property
    def price_feed(self) -> PriceFeedAggregator:
        return self._price_feed

    @property
    def scanner(self) -> OpportunityScanner:
        return self._scanner

    @property
    def executor(self) -> OpportunityExecutor:
        return self._executor

    async def start(self):
        if self._running:
            return
        self._running = True
        if self._settings.auto_liquidation_enabled:
            self._unsubscribe_auto = self._scanner.subscribe_opportunities(self._on_opportunities)
            logger.info(
                f"Auto-liquidation enabled (min profit ${self._settings.min_profit_threshold_usd:,.2f})"
            )

        await self._price_feed.start()
        await self._scanner.start()
        logger.info(f"Monitoring engine started (snapshot source: {self._snapshot_source.name})")

    async def stop(self):
        self._running = False
        if self._unsubscribe_auto is not None:
            self._unsubscribe_auto()
            self._unsubscribe_auto = None

        await self._scanner.stop()

        for task in self._auto_tasks:
            task.cancel()
        await asyncio.gather(*self._auto_tasks, return_exceptions=True)
        self._auto_tasks.clear()

        await self._price_feed.stop()
        await self._snapshot_source.close()
        logger.info("Monitoring engine stopped")

    # UI-facing interface

    def subscribe_to_opportunities(self, callback: OpportunityCallback) -> Callable[[], None]:
        return self._scanner.subscribe_opportunities(callback)

    def subscribe_to_borrowers(self, callback: BorrowerCallback) -> Callable[[], None]:
        return self._scanner.subscribe_borrowers(callback)

    def get_opportunities(self) -> Tuple[LiquidationOpportunity, ...]:
        return self._scanner.opportunities

    def get_borrowers(self) -> Tuple[BorrowerHealth, ...]:
        return self._scanner.borrowers

    def get_prices(self) -> Dict[str, AssetPrice | None]:
        """Watch-list prices, live where known, else tagged defaults."""
        feed = self._price_feed
        return {symbol: feed.price_or_default(symbol) for symbol in feed.symbols}

    async def refresh(self) -> ScanResult | None:
        """On-demand scan; None if a scan was already running."""
        return await self._scanner.scan()

    async def request_execution(self, opportunity_id: str) -> ExecutionRecord:
        """
        Execute an opportunity from the latest published list.

        Raises:
            OpportunityNotFound: the id is not in the latest list
            DuplicateExecutionInProgress: the borrower already has a pending execution
        """
        opportunity = self._scanner.get_opportunity(opportunity_id)
        if opportunity is None:
            raise OpportunityNotFound(opportunity_id)
        return await self._executor.execute(opportunity)

    def get_execution_history(self) -> List[ExecutionRecord]:
        """Completed executions, newest first."""
        return self._executor.history.records()

    def get_status(self) -> Dict[str, object]:
        last_scan = self._scanner.last_updated
        return {
            "running": self._running,
            "feed": self._price_feed.status(),
            "scanner": {
                "state": self._scanner.state.value,
                "last_updated": last_scan.isoformat() if last_scan else None,
                "opportunities": len(self._scanner.opportunities),
                "borrowers": len(self._scanner.borrowers),
            },
            "executions": {
                "in_flight": len(self._executor.in_flight()),
                **self._executor.history.get_stats(),
            },
            "snapshot_source": self._snapshot_source.name,
            "execution_backend": self._backend.name,
        }

    # Auto-liquidation

    def select_auto_liquidations(
        self,
        opportunities: Tuple[LiquidationOpportunity, ...],
    ) -> List[LiquidationOpportunity]:
        """Most profitable opportunity per borrower above the profit threshold."""
        selected: List[LiquidationOpportunity] = []
        borrowers: Set[str] = set()
        for opportunity in opportunities:
            if opportunity.estimated_profit_usd < self._settings.min_profit_threshold_usd:
                break  # list is sorted by profit
            if opportunity.borrower_address in borrowers:
                continue
            if self._executor.is_in_flight(opportunity.borrower_address):
                continue
            borrowers.add(opportunity.borrower_address)
            selected.append(opportunity)
        return selected

    def _on_opportunities(self, opportunities: Tuple[LiquidationOpportunity, ...]):
        if not self._running:
            return
        for opportunity in self.select_auto_liquidations(opportunities):
            task = asyncio.create_task(self._auto_execute(opportunity))
            self._auto_tasks.add(task)
            task.add_done_callback(self._auto_tasks.discard)

    async def _auto_execute(self, opportunity: LiquidationOpportunity):
        logger.info(
            f"Auto-liquidating {opportunity.borrower_address} "
            f"(est. profit ${opportunity.estimated_profit_usd:,.2f})"
        )
        try:
            await self._executor.execute(opportunity)
        except DuplicateExecutionInProgress:
            logger.debug(f"Skipping {opportunity.borrower_address}, execution already pending")

    async def _revalidate_opportunity(self, opportunity: LiquidationOpportunity) -> str | None:
        """Re-run the health factor check against current prices."""
        borrower = next(
            (b.borrower for b in self._scanner.borrowers
             if b.address == opportunity.borrower_address),
            None,
        )
        if borrower is None:
            return "borrower no longer in snapshot"

        prices = self._price_feed.get_all_prices()
        # MissingPriceError propagates and fails the execution
        hf = calculate_health_factor(borrower.collateral, borrower.debt, prices)
        if hf >= self._scanner.policy.liquidation_health_factor:
            return f"health factor recovered to {hf:.4f}"
        return None
