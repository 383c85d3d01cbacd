"""Liquidation opportunity scanner.

This module implements the scan loop that periodically takes a borrower
snapshot and a price snapshot, recomputes every health factor, and publishes
a ranked list of liquidation opportunities. Scans are not reentrant: a
trigger arriving while a scan is in flight is dropped. Results are published
all-or-nothing at the end of a completed cycle; a failed or cancelled cycle
leaves the previous output untouched.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from liquidation_monitor.config import Settings
from liquidation_monitor.core.errors import MissingPriceError, SnapshotFetchFailed
from liquidation_monitor.core.health import (
    HealthStatus,
    calculate_health_factor,
    classify_health,
    collateral_value_usd,
    debt_value_usd,
    price_drop_to_liquidation,
)
from liquidation_monitor.services import metrics
from liquidation_monitor.services.metrics import ScanCycleTimer
from liquidation_monitor.services.price import PriceFeedAggregator
from liquidation_monitor.sources.base import Borrower, SnapshotSource

logger = logging.getLogger(__name__)


class ScannerState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"


@dataclass(frozen=True)
class LiquidationPolicy:
    """Protocol-level liquidation parameters."""
    max_liquidation_fraction: float = 0.5   # Close factor: share of a debt position
    liquidation_bonus_rate: float = 0.05    # Liquidator reward
    liquidation_health_factor: float = 1.0  # Below this a borrower is liquidatable
    warning_threshold: float = 1.3
    critical_threshold: float = 1.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "LiquidationPolicy":
        return cls(
            max_liquidation_fraction=settings.max_liquidation_fraction,
            liquidation_bonus_rate=settings.liquidation_bonus_rate,
            warning_threshold=settings.warning_health_factor_threshold,
            critical_threshold=settings.critical_health_factor_threshold,
        )


@dataclass(frozen=True)
class BorrowerHealth:
    """A borrower as evaluated in one scan cycle."""
    borrower: Borrower
    health_factor: float | None     # None when indeterminate
    status: HealthStatus
    total_collateral_usd: float | None
    total_debt_usd: float | None
    price_drop_to_liquidation_pct: float | None = None
    error: str | None = None

    @property
    def address(self) -> str:
        return self.borrower.address


@dataclass(frozen=True)
class LiquidationOpportunity:
    opportunity_id: str
    borrower_address: str
    collateral_symbol: str
    debt_symbol: str
    health_factor: float
    collateral_value_usd: float
    debt_value_usd: float
    max_liquidation_value_usd: float
    liquidation_bonus_rate: float
    estimated_profit_usd: float
    discovered_at: datetime


@dataclass(frozen=True)
class ScanResult:
    borrowers: Tuple[BorrowerHealth, ...]
    opportunities: Tuple[LiquidationOpportunity, ...]
    prices: Mapping[str, float]
    started_at: datetime
    completed_at: datetime


def evaluate_borrower(
    borrower: Borrower,
    prices: Mapping[str, float],
    policy: LiquidationPolicy,
) -> BorrowerHealth:
    """Compute one borrower's health, containing price errors to this borrower."""
    try:
        hf = calculate_health_factor(borrower.collateral, borrower.debt, prices)
        total_collateral = collateral_value_usd(borrower.collateral, prices)
        total_debt = debt_value_usd(borrower.debt, prices)
    except MissingPriceError as e:
        return BorrowerHealth(
            borrower=borrower,
            health_factor=None,
            status=HealthStatus.INDETERMINATE,
            total_collateral_usd=None,
            total_debt_usd=None,
            error=str(e),
        )

    return BorrowerHealth(
        borrower=borrower,
        health_factor=hf,
        status=classify_health(
            hf,
            warning_threshold=policy.warning_threshold,
            critical_threshold=policy.critical_threshold,
            liquidation_threshold=policy.liquidation_health_factor,
        ),
        total_collateral_usd=total_collateral,
        total_debt_usd=total_debt,
        price_drop_to_liquidation_pct=price_drop_to_liquidation(
            hf, policy.liquidation_health_factor
        ),
    )


def find_opportunities(
    evaluated: Sequence[BorrowerHealth],
    prices: Mapping[str, float],
    policy: LiquidationPolicy,
    discovered_at: datetime | None = None,
) -> List[LiquidationOpportunity]:
    """
    Build the ranked opportunity list for liquidatable borrowers.

    For every (collateral, debt) pair of a liquidatable borrower:
    - max liquidation = min(debt value * close factor, collateral value)
    - estimated profit = max liquidation * bonus rate

    Returns opportunities sorted by estimated profit, most profitable first.
    """
    discovered_at = discovered_at or datetime.now(timezone.utc)
    opportunities: List[LiquidationOpportunity] = []

    for health in evaluated:
        if health.status is not HealthStatus.LIQUIDATABLE:
            continue

        borrower = health.borrower
        seen: Dict[str, int] = {}
        for collateral in borrower.collateral:
            if collateral.amount <= 0:
                continue
            collateral_value = collateral.amount * prices[collateral.symbol]

            for debt in borrower.debt:
                if debt.amount <= 0:
                    continue
                debt_value = debt.amount * prices[debt.symbol]

                max_liquidation = min(
                    debt_value * policy.max_liquidation_fraction,
                    collateral_value,
                )

                base_id = f"{borrower.address}:{collateral.symbol}:{debt.symbol}"
                seen[base_id] = seen.get(base_id, 0) + 1
                opportunity_id = base_id if seen[base_id] == 1 else f"{base_id}#{seen[base_id]}"

                opportunities.append(LiquidationOpportunity(
                    opportunity_id=opportunity_id,
                    borrower_address=borrower.address,
                    collateral_symbol=collateral.symbol,
                    debt_symbol=debt.symbol,
                    health_factor=health.health_factor,
                    collateral_value_usd=collateral_value,
                    debt_value_usd=debt_value,
                    max_liquidation_value_usd=max_liquidation,
                    liquidation_bonus_rate=policy.liquidation_bonus_rate,
                    estimated_profit_usd=max_liquidation * policy.liquidation_bonus_rate,
                    discovered_at=discovered_at,
                ))

    # Stable sort keeps snapshot order among equal profits
    opportunities.sort(key=lambda o: o.estimated_profit_usd, reverse=True)
    return opportunities


OpportunityCallback = Callable[[Tuple[LiquidationOpportunity, ...]], None]
BorrowerCallback = Callable[[Tuple[BorrowerHealth, ...]], None]


class OpportunityScanner:
    """
    Runs scan cycles on a timer and on demand.

    States: IDLE -> SCANNING -> IDLE. Only one cycle runs at a time and
    triggers arriving mid-scan are coalesced.
    """

    def __init__(
        self,
        snapshot_source: SnapshotSource,
        price_feed: PriceFeedAggregator,
        policy: LiquidationPolicy | None = None,
        scan_interval_seconds: float = 30.0,
        fetch_timeout_seconds: float = 8.0,
    ):
        self._source = snapshot_source
        self._price_feed = price_feed
        self._policy = policy or LiquidationPolicy()
        self._interval = scan_interval_seconds
        self._fetch_timeout = fetch_timeout_seconds

        self._state = ScannerState.IDLE
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._scan_task: asyncio.Task | None = None

        self._latest: ScanResult | None = None
        self._opportunity_subscribers: List[OpportunityCallback] = []
        self._borrower_subscribers: List[BorrowerCallback] = []
        self._cycle_count = 0

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def policy(self) -> LiquidationPolicy:
        return self._policy

    @property
    def latest_result(self) -> ScanResult | None:
        return self._latest

    @property
    def opportunities(self) -> Tuple[LiquidationOpportunity, ...]:
        return self._latest.opportunities if self._latest else ()

    @property
    def borrowers(self) -> Tuple[BorrowerHealth, ...]:
        return self._latest.borrowers if self._latest else ()

    @property
    def last_updated(self) -> datetime | None:
        return self._latest.completed_at if self._latest else None

    def get_opportunity(self, opportunity_id: str) -> LiquidationOpportunity | None:
        for opportunity in self.opportunities:
            if opportunity.opportunity_id == opportunity_id:
                return opportunity
        return None

    def subscribe_opportunities(self, callback: OpportunityCallback) -> Callable[[], None]:
        """Receive the full opportunity list after every completed scan."""
        self._opportunity_subscribers.append(callback)
        return lambda: self._remove(self._opportunity_subscribers, callback)

    def subscribe_borrowers(self, callback: BorrowerCallback) -> Callable[[], None]:
        """Receive the full evaluated borrower list after every completed scan."""
        self._borrower_subscribers.append(callback)
        return lambda: self._remove(self._borrower_subscribers, callback)

    @staticmethod
    def _remove(subscribers: list, callback):
        if callback in subscribers:
            subscribers.remove(callback)

    # Scan control

    async def scan(self) -> ScanResult | None:
        """Run one cycle now.

        Returns None if a scan was already in flight.

        Raises:
            SnapshotFetchFailed: the borrower snapshot could not be fetched
        """
        if not self._try_begin():
            return None
        try:
            return await self._run_cycle()
        finally:
            self._state = ScannerState.IDLE

    def trigger(self) -> asyncio.Task | None:
        """Start a cycle in the background; None if one is already in flight."""
        if not self._try_begin():
            return None
        task = asyncio.create_task(self._run_cycle())
        task.add_done_callback(self._on_scan_done)
        self._scan_task = task
        return task

    def cancel_scan(self) -> bool:
        """Abandon the in-flight background scan; nothing from it is published."""
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
            return True
        return False

    def _try_begin(self) -> bool:
        if self._state is ScannerState.SCANNING:
            logger.debug("Scan already in progress, dropping trigger")
            metrics.record_scan_coalesced()
            return False
        self._state = ScannerState.SCANNING
        return True

    def _on_scan_done(self, task: asyncio.Task):
        # Runs even when the task was cancelled before it started
        self._state = ScannerState.IDLE
        if self._scan_task is task:
            self._scan_task = None

        if task.cancelled():
            logger.info("Scan cycle cancelled, nothing published")
            return
        error = task.exception()
        if isinstance(error, SnapshotFetchFailed):
            logger.error(f"Scan cycle aborted, keeping previous results: {error}")
        elif error is not None:
            logger.error("Unexpected error in scan cycle", exc_info=error)

    async def start(self):
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("Opportunity scanner started")

    async def stop(self):
        self._running = False
        self.cancel_scan()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Opportunity scanner stopped")

    async def _run_loop(self):
        while self._running:
            task = self.trigger()
            if task is not None:
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    task.cancel()
                    raise

            await asyncio.sleep(self._interval)

    async def _run_cycle(self) -> ScanResult:
        self._cycle_count += 1
        started_at = datetime.now(timezone.utc)

        with ScanCycleTimer():
            # One consistent price snapshot for the whole cycle
            prices = self._price_feed.get_all_prices()
            if not prices:
                logger.warning("Price feed has produced no prices yet, borrowers will be indeterminate")

            borrowers = await self._fetch_snapshot()

            evaluated = tuple(evaluate_borrower(b, prices, self._policy) for b in borrowers)
            opportunities = tuple(find_opportunities(evaluated, prices, self._policy))

            result = ScanResult(
                borrowers=evaluated,
                opportunities=opportunities,
                prices=prices,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )

        self._publish(result)
        return result

    async def _fetch_snapshot(self) -> List[Borrower]:
        try:
            return await asyncio.wait_for(
                self._source.get_borrowers(),
                timeout=self._fetch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SnapshotFetchFailed(
                f"{self._source.name} snapshot timed out after {self._fetch_timeout}s"
            ) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SnapshotFetchFailed(f"{self._source.name} snapshot failed: {e}") from e

    def _publish(self, result: ScanResult):
        self._latest = result

        status_counts = Counter(b.status.value for b in result.borrowers)
        metrics.record_scan_results(
            {status.value: status_counts.get(status.value, 0) for status in HealthStatus},
            len(result.opportunities),
            result.opportunities[0].estimated_profit_usd if result.opportunities else 0.0,
        )

        critical = [b for b in result.borrowers if b.status is HealthStatus.CRITICAL]
        if critical:
            logger.warning(
                f"{len(critical)} borrower(s) near liquidation "
                f"(health factor < {self._policy.critical_threshold})"
            )
        indeterminate = status_counts.get(HealthStatus.INDETERMINATE.value, 0)
        if indeterminate:
            logger.warning(f"{indeterminate} borrower(s) indeterminate due to missing prices")

        logger.info(
            f"Scan #{self._cycle_count} complete: {len(result.borrowers)} borrowers, "
            f"{status_counts.get(HealthStatus.LIQUIDATABLE.value, 0)} liquidatable, "
            f"{len(result.opportunities)} opportunities"
        )

        for callback in list(self._opportunity_subscribers):
            try:
                callback(result.opportunities)
            except Exception as e:
                logger.error(f"Error in opportunity subscription callback: {e}")

        for callback in list(self._borrower_subscribers):
            try:
                callback(result.borrowers)
            except Exception as e:
                logger.error(f"Error in borrower subscription callback: {e}")
