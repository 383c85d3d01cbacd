"""
Prometheus metrics for the liquidation monitor.

Exposes feed, scan and execution metrics for monitoring and observability.
"""

import asyncio
import time

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "liquidation_monitor",
    "Liquidation opportunity monitor application info",
    registry=REGISTRY,
)
APP_INFO.info({
    "version": "0.1.0",
    "name": "liquidation-monitor",
})

# Price feed metrics
PRICE_UPDATES_TOTAL = Counter(
    "liquidation_monitor_price_updates_total",
    "Total number of accepted price updates",
    ["source"],
    registry=REGISTRY,
)

FEED_ERRORS_TOTAL = Counter(
    "liquidation_monitor_feed_errors_total",
    "Total number of price feed errors",
    ["path", "error_type"],
    registry=REGISTRY,
)

FEED_STATE = Gauge(
    "liquidation_monitor_feed_state",
    "Current price feed state (1 for the active state)",
    ["state"],
    registry=REGISTRY,
)

PRICED_SYMBOLS = Gauge(
    "liquidation_monitor_priced_symbols",
    "Number of symbols with a known live price",
    registry=REGISTRY,
)

# Scan metrics
SCAN_CYCLE_DURATION_SECONDS = Histogram(
    "liquidation_monitor_scan_cycle_duration_seconds",
    "Duration of scan cycles in seconds",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

SCAN_CYCLES_TOTAL = Counter(
    "liquidation_monitor_scan_cycles_total",
    "Total number of scan cycles",
    ["status"],
    registry=REGISTRY,
)

BORROWERS_BY_STATUS = Gauge(
    "liquidation_monitor_borrowers",
    "Number of borrowers per health status in the last scan",
    ["status"],
    registry=REGISTRY,
)

OPPORTUNITIES_PUBLISHED = Gauge(
    "liquidation_monitor_opportunities",
    "Number of opportunities in the last published list",
    registry=REGISTRY,
)

BEST_OPPORTUNITY_PROFIT_USD = Gauge(
    "liquidation_monitor_best_opportunity_profit_usd",
    "Estimated profit of the most profitable published opportunity",
    registry=REGISTRY,
)

# Execution metrics
EXECUTIONS_TOTAL = Counter(
    "liquidation_monitor_executions_total",
    "Total number of completed executions",
    ["status"],
    registry=REGISTRY,
)

DUPLICATE_EXECUTIONS_TOTAL = Counter(
    "liquidation_monitor_duplicate_executions_total",
    "Total number of execution requests rejected as duplicates",
    registry=REGISTRY,
)

EXECUTION_DURATION_SECONDS = Histogram(
    "liquidation_monitor_execution_duration_seconds",
    "Duration of execution backend calls in seconds",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def record_price_update(source: str, count: int, priced_symbols: int):
    PRICE_UPDATES_TOTAL.labels(source=source).inc(count)
    PRICED_SYMBOLS.set(priced_symbols)


def record_feed_error(path: str, error: BaseException):
    FEED_ERRORS_TOTAL.labels(path=path, error_type=type(error).__name__).inc()


def set_feed_state(active: str, states: list[str]):
    """Flag the active feed state, clearing the others."""
    for state in states:
        FEED_STATE.labels(state=state).set(1 if state == active else 0)


def record_scan_coalesced():
    SCAN_CYCLES_TOTAL.labels(status="coalesced").inc()


def record_scan_results(status_counts: dict[str, int], opportunity_count: int, best_profit_usd: float):
    """Record the outcome of a published scan."""
    for status, count in status_counts.items():
        BORROWERS_BY_STATUS.labels(status=status).set(count)
    OPPORTUNITIES_PUBLISHED.set(opportunity_count)
    BEST_OPPORTUNITY_PROFIT_USD.set(best_profit_usd)


def record_execution(status: str, duration_seconds: float):
    EXECUTIONS_TOTAL.labels(status=status).inc()
    EXECUTION_DURATION_SECONDS.observe(duration_seconds)


def record_duplicate_execution():
    DUPLICATE_EXECUTIONS_TOTAL.inc()


class ScanCycleTimer:
    """Context manager for timing scan cycles."""

    def __init__(self):
        self._start_time = None

    def __enter__(self):
        self._start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self._start_time
        SCAN_CYCLE_DURATION_SECONDS.observe(duration)

        if exc_type is None:
            status = "success"
        elif issubclass(exc_type, asyncio.CancelledError):
            status = "cancelled"
        else:
            status = "error"
        SCAN_CYCLES_TOTAL.labels(status=status).inc()

        return False  # Don't suppress exceptions
