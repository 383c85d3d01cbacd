"""Error taxonomy for the liquidation monitor.

Computation errors (bad or missing data for one borrower) are contained per
borrower by the scanner. Infrastructure errors abort a whole scan cycle but
never the scan loop itself.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from liquidation_monitor.core.executor import ExecutionRecord


class MonitorError(Exception):
    """Base class for all liquidation monitor errors."""


class PriceUnavailableError(MonitorError):
    def __init__(self, symbol: str, message: str | None = None):
        self.symbol = symbol
        super().__init__(message or f"No price available for {symbol}")


class FeedUnavailable(PriceUnavailableError):
    """Neither the stream nor the poller has ever produced a price for the symbol."""

    def __init__(self, symbol: str):
        super().__init__(symbol, f"Price feed has never produced a price for {symbol}")


class MissingPriceError(PriceUnavailableError):
    """A position references a symbol that is absent from the price snapshot."""

    def __init__(self, symbol: str):
        super().__init__(symbol, f"Missing price for {symbol}")


class SnapshotFetchFailed(MonitorError):
    """The borrower snapshot could not be fetched; the scan cycle is aborted."""


class DuplicateExecutionInProgress(MonitorError):
    code = "DUPLICATE_IN_PROGRESS"

    def __init__(self, borrower_address: str):
        self.borrower_address = borrower_address
        super().__init__(f"Execution already in progress for {borrower_address}")


class ExecutionFailed(MonitorError):
    def __init__(self, record: ExecutionRecord):
        self.record = record
        super().__init__(record.failure_reason or "Execution failed")


class OpportunityNotFound(MonitorError, KeyError):
    def __init__(self, opportunity_id: str):
        self.opportunity_id = opportunity_id
        super().__init__(f"No current opportunity with id {opportunity_id}")

    def __str__(self) -> str:
        return self.args[0]
