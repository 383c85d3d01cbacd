"""Opportunity executor adapter.

Hands a selected opportunity to the execution backend and records the outcome
in an append-only history. At most one execution per borrower address may be
in flight; a second request is rejected immediately. Failed executions are
never retried automatically.
"""

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterator, List

from liquidation_monitor.core.errors import DuplicateExecutionInProgress, ExecutionFailed
from liquidation_monitor.core.scanner import LiquidationOpportunity
from liquidation_monitor.services import metrics
from liquidation_monitor.services.execution import ExecutionBackend

logger = logging.getLogger(__name__)


class ExecutionStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRecord:
    record_id: str
    opportunity: LiquidationOpportunity  # Snapshot taken when execution started
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None = None
    failure_reason: str | None = None
    reference: str | None = None

    @property
    def borrower_address(self) -> str:
        return self.opportunity.borrower_address

    def raise_for_status(self) -> "ExecutionRecord":
        """Raise ExecutionFailed for a FAILED record, otherwise return it."""
        if self.status is ExecutionStatus.FAILED:
            raise ExecutionFailed(self)
        return self


class ExecutionHistory:
    """Append-only log of completed executions."""

    def __init__(self):
        self._records: List[ExecutionRecord] = []

    def append(self, record: ExecutionRecord) -> None:
        if record.status is ExecutionStatus.PENDING:
            raise ValueError("Only completed executions are recorded in history")
        self._records.append(record)

    def records(self) -> List[ExecutionRecord]:
        """All records, newest first."""
        return list(reversed(self._records))

    def find(self, record_id: str) -> ExecutionRecord | None:
        for record in self._records:
            if record.record_id == record_id:
                return record
        return None

    def get_stats(self) -> Dict[str, float]:
        succeeded = [r for r in self._records if r.status is ExecutionStatus.SUCCEEDED]
        return {
            "total": len(self._records),
            "succeeded": len(succeeded),
            "failed": len(self._records) - len(succeeded),
            "estimated_profit_usd": sum(r.opportunity.estimated_profit_usd for r in succeeded),
        }

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ExecutionRecord]:
        return iter(self.records())


# Returns a failure reason when the opportunity should no longer be executed
Revalidator = Callable[[LiquidationOpportunity], Awaitable[str | None]]


class OpportunityExecutor:
    def __init__(
        self,
        backend: ExecutionBackend,
        history: ExecutionHistory | None = None,
        timeout_seconds: float = 30.0,
        revalidate: Revalidator | None = None,
    ):
        self._backend = backend
        self._history = history if history is not None else ExecutionHistory()
        self._timeout = timeout_seconds
        self._revalidate = revalidate
        self._in_flight: Dict[str, ExecutionRecord] = {}

    @property
    def history(self) -> ExecutionHistory:
        return self._history

    def is_in_flight(self, borrower_address: str) -> bool:
        return borrower_address in self._in_flight

    def in_flight(self) -> List[ExecutionRecord]:
        """PENDING records for executions that have not completed yet."""
        return list(self._in_flight.values())

    async def execute(self, opportunity: LiquidationOpportunity) -> ExecutionRecord:
        """
        Execute an opportunity and return the completed record.

        The opportunity is not re-validated against current market state
        unless a ``revalidate`` hook was supplied.

        Raises:
            DuplicateExecutionInProgress: an execution for the same borrower
                is still pending
        """
        address = opportunity.borrower_address
        # Check-and-claim happens before the first await
        if address in self._in_flight:
            logger.info(f"Rejecting duplicate execution for {address}")
            metrics.record_duplicate_execution()
            raise DuplicateExecutionInProgress(address)

        snapshot = dataclasses.replace(opportunity)
        pending = ExecutionRecord(
            record_id=uuid.uuid4().hex,
            opportunity=snapshot,
            status=ExecutionStatus.PENDING,
            started_at=datetime.now(timezone.utc),
        )
        self._in_flight[address] = pending
        start = time.monotonic()

        try:
            failure_reason, reference = await self._run(snapshot)
        except asyncio.CancelledError:
            self._complete(pending, "Execution cancelled, outcome unknown", None, start)
            raise
        finally:
            self._in_flight.pop(address, None)

        return self._complete(pending, failure_reason, reference, start)

    async def _run(self, opportunity: LiquidationOpportunity) -> tuple[str | None, str | None]:
        """Returns (failure_reason, reference)."""
        try:
            if self._revalidate is not None:
                reason = await self._revalidate(opportunity)
                if reason:
                    return f"Opportunity no longer valid: {reason}", None

            result = await asyncio.wait_for(
                self._backend.execute(opportunity),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return f"Execution timed out after {self._timeout}s", None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return f"{type(e).__name__}: {e}", None

        if not result.success:
            return result.error or "Execution backend reported failure", result.reference
        return None, result.reference

    def _complete(
        self,
        pending: ExecutionRecord,
        failure_reason: str | None,
        reference: str | None,
        start: float,
    ) -> ExecutionRecord:
        status = ExecutionStatus.FAILED if failure_reason else ExecutionStatus.SUCCEEDED
        record = dataclasses.replace(
            pending,
            status=status,
            completed_at=datetime.now(timezone.utc),
            failure_reason=failure_reason,
            reference=reference,
        )
        self._history.append(record)
        metrics.record_execution(status.value, time.monotonic() - start)

        opportunity = record.opportunity
        if status is ExecutionStatus.SUCCEEDED:
            logger.info(
                f"Liquidation of {opportunity.borrower_address} succeeded via {self._backend.name} "
                f"(ref: {reference}, est. profit ${opportunity.estimated_profit_usd:,.2f})"
            )
        else:
            logger.warning(
                f"Liquidation of {opportunity.borrower_address} failed: {failure_reason}"
            )
        return record
