"""Execution backend interface.

The monitor only decides what to liquidate. Signing, gas and contract calls
belong to an execution backend behind this interface.
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from liquidation_monitor.core.scanner import LiquidationOpportunity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    reference: str | None = None  # Opaque audit reference, e.g. a transaction hash
    error: str | None = None


class ExecutionBackend(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def execute(self, opportunity: LiquidationOpportunity) -> ExecutionResult:
        """Carry out a liquidation.

        Backends report rejections through ``ExecutionResult.error``; raising
        is treated the same way by the caller.
        """
        pass


class SimulatedExecutionBackend(ExecutionBackend):
    """
    Stand-in backend for demos and tests.

    Waits a fixed latency and succeeds with a configurable probability,
    otherwise fails with an insufficient liquidity error.
    """

    def __init__(
        self,
        success_rate: float = 0.8,
        latency_seconds: float = 2.0,
        rng: random.Random | None = None,
    ):
        self._success_rate = success_rate
        self._latency = latency_seconds
        self._rng = rng or random.Random()

    @property
    def name(self) -> str:
        return "simulated"

    async def execute(self, opportunity: LiquidationOpportunity) -> ExecutionResult:
        logger.info(
            f"Simulating liquidation of {opportunity.borrower_address}: "
            f"repay {opportunity.debt_symbol} for {opportunity.collateral_symbol}, "
            f"max ${opportunity.max_liquidation_value_usd:,.2f}"
        )
        await asyncio.sleep(self._latency)

        if self._rng.random() < self._success_rate:
            return ExecutionResult(success=True, reference=f"0x{uuid.uuid4().hex}")
        return ExecutionResult(success=False, error="Liquidation failed - insufficient liquidity")
