"""Demo borrower generator.

Stands in for an on-chain indexer. Eight scenario templates carry fixed debt
amounts and a per-borrower variance on collateral amounts. Positions are
valued by the scanner at live prices, so a falling collateral price drives a
scenario towards liquidation.
"""

import logging
import random
from datetime import datetime, timezone
from typing import List, Tuple

from liquidation_monitor.sources.base import (
    Borrower,
    CollateralPosition,
    DebtPosition,
    SnapshotSource,
)

logger = logging.getLogger(__name__)

DEMO_ADDRESSES = [
    "0x742d35Cc6343C4532642C5E69D5C7FB8c6B21b11",
    "0x8ba1f109551bD432803012645Hac136c76f1BC45",
    "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984",
    "0xA0b86a33E6441D88c1b6f1e0f64C2C738ff6c1b7",
    "0x95aD61b0a150d79219dCF64E1E6Cc01f0B64C4cE",
    "0x6B175474E89094C44Da98b954EedeAC495271d0F",
    "0x514910771AF9Ca656af840dff83E8264EcF986CA",
]

# (collateral: (symbol, amount, threshold), debt: (symbol, amount, borrow rate))
Scenario = Tuple[Tuple[Tuple[str, float, float], ...], Tuple[Tuple[str, float, float], ...]]

SCENARIOS: List[Scenario] = [
    # High-risk ETH borrower
    ((("ETH", 8.5, 0.85),), (("USDC", 22000.0, 0.035),)),
    # Critical BTC borrower
    ((("BTC", 1.2, 0.85),), (("USDe", 65000.0, 0.075),)),
    # Very high-risk HYPE borrower
    ((("HYPE", 35000.0, 0.75),), (("USDC", 70000.0, 0.035),)),
    # Multi-asset borrower
    ((("ETH", 4.0, 0.85), ("BTC", 0.5, 0.85)), (("USDC", 35000.0, 0.035),)),
    # Healthy ETH borrower
    ((("ETH", 15.0, 0.85),), (("USDC", 25000.0, 0.035),)),
    # Large HYPE position
    ((("HYPE", 80000.0, 0.75),), (("USDe", 140000.0, 0.075),)),
    # Mixed collateral borrower
    ((("BTC", 0.8, 0.85), ("HYPE", 12000.0, 0.75)), (("USDC", 45000.0, 0.035),)),
    # Small ETH borrower near liquidation
    ((("ETH", 3.2, 0.85),), (("USDC", 9500.0, 0.035),)),
]


class DemoSnapshotSource(SnapshotSource):
    def __init__(
        self,
        rng: random.Random | None = None,
        variance: Tuple[float, float] = (0.8, 1.2),
    ):
        self._rng = rng or random.Random()
        self._variance = variance

    @property
    def name(self) -> str:
        return "demo"

    def _build_borrower(self, address: str, scenario: Scenario, now: datetime) -> Borrower:
        collateral_spec, debt_spec = scenario
        variance = self._rng.uniform(*self._variance)

        return Borrower(
            address=address,
            collateral=[
                CollateralPosition(symbol=symbol, amount=amount * variance, liquidation_threshold=threshold)
                for symbol, amount, threshold in collateral_spec
            ],
            debt=[
                DebtPosition(symbol=symbol, amount=amount, borrow_rate=rate)
                for symbol, amount, rate in debt_spec
            ],
            last_update=now,
        )

    async def get_borrowers(self) -> List[Borrower]:
        now = datetime.now(timezone.utc)
        borrowers = [
            self._build_borrower(address, scenario, now)
            for address, scenario in zip(DEMO_ADDRESSES, SCENARIOS)
        ]
        logger.debug(f"Generated {len(borrowers)} demo borrowers")
        return borrowers
