"""Borrower snapshot source interface and position data models.

This module defines the abstract interface for borrower snapshot sources
(demo generator, HTTP indexer, static fixtures) and the data models for
borrower positions with collateral and debt. USD values are never stored
on the positions; they are derived from a price snapshot when needed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Tuple


@dataclass(frozen=True)
class CollateralPosition:
    """Asset supplied as collateral."""
    symbol: str
    amount: float                 # Raw token amount (e.g., 5.0 ETH)
    liquidation_threshold: float  # Discount applied for solvency (0.85 = 85%)

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Collateral amount for {self.symbol} must not be negative")
        if not 0 < self.liquidation_threshold <= 1:
            raise ValueError(
                f"Liquidation threshold for {self.symbol} must be in (0, 1], "
                f"got {self.liquidation_threshold}"
            )


@dataclass(frozen=True)
class DebtPosition:
    """Asset borrowed as debt."""
    symbol: str
    amount: float
    borrow_rate: float = 0.0      # Annual borrow rate (0.035 = 3.5%)

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Debt amount for {self.symbol} must not be negative")
        if self.borrow_rate < 0:
            raise ValueError(f"Borrow rate for {self.symbol} must not be negative")


@dataclass(frozen=True)
class Borrower:
    """Borrower account with ordered collateral and debt positions."""
    address: str
    collateral: Tuple[CollateralPosition, ...] = ()
    debt: Tuple[DebtPosition, ...] = ()
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        # Accept lists from callers but keep the stored value immutable
        object.__setattr__(self, "collateral", tuple(self.collateral))
        object.__setattr__(self, "debt", tuple(self.debt))


class SnapshotSource(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name (e.g., 'demo')."""
        pass

    @abstractmethod
    async def get_borrowers(self) -> List[Borrower]:
        """Return a full, internally consistent list of current borrowers.

        Implementations raise on failure; the scanner turns any error into
        an aborted cycle.
        """
        pass

    async def close(self):
        """Release any resources held by the source."""
        pass
