"""Borrower snapshots from an HTTP indexer.

Expects ``GET {base_url}/borrowers`` to return::

    {"borrowers": [{"address": "0x...",
                    "collateralAssets": [{"symbol", "amount", "liquidationThreshold"}],
                    "debtAssets": [{"symbol", "amount", "borrowRate"}],
                    "lastUpdate": 1700000000000}]}
"""

import logging
from datetime import datetime, timezone
from typing import List

import aiohttp
from pydantic import BaseModel, Field

from liquidation_monitor.sources.base import (
    Borrower,
    CollateralPosition,
    DebtPosition,
    SnapshotSource,
)

logger = logging.getLogger(__name__)


class CollateralPayload(BaseModel):
    model_config = {"populate_by_name": True}

    symbol: str
    amount: float = Field(ge=0)
    liquidation_threshold: float = Field(alias="liquidationThreshold", gt=0, le=1)


class DebtPayload(BaseModel):
    model_config = {"populate_by_name": True}

    symbol: str
    amount: float = Field(ge=0)
    borrow_rate: float = Field(default=0.0, alias="borrowRate", ge=0)


class BorrowerPayload(BaseModel):
    model_config = {"populate_by_name": True}

    address: str = Field(min_length=1)
    collateral_assets: List[CollateralPayload] = Field(default_factory=list, alias="collateralAssets")
    debt_assets: List[DebtPayload] = Field(default_factory=list, alias="debtAssets")
    last_update: datetime | None = Field(default=None, alias="lastUpdate")

    def to_borrower(self, fetched_at: datetime) -> Borrower:
        return Borrower(
            address=self.address,
            collateral=[
                CollateralPosition(
                    symbol=c.symbol,
                    amount=c.amount,
                    liquidation_threshold=c.liquidation_threshold,
                )
                for c in self.collateral_assets
            ],
            debt=[
                DebtPosition(symbol=d.symbol, amount=d.amount, borrow_rate=d.borrow_rate)
                for d in self.debt_assets
            ],
            last_update=self.last_update or fetched_at,
        )


class SnapshotPayload(BaseModel):
    # Required: a body without the key must not read as "no borrowers"
    borrowers: List[BorrowerPayload]


class HttpSnapshotSource(SnapshotSource):
    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = 8.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return "http"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def get_borrowers(self) -> List[Borrower]:
        url = f"{self._base_url}/borrowers"
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with self._get_session().get(url, timeout=timeout) as response:
            response.raise_for_status()
            data = await response.json()

        # Validation errors propagate and abort the scan cycle
        payload = SnapshotPayload.model_validate(data)
        fetched_at = datetime.now(timezone.utc)
        borrowers = [b.to_borrower(fetched_at) for b in payload.borrowers]
        logger.debug(f"Fetched {len(borrowers)} borrowers from {url}")
        return borrowers
