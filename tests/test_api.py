"""Tests for the HTTP interface."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from liquidation_monitor.api.serializers import format_health_factor, serialize_borrower_health
from liquidation_monitor.api.server import create_app
from liquidation_monitor.config import Settings
from liquidation_monitor.core.engine import MonitoringEngine
from liquidation_monitor.core.health import HEALTH_FACTOR_INFINITY
from liquidation_monitor.core.scanner import LiquidationPolicy, evaluate_borrower
from liquidation_monitor.services.execution import ExecutionBackend, ExecutionResult
from liquidation_monitor.services.price import PriceFeedAggregator, PriceSource
from liquidation_monitor.sources.base import Borrower, CollateralPosition, DebtPosition
from liquidation_monitor.sources.static import StaticSnapshotSource


def create_engine(success: bool = True) -> MonitoringEngine:
    feed = PriceFeedAggregator(
        stream_url=None,
        poll_url="https://example.invalid",
        symbols=["ETH", "USDC", "USDT"],
        default_prices={"USDT": 1.0},
    )
    feed.apply_update({"ETH": 2700.0, "USDC": 1.0}, PriceSource.POLL)

    backend = AsyncMock(spec=ExecutionBackend)
    backend.name = "mock"
    backend.execute.return_value = ExecutionResult(
        success=success,
        reference="0xfeed" if success else None,
        error=None if success else "Liquidation failed - insufficient liquidity",
    )

    source = StaticSnapshotSource([
        Borrower(
            address="0xaaa",
            collateral=[CollateralPosition("ETH", 5.0, 0.85)],
            debt=[DebtPosition("USDC", 12000.0)],
        ),
        Borrower(address="0xempty", collateral=[CollateralPosition("ETH", 1.0, 0.85)]),
    ])
    return MonitoringEngine(settings=Settings(), price_feed=feed, snapshot_source=source, backend=backend)


@pytest_asyncio.fixture
async def engine():
    engine = create_engine()
    await engine.refresh()
    return engine


@pytest_asyncio.fixture
async def client(engine):
    async with TestClient(TestServer(create_app(engine))) as client:
        yield client


class TestSerializers:
    def test_infinite_health_factor(self):
        assert format_health_factor(HEALTH_FACTOR_INFINITY) == {"health_factor": None, "infinite": True}

    def test_finite_health_factor(self):
        assert format_health_factor(0.95) == {"health_factor": 0.95, "infinite": False}

    def test_indeterminate_borrower(self):
        borrower = Borrower(
            address="0x1234567890123456789012345678901234567890",
            collateral=[CollateralPosition("HYPE", 1.0, 0.75)],
            debt=[DebtPosition("USDC", 1.0)],
        )
        data = serialize_borrower_health(evaluate_borrower(borrower, {}, LiquidationPolicy()))
        assert data["status"] == "indeterminate"
        assert data["health_factor"] is None
        assert data["infinite"] is False
        assert data["short_address"] == "0x1234...7890"


class TestRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status == 200
        assert await response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status == 200
        assert "liquidation_monitor_scan_cycles_total" in await response.text()

    @pytest.mark.asyncio
    async def test_opportunities(self, client):
        response = await client.get("/opportunities")
        data = await response.json()

        assert response.status == 200
        assert len(data["opportunities"]) == 1
        opportunity = data["opportunities"][0]
        assert opportunity["opportunity_id"] == "0xaaa:ETH:USDC"
        assert opportunity["estimated_profit_usd"] == pytest.approx(300.0)
        assert data["last_updated"] is not None

    @pytest.mark.asyncio
    async def test_borrowers(self, client):
        response = await client.get("/borrowers")
        data = await response.json()

        by_address = {b["address"]: b for b in data["borrowers"]}
        assert by_address["0xaaa"]["status"] == "liquidatable"
        assert by_address["0xempty"]["infinite"] is True
        assert by_address["0xempty"]["health_factor"] is None
        assert by_address["0xempty"]["price_drop_to_liquidation_pct"] is None
        assert by_address["0xaaa"]["price_drop_to_liquidation_pct"] == 0.0

    @pytest.mark.asyncio
    async def test_status(self, client):
        response = await client.get("/status")
        data = await response.json()
        assert data["scanner"]["opportunities"] == 1
        assert data["feed"]["state"] == "stopped"

    @pytest.mark.asyncio
    async def test_prices(self, client):
        response = await client.get("/prices")
        data = await response.json()

        by_symbol = {p["symbol"]: p for p in data["prices"]}
        assert by_symbol["ETH"]["price"] == 2700.0
        assert by_symbol["ETH"]["live"] is True
        assert by_symbol["USDT"]["source"] == "fallback_default"
        assert by_symbol["USDT"]["live"] is False
        assert data["last_updated"] is not None

    @pytest.mark.asyncio
    async def test_execute(self, client):
        response = await client.post("/executions", json={"opportunity_id": "0xaaa:ETH:USDC"})
        data = await response.json()

        assert response.status == 200
        assert data["status"] == "succeeded"
        assert data["reference"] == "0xfeed"

        history = await (await client.get("/executions")).json()
        assert [r["record_id"] for r in history["executions"]] == [data["record_id"]]
        assert history["in_flight"] == []

    @pytest.mark.asyncio
    async def test_execute_unknown_id(self, client):
        response = await client.post("/executions", json={"opportunity_id": "0xnope:ETH:USDC"})
        assert response.status == 404
        assert (await response.json())["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_execute_bad_body(self, client):
        response = await client.post("/executions", data="not json")
        assert response.status == 400

        response = await client.post("/executions", json={"id": "x"})
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_execute_non_utf8_body(self, client):
        response = await client.post(
            "/executions",
            data=b"\xff\xfe{}",
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        assert response.status == 400
        assert (await response.json())["error"] == "BAD_REQUEST"

    @pytest.mark.asyncio
    async def test_execute_duplicate(self, engine, client):
        engine.executor._in_flight["0xaaa"] = MagicMock()

        response = await client.post("/executions", json={"opportunity_id": "0xaaa:ETH:USDC"})

        assert response.status == 409
        assert (await response.json())["error"] == "DUPLICATE_IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_failed_execution_is_200(self):
        engine = create_engine(success=False)
        await engine.refresh()

        async with TestClient(TestServer(create_app(engine))) as client:
            response = await client.post("/executions", json={"opportunity_id": "0xaaa:ETH:USDC"})
            data = await response.json()

        assert response.status == 200
        assert data["status"] == "failed"
        assert data["failure_reason"] == "Liquidation failed - insufficient liquidity"
