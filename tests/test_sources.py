"""Tests for borrower snapshot sources."""

import json
import random
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from liquidation_monitor.config import DEFAULT_PRICES
from liquidation_monitor.core.health import HealthStatus
from liquidation_monitor.core.scanner import LiquidationPolicy, evaluate_borrower
from liquidation_monitor.sources.base import Borrower
from liquidation_monitor.sources.demo import DEMO_ADDRESSES, SCENARIOS, DemoSnapshotSource
from liquidation_monitor.sources.http import HttpSnapshotSource, SnapshotPayload
from liquidation_monitor.sources.static import StaticSnapshotSource


def create_session(payload, status_error=None):
    response = MagicMock()
    response.json = AsyncMock(return_value=payload)
    response.raise_for_status = MagicMock(side_effect=status_error)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.get = MagicMock(return_value=context)
    return session


class TestStaticSnapshotSource:
    @pytest.mark.asyncio
    async def test_returns_copy(self):
        source = StaticSnapshotSource([Borrower(address="0xabc")])
        borrowers = await source.get_borrowers()
        borrowers.clear()
        assert len(await source.get_borrowers()) == 1

    @pytest.mark.asyncio
    async def test_set_borrowers(self):
        source = StaticSnapshotSource()
        source.set_borrowers([Borrower(address="0xabc"), Borrower(address="0xdef")])
        assert [b.address for b in await source.get_borrowers()] == ["0xabc", "0xdef"]

    @pytest.mark.asyncio
    async def test_from_file(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps({
            "borrowers": [{
                "address": "0xabc",
                "collateralAssets": [{"symbol": "ETH", "amount": 5, "liquidationThreshold": 0.85}],
                "debtAssets": [{"symbol": "USDC", "amount": 12000}],
            }]
        }))

        borrowers = await StaticSnapshotSource.from_file(path).get_borrowers()

        assert [b.address for b in borrowers] == ["0xabc"]
        assert borrowers[0].debt[0].amount == 12000.0

    def test_from_file_rejects_invalid_snapshot(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text("{}")
        with pytest.raises(ValidationError):
            StaticSnapshotSource.from_file(path)


class TestDemoSnapshotSource:
    @pytest.mark.asyncio
    async def test_one_borrower_per_scenario(self):
        source = DemoSnapshotSource(rng=random.Random(1))
        borrowers = await source.get_borrowers()

        assert len(borrowers) == len(SCENARIOS)
        assert [b.address for b in borrowers] == DEMO_ADDRESSES

    @pytest.mark.asyncio
    async def test_seeded_generation_is_deterministic(self):
        first = await DemoSnapshotSource(rng=random.Random(42)).get_borrowers()
        second = await DemoSnapshotSource(rng=random.Random(42)).get_borrowers()

        assert [b.collateral for b in first] == [b.collateral for b in second]
        assert [b.debt for b in first] == [b.debt for b in second]

    @pytest.mark.asyncio
    async def test_debt_amounts_are_fixed(self):
        borrowers = await DemoSnapshotSource(rng=random.Random(3)).get_borrowers()

        for borrower, (_, debt_spec) in zip(borrowers, SCENARIOS):
            assert [(d.symbol, d.amount) for d in borrower.debt] == [(s, a) for s, a, _ in debt_spec]

    @pytest.mark.asyncio
    async def test_collateral_price_drop_lowers_health_factor(self):
        source = DemoSnapshotSource(rng=random.Random(3), variance=(1.0, 1.0))
        healthy_eth = (await source.get_borrowers())[4]
        crashed = {**DEFAULT_PRICES, "ETH": DEFAULT_PRICES["ETH"] * 0.6}

        before = evaluate_borrower(healthy_eth, DEFAULT_PRICES, LiquidationPolicy())
        after = evaluate_borrower(healthy_eth, crashed, LiquidationPolicy())

        # 15 ETH at 0.85 against 25000 USDC
        assert before.health_factor == pytest.approx(1.53)
        assert before.status == HealthStatus.HEALTHY
        assert after.health_factor == pytest.approx(before.health_factor * 0.6)
        assert after.status == HealthStatus.LIQUIDATABLE

    @pytest.mark.asyncio
    async def test_produces_a_mix_of_statuses(self):
        source = DemoSnapshotSource(rng=random.Random(11), variance=(1.0, 1.0))
        borrowers = await source.get_borrowers()

        statuses = {
            evaluate_borrower(b, DEFAULT_PRICES, LiquidationPolicy()).status
            for b in borrowers
        }
        assert HealthStatus.LIQUIDATABLE in statuses
        assert HealthStatus.HEALTHY in statuses


class TestHttpSnapshotSource:
    PAYLOAD = {
        "borrowers": [
            {
                "address": "0xabc",
                "collateralAssets": [{"symbol": "ETH", "amount": 5, "liquidationThreshold": 0.85}],
                "debtAssets": [{"symbol": "USDC", "amount": "12000", "borrowRate": 0.035}],
                "lastUpdate": "2024-01-01T00:00:00Z",
            },
            {"address": "0xdef"},
        ]
    }

    @pytest.mark.asyncio
    async def test_parses_borrowers(self):
        session = create_session(self.PAYLOAD)
        source = HttpSnapshotSource("http://indexer.local/", session=session)

        borrowers = await source.get_borrowers()

        assert session.get.call_args[0][0] == "http://indexer.local/borrowers"
        assert [b.address for b in borrowers] == ["0xabc", "0xdef"]
        first = borrowers[0]
        assert first.collateral[0].liquidation_threshold == 0.85
        assert first.debt[0].amount == 12000.0
        assert first.last_update == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert borrowers[1].collateral == ()

    @pytest.mark.asyncio
    async def test_invalid_payload_raises(self):
        payload = {
            "borrowers": [
                {
                    "address": "0xabc",
                    "collateralAssets": [{"symbol": "ETH", "amount": 5, "liquidationThreshold": 1.5}],
                }
            ]
        }
        source = HttpSnapshotSource("http://indexer.local", session=create_session(payload))
        with pytest.raises(ValidationError):
            await source.get_borrowers()

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        source = HttpSnapshotSource(
            "http://indexer.local",
            session=create_session({}, status_error=ConnectionError("503")),
        )
        with pytest.raises(ConnectionError):
            await source.get_borrowers()

    def test_borrowers_key_required(self):
        with pytest.raises(ValidationError):
            SnapshotPayload.model_validate({})
        assert SnapshotPayload.model_validate({"borrowers": []}).borrowers == []

    @pytest.mark.asyncio
    async def test_empty_body_aborts_instead_of_clearing(self):
        source = HttpSnapshotSource("http://indexer.local", session=create_session({}))
        with pytest.raises(ValidationError):
            await source.get_borrowers()

    @pytest.mark.asyncio
    async def test_owned_session_reused_until_close(self):
        session = create_session(self.PAYLOAD)

        with patch("liquidation_monitor.sources.http.aiohttp.ClientSession", return_value=session) as factory:
            source = HttpSnapshotSource("http://indexer.local")
            await source.get_borrowers()
            await source.get_borrowers()
            await source.close()

        assert factory.call_count == 1
        assert session.get.call_count == 2
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_injected_session_left_open(self):
        session = create_session(self.PAYLOAD)
        source = HttpSnapshotSource("http://indexer.local", session=session)

        await source.get_borrowers()
        await source.close()

        session.close.assert_not_awaited()
