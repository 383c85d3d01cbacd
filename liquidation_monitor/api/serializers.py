import math
from datetime import datetime
from typing import Any, Dict

from liquidation_monitor.core.executor import ExecutionRecord
from liquidation_monitor.core.scanner import BorrowerHealth, LiquidationOpportunity
from liquidation_monitor.services.price import AssetPrice
from liquidation_monitor.sources.base import Borrower


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def format_health_factor(hf: float | None) -> Dict[str, Any]:
    # JSON has no infinity
    if hf is not None and math.isinf(hf):
        return {"health_factor": None, "infinite": True}
    return {"health_factor": hf, "infinite": False}


def short_address(address: str) -> str:
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def serialize_opportunity(opportunity: LiquidationOpportunity) -> Dict[str, Any]:
    return {
        "opportunity_id": opportunity.opportunity_id,
        "borrower_address": opportunity.borrower_address,
        "collateral_symbol": opportunity.collateral_symbol,
        "debt_symbol": opportunity.debt_symbol,
        **format_health_factor(opportunity.health_factor),
        "collateral_value_usd": opportunity.collateral_value_usd,
        "debt_value_usd": opportunity.debt_value_usd,
        "max_liquidation_value_usd": opportunity.max_liquidation_value_usd,
        "liquidation_bonus_rate": opportunity.liquidation_bonus_rate,
        "estimated_profit_usd": opportunity.estimated_profit_usd,
        "discovered_at": format_timestamp(opportunity.discovered_at),
    }


def serialize_borrower(borrower: Borrower) -> Dict[str, Any]:
    return {
        "address": borrower.address,
        "collateral": [
            {
                "symbol": c.symbol,
                "amount": c.amount,
                "liquidation_threshold": c.liquidation_threshold,
            }
            for c in borrower.collateral
        ],
        "debt": [
            {"symbol": d.symbol, "amount": d.amount, "borrow_rate": d.borrow_rate}
            for d in borrower.debt
        ],
        "last_update": format_timestamp(borrower.last_update),
    }


def serialize_borrower_health(health: BorrowerHealth) -> Dict[str, Any]:
    return {
        **serialize_borrower(health.borrower),
        "short_address": short_address(health.address),
        **format_health_factor(health.health_factor),
        "status": health.status.value,
        "total_collateral_usd": health.total_collateral_usd,
        "total_debt_usd": health.total_debt_usd,
        "price_drop_to_liquidation_pct": health.price_drop_to_liquidation_pct,
        "error": health.error,
    }


def serialize_price(symbol: str, entry: AssetPrice | None) -> Dict[str, Any]:
    if entry is None:
        return {"symbol": symbol, "price": None, "source": None, "live": False, "observed_at": None}
    return {
        "symbol": symbol,
        "price": entry.price,
        "source": entry.source.value,
        "live": entry.is_live,
        "observed_at": format_timestamp(entry.observed_at),
    }


def serialize_execution(record: ExecutionRecord) -> Dict[str, Any]:
    return {
        "record_id": record.record_id,
        "status": record.status.value,
        "borrower_address": record.borrower_address,
        "opportunity": serialize_opportunity(record.opportunity),
        "started_at": format_timestamp(record.started_at),
        "completed_at": format_timestamp(record.completed_at),
        "failure_reason": record.failure_reason,
        "reference": record.reference,
    }
