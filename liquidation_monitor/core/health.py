"""Health factor math.

Everything here is pure: no I/O and no shared state. Prices are passed in as
a plain ``symbol -> price`` mapping taken from a single price snapshot.
"""

from enum import Enum
from typing import Mapping, Sequence

from liquidation_monitor.core.errors import MissingPriceError
from liquidation_monitor.sources.base import CollateralPosition, DebtPosition

# Sentinel for "no debt, never liquidatable"
HEALTH_FACTOR_INFINITY = float("inf")


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    LIQUIDATABLE = "liquidatable"
    INDETERMINATE = "indeterminate"


def _price_for(symbol: str, prices: Mapping[str, float]) -> float:
    price = prices.get(symbol)
    if price is None:
        raise MissingPriceError(symbol)
    return price


def collateral_value_usd(
    collateral: Sequence[CollateralPosition],
    prices: Mapping[str, float],
) -> float:
    """Face value of all collateral."""
    return sum(
        p.amount * _price_for(p.symbol, prices)
        for p in collateral
        if p.amount > 0
    )


def risk_adjusted_collateral_usd(
    collateral: Sequence[CollateralPosition],
    prices: Mapping[str, float],
) -> float:
    """Collateral value discounted by each asset's liquidation threshold."""
    return sum(
        p.amount * _price_for(p.symbol, prices) * p.liquidation_threshold
        for p in collateral
        if p.amount > 0
    )


def debt_value_usd(
    debt: Sequence[DebtPosition],
    prices: Mapping[str, float],
) -> float:
    return sum(
        p.amount * _price_for(p.symbol, prices)
        for p in debt
        if p.amount > 0
    )


def calculate_health_factor(
    collateral: Sequence[CollateralPosition],
    debt: Sequence[DebtPosition],
    prices: Mapping[str, float],
) -> float:
    """
    Calculate the health factor of a set of positions.

    HF = sum(amount * price * liquidation_threshold) over collateral
         / sum(amount * price) over debt

    Zero-amount positions contribute nothing and need no price. Returns
    HEALTH_FACTOR_INFINITY when the total debt value is zero.

    Raises:
        MissingPriceError: a non-zero position references a symbol with no price
    """
    total_debt = debt_value_usd(debt, prices)
    if total_debt == 0:
        return HEALTH_FACTOR_INFINITY

    return risk_adjusted_collateral_usd(collateral, prices) / total_debt


def classify_health(
    health_factor: float | None,
    warning_threshold: float = 1.3,
    critical_threshold: float = 1.1,
    liquidation_threshold: float = 1.0,
) -> HealthStatus:
    """Map a health factor to a status. ``None`` means it could not be computed."""
    if health_factor is None:
        return HealthStatus.INDETERMINATE
    if health_factor < liquidation_threshold:
        return HealthStatus.LIQUIDATABLE
    if health_factor < critical_threshold:
        return HealthStatus.CRITICAL
    if health_factor < warning_threshold:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def price_drop_to_liquidation(
    health_factor: float | None,
    liquidation_health_factor: float = 1.0,
) -> float | None:
    """
    Uniform collateral price drop, in percent, that brings a borrower to the
    liquidation line with debt prices held constant.

    None when the health factor is unknown or infinite; 0.0 when the borrower
    is already at or below the line.
    """
    if health_factor is None or health_factor == HEALTH_FACTOR_INFINITY:
        return None
    if health_factor <= liquidation_health_factor:
        return 0.0
    # HF scales linearly with collateral prices
    return (1 - liquidation_health_factor / health_factor) * 100
