"""
Position Reconciler

Re-reads authoritative position state from the ledger and derives the risk
fields stored with it. Event payloads are never trusted for amounts; they
may lag or only report deltas.

Reads run in order: position, health factor, token config, price. Every
read except the position has a fallback, and every fallback is recorded
with its provenance.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from .types import (
    ReconciledPosition, MarketSnapshot, PositionStatus, Provenance,
    TransientLedgerError
)
from .config import RiskConfig, RetryConfig
from .ledger import Ledger, call_with_retry
from .metrics_server import MetricsServer
from .logging_config import get_logger, log_fallback

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)


# ============================================================================
# Risk Derivation
# ============================================================================

def normalize_health_factor(raw: int, decimals: int, ceiling: Decimal) -> Decimal:
    """Scale a fixed-point health factor; values above the ceiling clamp to it"""
    value = Decimal(raw) / (Decimal(10) ** decimals)
    return ceiling if value > ceiling else value


def liquidation_risk_percent(health_factor: Decimal, ceiling: Decimal, floor: Decimal) -> Decimal:
    """
    Inverse of the health factor as a percentage.

    0 at or above the ceiling, 100 at or below the floor, 100 / hf between.
    """
    if health_factor >= ceiling:
        return Decimal(0)
    if health_factor <= floor:
        return HUNDRED
    return min(HUNDRED, HUNDRED / health_factor)


def collateral_value(deposit_amount: int, price: int, price_decimals: int) -> int:
    """deposit * price in fixed-point; no float rounding"""
    return deposit_amount * price // (10 ** price_decimals)


def derive_status(deposit_amount: int, borrow_amount: int) -> PositionStatus:
    if deposit_amount == 0 and borrow_amount == 0:
        return PositionStatus.CLOSED
    return PositionStatus.ACTIVE


# ============================================================================
# Reconciler
# ============================================================================

class PositionReconciler:
    """Builds a ReconciledPosition from live ledger reads"""

    def __init__(self, ledger: Ledger, risk: RiskConfig, retry: RetryConfig):
        self.ledger = ledger
        self.risk = risk
        self.retry = retry
        self.audit = get_logger("reconciler")

    async def _read(self, label: str, fn):
        return await call_with_retry(
            fn,
            attempts=self.retry.attempts,
            base_backoff=self.retry.base_backoff_seconds,
            max_backoff=self.retry.max_backoff_seconds,
            label=label
        )

    async def reconcile(
        self,
        user: str,
        market: str,
        previous: Optional[ReconciledPosition] = None,
        block_number: Optional[int] = None
    ) -> ReconciledPosition:
        """
        Reconcile one (user, market) pair.

        Raises:
            TransientLedgerError: the position itself could not be read
        """
        user = user.lower()
        market = market.lower()

        position = await self._read(
            f"read_position({user}, {market})",
            lambda: self.ledger.read_position(user, market)
        )

        health_factor, hf_source = await self._health_factor(user, market, previous)
        interest_rate_bps, token_supported, config_source = await self._interest_rate(user, market, previous)
        price, price_source = await self._price(user, market)

        # Health factor and risk always come from the same read
        risk = liquidation_risk_percent(
            health_factor, self.risk.health_factor_ceiling, self.risk.health_factor_floor
        )

        return ReconciledPosition(
            user=user,
            market=market,
            deposit_amount=position.deposit_amount,
            borrow_amount=position.borrow_amount,
            health_factor=health_factor,
            liquidation_risk=risk,
            collateral_value=collateral_value(position.deposit_amount, price, self.risk.price_decimals),
            price=price,
            interest_rate_bps=interest_rate_bps,
            token_supported=token_supported,
            status=derive_status(position.deposit_amount, position.borrow_amount),
            last_update=datetime.utcnow(),
            block_number=block_number,
            health_factor_source=hf_source,
            price_source=price_source,
            config_source=config_source
        )

    async def _health_factor(
        self,
        user: str,
        market: str,
        previous: Optional[ReconciledPosition]
    ) -> Tuple[Decimal, Provenance]:
        try:
            raw = await self._read(
                f"read_health_factor({user})",
                lambda: self.ledger.read_health_factor(user)
            )
            return normalize_health_factor(
                raw, self.risk.health_factor_decimals, self.risk.health_factor_ceiling
            ), Provenance.LEDGER
        except TransientLedgerError as e:
            if previous is not None:
                value, source = previous.health_factor, Provenance.PREVIOUS
            else:
                # Never fabricate a healthy value for a risk-relevant field
                value, source = self.risk.health_factor_floor, Provenance.DEFAULT
            log_fallback(self.audit, "health_factor", user, market, source.value, str(e))
            MetricsServer.record_fallback("health_factor")
            return value, source

    async def _interest_rate(
        self,
        user: str,
        market: str,
        previous: Optional[ReconciledPosition]
    ) -> Tuple[int, bool, Provenance]:
        try:
            config = await self._read(
                f"read_token_config({market})",
                lambda: self.ledger.read_token_config(market)
            )
            if not config.is_supported:
                logger.warning(f"Token {market} is not supported by the ledger")
            return config.interest_rate_bps, config.is_supported, Provenance.LEDGER
        except TransientLedgerError as e:
            if previous is not None:
                value, supported, source = previous.interest_rate_bps, previous.token_supported, Provenance.PREVIOUS
            else:
                value, supported, source = 0, True, Provenance.DEFAULT
            log_fallback(self.audit, "interest_rate", user, market, source.value, str(e))
            MetricsServer.record_fallback("interest_rate")
            return value, supported, source

    async def _price(self, user: str, market: str) -> Tuple[int, Provenance]:
        try:
            price = await self._read(
                f"read_price({market})",
                lambda: self.ledger.read_price(market)
            )
            return price, Provenance.ORACLE
        except TransientLedgerError as e:
            log_fallback(self.audit, "price", user, market, Provenance.FALLBACK.value, str(e))
            MetricsServer.record_fallback("price")
            return self.risk.fallback_price, Provenance.FALLBACK

    async def reconcile_market(self, market: str) -> Optional[MarketSnapshot]:
        """Market totals and utilization; None when the ledger read fails"""
        market = market.lower()
        try:
            totals = await self._read(
                f"read_market_totals({market})",
                lambda: self.ledger.read_market_totals(market)
            )
        except TransientLedgerError as e:
            logger.warning(f"Market totals unavailable for {market}: {e}")
            return None

        utilization = (
            totals.total_borrows * 10000 // totals.total_deposits
            if totals.total_deposits > 0 else 0
        )
        return MarketSnapshot(
            market=market,
            total_liquidity=totals.total_deposits,
            total_borrowed=totals.total_borrows,
            utilization_bps=utilization
        )
