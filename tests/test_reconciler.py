"""
Unit tests for the Position Reconciler

Tests:
- Risk derivation (clamp, inverse risk, fixed-point collateral value)
- Read fallbacks and provenance
- Retried oracle reads
"""

from decimal import Decimal

import pytest

from ledger_mirror.types import PositionStatus, Provenance, TransientLedgerError
from ledger_mirror.config import RiskConfig
from ledger_mirror.reconciler import (
    PositionReconciler, normalize_health_factor, liquidation_risk_percent,
    collateral_value, derive_status
)

from conftest import TOKEN, ALICE, ETHER, MAX_UINT256


def create_reconciler(ledger, mirror_config):
    return PositionReconciler(ledger, mirror_config.risk, mirror_config.retry)


# ============================================================================
# Risk Derivation
# ============================================================================

def test_health_factor_scaled_and_clamped():
    ceiling = Decimal("1000")

    assert normalize_health_factor(16000, 4, ceiling) == Decimal("1.6")
    assert normalize_health_factor(MAX_UINT256, 4, ceiling) == ceiling
    assert normalize_health_factor(0, 4, ceiling) == Decimal(0)


def test_risk_is_inverse_of_health_factor():
    ceiling, floor = Decimal("1000"), Decimal("1.0")

    assert liquidation_risk_percent(Decimal("2"), ceiling, floor) == Decimal("50")
    assert liquidation_risk_percent(Decimal("1.6"), ceiling, floor) == Decimal("62.5")
    assert liquidation_risk_percent(ceiling, ceiling, floor) == Decimal(0)
    assert liquidation_risk_percent(Decimal("1.0"), ceiling, floor) == Decimal(100)
    assert liquidation_risk_percent(Decimal("0.5"), ceiling, floor) == Decimal(100)


def test_collateral_value_is_exact():
    price = 2000 * ETHER + 1

    assert collateral_value(3 * ETHER, price, 18) == 6000 * ETHER + 3
    assert collateral_value(0, price, 18) == 0


def test_status_closed_only_when_empty():
    assert derive_status(0, 0) == PositionStatus.CLOSED
    assert derive_status(1, 0) == PositionStatus.ACTIVE
    assert derive_status(0, 1) == PositionStatus.ACTIVE


def test_ceiling_must_exceed_one():
    with pytest.raises(ValueError):
        RiskConfig(health_factor_ceiling=Decimal("1"))


# ============================================================================
# Reconcile
# ============================================================================

@pytest.mark.asyncio
async def test_reconcile_reads_ledger_state(ledger, mirror_config):
    ledger.deposit(ALICE, ETHER)
    ledger.borrow(ALICE, ETHER // 2)
    ledger.prices[TOKEN] = 2 * ETHER

    position = await create_reconciler(ledger, mirror_config).reconcile(ALICE, TOKEN, block_number=2)

    assert position.deposit_amount == ETHER
    assert position.borrow_amount == ETHER // 2
    assert position.health_factor == Decimal("1.6")
    assert position.liquidation_risk == Decimal("62.5")
    assert position.collateral_value == 2 * ETHER
    assert position.status == PositionStatus.ACTIVE
    assert position.block_number == 2
    assert not position.is_degraded


@pytest.mark.asyncio
async def test_no_debt_clamps_to_ceiling(ledger, mirror_config):
    ledger.deposit(ALICE, ETHER)

    position = await create_reconciler(ledger, mirror_config).reconcile(ALICE, TOKEN)

    assert position.health_factor == Decimal("1000")
    assert position.liquidation_risk == Decimal(0)


@pytest.mark.asyncio
async def test_position_read_failure_propagates(ledger, mirror_config):
    ledger.fail("read_position", times=3)

    with pytest.raises(TransientLedgerError):
        await create_reconciler(ledger, mirror_config).reconcile(ALICE, TOKEN)


@pytest.mark.asyncio
async def test_oracle_read_retried_before_fallback(ledger, mirror_config):
    ledger.deposit(ALICE, ETHER)
    ledger.prices[TOKEN] = 3 * ETHER
    ledger.fail("read_price", times=2)

    position = await create_reconciler(ledger, mirror_config).reconcile(ALICE, TOKEN)

    assert ledger.calls["read_price"] == 3
    assert position.price == 3 * ETHER
    assert position.price_source == Provenance.ORACLE


@pytest.mark.asyncio
async def test_price_falls_back_after_retries(ledger, mirror_config):
    ledger.deposit(ALICE, 2 * ETHER)
    ledger.prices[TOKEN] = 3 * ETHER
    ledger.fail("read_price", times=3)

    position = await create_reconciler(ledger, mirror_config).reconcile(ALICE, TOKEN)

    assert position.price == mirror_config.risk.fallback_price
    assert position.price_source == Provenance.FALLBACK
    assert position.collateral_value == 2 * ETHER
    assert position.is_degraded


@pytest.mark.asyncio
async def test_health_factor_falls_back_to_floor(ledger, mirror_config):
    ledger.deposit(ALICE, ETHER)
    ledger.fail("read_health_factor", times=3)

    position = await create_reconciler(ledger, mirror_config).reconcile(ALICE, TOKEN)

    assert position.health_factor == Decimal("1.0")
    assert position.health_factor_source == Provenance.DEFAULT
    assert position.liquidation_risk == Decimal(100)


@pytest.mark.asyncio
async def test_fallbacks_prefer_previous_values(ledger, mirror_config):
    reconciler = create_reconciler(ledger, mirror_config)
    ledger.interest_rate_bps = 500
    ledger.deposit(ALICE, ETHER)
    ledger.borrow(ALICE, ETHER // 2)
    previous = await reconciler.reconcile(ALICE, TOKEN)

    ledger.fail("read_health_factor", times=3)
    ledger.fail("read_token_config", times=3)
    position = await reconciler.reconcile(ALICE, TOKEN, previous=previous)

    assert position.health_factor == previous.health_factor
    assert position.health_factor_source == Provenance.PREVIOUS
    assert position.interest_rate_bps == 500
    assert position.config_source == Provenance.PREVIOUS
    # Risk is derived from the same value as the stored health factor
    assert position.liquidation_risk == previous.liquidation_risk


@pytest.mark.asyncio
async def test_market_snapshot_utilization(ledger, mirror_config):
    ledger.deposit(ALICE, 4 * ETHER)
    ledger.borrow(ALICE, ETHER)

    snapshot = await create_reconciler(ledger, mirror_config).reconcile_market(TOKEN)

    assert snapshot.total_liquidity == 4 * ETHER
    assert snapshot.total_borrowed == ETHER
    assert snapshot.utilization_bps == 2500


@pytest.mark.asyncio
async def test_market_snapshot_unavailable(ledger, mirror_config):
    ledger.fail("read_market_totals", times=3)

    assert await create_reconciler(ledger, mirror_config).reconcile_market(TOKEN) is None


@pytest.mark.asyncio
async def test_unsupported_token_carried_to_position(ledger, mirror_config):
    ledger.deposit(ALICE, ETHER)
    ledger.unsupported_tokens.add(TOKEN.lower())
    reconciler = create_reconciler(ledger, mirror_config)

    position = await reconciler.reconcile(ALICE, TOKEN)
    assert not position.token_supported

    ledger.fail("read_token_config", times=mirror_config.retry.attempts)
    fallback = await reconciler.reconcile(ALICE, TOKEN, previous=position)
    assert fallback.config_source == Provenance.PREVIOUS
    assert not fallback.token_supported
