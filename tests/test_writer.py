"""
Unit tests for the Transactional Writer

Tests:
- Atomic unit of work (users, market, activities, positions, event row)
- Idempotency on transaction hash
- Rejected liquidations
- Rollback on store failure
- Position cache
"""

import json
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from ledger_mirror.types import (
    DepositEvent, LiquidationEvent, MarketDataEvent, ReconciledPosition, MarketSnapshot,
    GasMetrics, WriteStatus, EventStatus, PositionStatus, ActivityRole, Provenance,
    ViolationReason, PersistenceFailure
)
from ledger_mirror.database import (
    UserModel, MarketModel, PositionModel, EventModel, UserActivityModel, RiskMetricModel
)
from ledger_mirror.writer import TransactionalWriter, position_id, position_cache_key

from conftest import TOKEN, ALICE, BOB, ETHER, tx_hash_for


def create_deposit(nonce=1, user=ALICE, amount=ETHER, block=10):
    return DepositEvent(
        token=TOKEN, primary_user=user, amount=amount,
        block_number=block, tx_hash=tx_hash_for(31337, nonce)
    )


def create_liquidation(nonce=2, liquidator=BOB, liquidated=ALICE, block=11):
    return LiquidationEvent(
        token=TOKEN, primary_user=liquidated, secondary_user=liquidator,
        amount=ETHER // 2, collateral_seized=ETHER // 2 + ETHER // 20,
        block_number=block, tx_hash=tx_hash_for(31337, nonce)
    )


def create_position(user=ALICE, deposit=ETHER, borrow=0, health_factor="1000", risk="0", **overrides):
    fields = dict(
        user=user,
        market=TOKEN,
        deposit_amount=deposit,
        borrow_amount=borrow,
        health_factor=Decimal(health_factor),
        liquidation_risk=Decimal(risk),
        collateral_value=deposit,
        price=ETHER,
        interest_rate_bps=500,
        last_update=datetime(2024, 1, 1, 12, 0, 0)
    )
    fields.update(overrides)
    return ReconciledPosition(**fields)


@pytest.fixture
def writer(db_manager, redis_manager):
    return TransactionalWriter(db_manager, redis_manager, cache_ttl_seconds=60)


# ============================================================================
# Unit of Work
# ============================================================================

def test_deposit_writes_every_table(writer, db_manager):
    event = create_deposit()
    snapshot = MarketSnapshot(market=TOKEN, total_liquidity=ETHER, total_borrowed=0, utilization_bps=0)
    gas = GasMetrics(gas_used=60000, effective_gas_price=2 * 10 ** 9)

    result = writer.apply(event, [create_position()], snapshot, gas)

    assert result.status == WriteStatus.COMMITTED
    assert result.activities == 1
    assert result.positions == [position_id(ALICE, TOKEN)]

    with db_manager.get_session() as session:
        assert session.get(UserModel, ALICE) is not None
        assert int(session.get(MarketModel, TOKEN).total_liquidity) == ETHER

        row = session.get(EventModel, event.tx_hash)
        assert row.status == EventStatus.PROCESSED
        payload = json.loads(row.payload)
        assert payload["amount"] == str(ETHER)
        assert payload["users"] == [ALICE]
        assert payload["gas"]["total_gas_cost"] == str(60000 * 2 * 10 ** 9)

        activity = session.query(UserActivityModel).one()
        assert activity.role == ActivityRole.ACTOR
        assert int(activity.amount) == ETHER

    assert writer.count_rows(RiskMetricModel, user_id=ALICE) == 1


def test_replay_is_duplicate_and_writes_nothing(writer):
    event = create_deposit()
    writer.apply(event, [create_position()])

    result = writer.apply(event, [create_position(deposit=2 * ETHER)])

    assert result.status == WriteStatus.DUPLICATE
    assert writer.count_rows(EventModel) == 1
    assert writer.count_rows(UserActivityModel) == 1
    assert writer.count_rows(RiskMetricModel) == 1
    assert writer.load_position(ALICE, TOKEN).deposit_amount == ETHER


def test_is_committed(writer):
    event = create_deposit()
    assert not writer.is_committed(event.tx_hash)

    writer.apply(event)

    assert writer.is_committed(event.tx_hash)
    assert writer.is_committed(event.tx_hash.upper().replace("0X", "0x"))


def test_position_upsert_keeps_one_row(writer):
    writer.apply(create_deposit(1), [create_position()])
    writer.apply(create_deposit(2, block=11), [create_position(deposit=2 * ETHER)])

    assert writer.count_rows(PositionModel) == 1
    assert writer.count_rows(RiskMetricModel) == 2

    position = writer.load_position(ALICE, TOKEN)
    assert position.deposit_amount == 2 * ETHER
    assert position.block_number == 11


def test_load_position_round_trips_provenance(writer):
    degraded = create_position(
        borrow=ETHER // 2, health_factor="1.0", risk="100",
        health_factor_source=Provenance.DEFAULT, price_source=Provenance.FALLBACK
    )
    writer.apply(create_deposit(), [degraded])

    position = writer.load_position(ALICE, TOKEN)

    assert position.health_factor == Decimal("1.0")
    assert position.liquidation_risk == Decimal("100")
    assert position.health_factor_source == Provenance.DEFAULT
    assert position.price_source == Provenance.FALLBACK
    assert position.config_source == Provenance.LEDGER
    assert position.is_degraded


def test_load_missing_position(writer):
    assert writer.load_position(BOB, TOKEN) is None


def test_market_data_updates_market_row(writer, db_manager):
    event = MarketDataEvent(
        pool_id="pool-1", total_liquidity=5 * ETHER, utilization_rate=4200, ipfs_hash="QmHash",
        amount=0, block_number=3, tx_hash=tx_hash_for(31337, 9)
    )

    result = writer.apply(event)

    assert result.status == WriteStatus.COMMITTED
    assert result.activities == 0
    with db_manager.get_session() as session:
        market = session.get(MarketModel, "pool-1")
        assert market.utilization_bps == 4200
        assert market.ipfs_hash == "QmHash"


def test_sync_market_creates_and_updates(writer, db_manager):
    writer.sync_market(MarketSnapshot(market=TOKEN, total_liquidity=ETHER, total_borrowed=0, utilization_bps=0), 31337)
    writer.sync_market(
        MarketSnapshot(market=TOKEN, total_liquidity=2 * ETHER, total_borrowed=ETHER, utilization_bps=5000), 31337
    )

    with db_manager.get_session() as session:
        market = session.get(MarketModel, TOKEN)
        assert int(market.total_borrowed) == ETHER
        assert market.utilization_bps == 5000


# ============================================================================
# Liquidations
# ============================================================================

def test_liquidation_records_both_parties(writer, db_manager):
    writer.apply(create_deposit(), [create_position()])
    positions = [
        create_position(deposit=ETHER // 2, borrow=ETHER // 4, health_factor="1.6", risk="62.5"),
        create_position(user=BOB, deposit=ETHER // 2),
    ]

    result = writer.apply(create_liquidation(), positions)

    assert result.status == WriteStatus.COMMITTED
    assert result.activities == 2
    with db_manager.get_session() as session:
        roles = {
            (a.user_id, a.role)
            for a in session.query(UserActivityModel).filter_by(tx_hash=create_liquidation().tx_hash)
        }
        assert roles == {(ALICE, ActivityRole.LIQUIDATED), (BOB, ActivityRole.LIQUIDATOR)}

    assert writer.load_position(ALICE, TOKEN).status == PositionStatus.LIQUIDATED
    assert writer.load_position(BOB, TOKEN).status == PositionStatus.ACTIVE


def test_self_liquidation_rejected_with_failed_row(writer, db_manager):
    event = create_liquidation(liquidator=ALICE)

    result = writer.apply(event, [create_position()])

    assert result.status == WriteStatus.REJECTED
    assert result.reason == ViolationReason.SELF_LIQUIDATION
    with db_manager.get_session() as session:
        row = session.get(EventModel, event.tx_hash)
        assert row.status == EventStatus.FAILED
        assert row.error.startswith("SELF_LIQUIDATION")
    assert writer.count_rows(PositionModel) == 0
    assert writer.count_rows(UserActivityModel) == 0

    # Redelivery is a no-op
    assert writer.apply(event).status == WriteStatus.DUPLICATE


def test_liquidation_without_liquidator_rejected(writer):
    event = LiquidationEvent(
        token=TOKEN, primary_user=ALICE, amount=1,
        block_number=5, tx_hash=tx_hash_for(31337, 3)
    )

    result = writer.apply(event)

    assert result.status == WriteStatus.REJECTED
    assert result.reason == ViolationReason.NOTHING_TO_LIQUIDATE


# ============================================================================
# Failure and Cache
# ============================================================================

def test_failure_rolls_back_whole_unit(writer):
    event = create_deposit()

    with patch.object(writer, "_insert_activities", side_effect=RuntimeError("disk full")):
        with pytest.raises(PersistenceFailure):
            writer.apply(event, [create_position()])

    assert not writer.is_committed(event.tx_hash)
    assert writer.count_rows(UserModel) == 0
    assert writer.count_rows(MarketModel) == 0
    assert writer.count_rows(PositionModel) == 0

    # A retry after the failure succeeds
    assert writer.apply(event, [create_position()]).status == WriteStatus.COMMITTED


def test_committed_positions_are_cached(writer, redis_manager):
    writer.apply(create_deposit(), [create_position(deposit=3 * ETHER)])

    cached = json.loads(redis_manager.get(position_cache_key(ALICE, TOKEN)))

    assert cached["deposit_amount"] == str(3 * ETHER)
    assert cached["user"] == ALICE


def test_rejected_write_is_not_cached(writer, redis_manager):
    writer.apply(create_liquidation(liquidator=ALICE), [create_position()])

    assert redis_manager.get(position_cache_key(ALICE, TOKEN)) is None
