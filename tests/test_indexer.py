"""
Integration tests for the Event Indexer

Drives the full pipeline (normalizer, gate, reconciler, writer) against the
simulated ledger and an in-memory SQLite store.

Tests:
- Duplicate notifications of one transaction
- Stale notifications below the watermark
- Out-of-order delivery within one stream
- Replayed liquidation notifications
- Liquidation lifecycle from scan to mirrored position
- Restart idempotency with and without watermark checkpoints
- Failure release and retry
- Live feed following and recovery from feed errors
"""

import asyncio
from decimal import Decimal

import pytest

from ledger_mirror.types import (
    AdmitResult, EventType, WriteStatus, EventStatus, PositionStatus, Provenance
)
from ledger_mirror.database import EventModel, PositionModel, UserActivityModel, RiskMetricModel, MarketModel
from ledger_mirror.indexer import EventIndexer
from ledger_mirror.watermark import stream_key
from ledger_mirror.liquidation_scanner import LiquidationScanner, CandidateIndex, select
from ledger_mirror.guards import ActionGuard

from conftest import SimulatedLedger, TOKEN, ALICE, BOB, ETHER, SCENARIO_RATE_BPS


def create_indexer(mirror_config, ledger, db_manager, redis_manager=None, candidate_index=None):
    return EventIndexer(mirror_config, ledger, db_manager, redis_manager, candidate_index)


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ============================================================================
# Duplicates and Staleness
# ============================================================================

@pytest.mark.asyncio
async def test_scenario_duplicate_delivery_writes_once(mirror_config, ledger, db_manager):
    mirror_config.indexer.debounce_ms = 300
    indexer = create_indexer(mirror_config, ledger, db_manager)
    tx_hash = ledger.deposit(ALICE, 2 * ETHER)
    record = ledger.record(tx_hash)

    first = await indexer.handle_notification(record)
    await asyncio.sleep(0.5)
    second = await indexer.handle_notification(dict(record))
    await indexer.gate.drain()

    assert first == AdmitResult.ADMIT
    assert second == AdmitResult.STALE
    assert indexer.stats["committed"] == 1
    assert indexer.writer.count_rows(PositionModel) == 1
    assert indexer.writer.count_rows(RiskMetricModel) == 1
    assert indexer.writer.count_rows(UserActivityModel) == 1
    assert indexer.writer.load_position(ALICE, TOKEN).deposit_amount == 2 * ETHER


@pytest.mark.asyncio
async def test_burst_within_debounce_window_coalesces(mirror_config, ledger, db_manager):
    mirror_config.indexer.debounce_ms = 300
    indexer = create_indexer(mirror_config, ledger, db_manager)
    record = ledger.record(ledger.deposit(ALICE, ETHER))

    results = []
    for _ in range(3):
        results.append(await indexer.handle_notification(dict(record)))
        await asyncio.sleep(0.05)
    await indexer.gate.drain()

    assert results == [AdmitResult.ADMIT, AdmitResult.DUPLICATE, AdmitResult.DUPLICATE]
    assert ledger.calls["read_position"] == 1
    assert indexer.writer.count_rows(EventModel) == 1


@pytest.mark.asyncio
async def test_scenario_stale_notification_writes_nothing(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    ledger.deposit(ALICE, ETHER)
    ledger.deposit(BOB, ETHER)
    await indexer.backfill(0)

    late = dict(ledger.records[0])
    late["txHash"] = "0x" + "ee" * 32
    result = await indexer.handle_notification(late)
    await indexer.gate.drain()

    assert result == AdmitResult.STALE
    assert indexer.writer.count_rows(EventModel) == 2
    assert not indexer.writer.is_committed(late["txHash"])


@pytest.mark.asyncio
async def test_undecodable_notification_counted(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)

    assert await indexer.handle_notification({"type": "Stake", "args": {}}) is None
    assert indexer.stats["invalid"] == 1


@pytest.mark.asyncio
async def test_out_of_order_delivery_keeps_watermark_monotonic(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    early = ledger.record(ledger.deposit(ALICE, ETHER))
    late = ledger.record(ledger.deposit(BOB, ETHER))

    assert await indexer.handle_notification(late) == AdmitResult.ADMIT
    await asyncio.sleep(0.01)
    assert await indexer.handle_notification(early) == AdmitResult.ADMIT
    await indexer.gate.drain()

    stream = stream_key(mirror_config.chain_id, EventType.DEPOSIT)
    assert indexer.writer.is_committed(late["txHash"])
    assert not indexer.writer.is_committed(early["txHash"])
    assert indexer.stats["superseded"] == 1
    assert indexer.gate.watermarks.current(stream) == late["blockNumber"]
    assert indexer.writer.count_rows(EventModel) == 1


# ============================================================================
# Liquidation Lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_scenario_liquidation_improves_health_factor(mirror_config, db_manager):
    ledger = SimulatedLedger(interest_rate_bps=SCENARIO_RATE_BPS)
    indexer = create_indexer(mirror_config, ledger, db_manager)
    scanner = LiquidationScanner(ledger, mirror_config.risk, mirror_config.scanner, mirror_config.retry)

    ledger.deposit(ALICE, ETHER)
    ledger.borrow(ALICE, ETHER * 3 // 4)
    await indexer.backfill(0)
    assert await scanner.scan(TOKEN, requester=BOB) == []

    ledger.advance_intervals(60)
    candidates = await scanner.scan(TOKEN, requester=BOB)
    target = select(candidates, BOB, ALICE)
    assert target.health_factor == Decimal("0.9")

    pre = await indexer.reconciler.reconcile(ALICE, TOKEN)
    amount = pre.borrow_amount // 2
    ActionGuard(mirror_config.risk).check_liquidation(pre, BOB, amount)

    ledger.liquidate(BOB, ALICE, amount)
    outcomes = await indexer.backfill(0)

    assert outcomes[AdmitResult.ADMIT.value] == 1
    assert indexer.stats["committed"] == 3

    post = indexer.writer.load_position(ALICE, TOKEN)
    assert post.status == PositionStatus.LIQUIDATED
    assert post.borrow_amount < pre.borrow_amount
    assert post.health_factor >= pre.health_factor
    assert indexer.writer.load_position(BOB, TOKEN).deposit_amount > 0
    assert indexer.writer.count_rows(UserActivityModel, user_id=BOB) == 1


@pytest.mark.asyncio
async def test_self_liquidation_recorded_as_failed(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    ledger.deposit(ALICE, ETHER)
    ledger.borrow(ALICE, ETHER * 9 // 10)
    tx_hash = ledger.liquidate(ALICE, ALICE, ETHER // 10)

    await indexer.backfill(0)

    assert indexer.stats["rejected"] == 1
    assert indexer.results[tx_hash].status == WriteStatus.REJECTED
    with db_manager.get_session() as session:
        assert session.get(EventModel, tx_hash).status == EventStatus.FAILED
    assert indexer.writer.load_position(ALICE, TOKEN).status == PositionStatus.ACTIVE


@pytest.mark.asyncio
async def test_replayed_liquidation_writes_one_event_and_two_activities(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    ledger.deposit(ALICE, ETHER)
    ledger.borrow(ALICE, ETHER * 9 // 10)
    await indexer.backfill(0)
    record = ledger.record(ledger.liquidate(BOB, ALICE, ETHER // 10))

    results = [await indexer.handle_notification(dict(record)) for _ in range(3)]
    await indexer.gate.drain()
    for _ in range(2):
        results.append(await indexer.handle_notification(dict(record)))
        await asyncio.sleep(0.02)
    await indexer.gate.drain()

    tx_hash = record["txHash"]
    assert results[0] == AdmitResult.ADMIT
    assert AdmitResult.ADMIT not in results[1:]
    assert indexer.writer.count_rows(EventModel, tx_hash=tx_hash) == 1
    assert indexer.writer.count_rows(UserActivityModel, tx_hash=tx_hash) == 2
    assert indexer.writer.count_rows(UserActivityModel, tx_hash=tx_hash, user_id=ALICE) == 1
    assert indexer.writer.count_rows(UserActivityModel, tx_hash=tx_hash, user_id=BOB) == 1


# ============================================================================
# Restart and Failure
# ============================================================================

@pytest.mark.asyncio
async def test_restart_without_checkpoint_uses_store(mirror_config, ledger, db_manager):
    ledger.deposit(ALICE, ETHER)
    ledger.borrow(ALICE, ETHER // 2)
    await create_indexer(mirror_config, ledger, db_manager).backfill(0)

    restarted = create_indexer(mirror_config, ledger, db_manager)
    outcomes = await restarted.backfill(0)

    assert outcomes == {AdmitResult.DUPLICATE.value: 2}
    assert restarted.writer.count_rows(EventModel) == 2
    assert restarted.writer.count_rows(RiskMetricModel) == 2


@pytest.mark.asyncio
async def test_restart_with_checkpoint_skips_replays(mirror_config, ledger, db_manager, redis_manager):
    ledger.deposit(ALICE, ETHER)
    first = create_indexer(mirror_config, ledger, db_manager, redis_manager)
    await first.backfill(0)

    restarted = create_indexer(mirror_config, ledger, db_manager, redis_manager)

    assert restarted.resume_block() == 0
    assert await restarted.backfill(0) == {AdmitResult.STALE.value: 1}


@pytest.mark.asyncio
async def test_failed_unit_released_and_retried(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    record = ledger.record(ledger.deposit(ALICE, ETHER))
    ledger.fail("read_position", times=3)

    await indexer.handle_notification(record)
    await indexer.gate.drain()

    assert indexer.stats["failed"] == 1
    assert not indexer.writer.is_committed(record["txHash"])

    assert await indexer.handle_notification(record) == AdmitResult.ADMIT
    await indexer.gate.drain()
    assert indexer.writer.is_committed(record["txHash"])


@pytest.mark.asyncio
async def test_oracle_retry_keeps_oracle_provenance(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    ledger.deposit(ALICE, ETHER)
    ledger.fail("read_price", times=2)

    await indexer.backfill(0)

    position = indexer.writer.load_position(ALICE, TOKEN)
    assert position.price_source == Provenance.ORACLE
    assert not position.is_degraded


@pytest.mark.asyncio
async def test_stop_abandons_pending_units(mirror_config, ledger, db_manager):
    mirror_config.indexer.debounce_ms = 200
    indexer = create_indexer(mirror_config, ledger, db_manager)
    record = ledger.record(ledger.deposit(ALICE, ETHER))

    await indexer.handle_notification(record)
    await indexer.stop()
    await asyncio.sleep(0.3)

    assert indexer.writer.count_rows(EventModel) == 0
    assert ledger.calls["read_position"] == 0


# ============================================================================
# Feeds
# ============================================================================

@pytest.mark.asyncio
async def test_market_data_and_sync(mirror_config, ledger, db_manager):
    indexer = create_indexer(mirror_config, ledger, db_manager)
    ledger.publish_market_data("pool-1", 5 * ETHER, 4200)

    await indexer.backfill(0)
    ledger.deposit(ALICE, 4 * ETHER)
    ledger.borrow(ALICE, ETHER)
    assert await indexer.sync_market(TOKEN)

    with db_manager.get_session() as session:
        assert session.get(MarketModel, "pool-1").utilization_bps == 4200
        assert session.get(MarketModel, TOKEN).utilization_bps == 2500


@pytest.mark.asyncio
async def test_run_follows_live_feed(mirror_config, ledger, db_manager):
    candidate_index = CandidateIndex()
    indexer = create_indexer(mirror_config, ledger, db_manager, candidate_index=candidate_index)
    ledger.deposit(ALICE, ETHER)

    task = asyncio.create_task(indexer.run())
    await asyncio.sleep(0.01)
    ledger.deposit(BOB, ETHER)
    ledger.borrow(BOB, ETHER // 4)

    await wait_for(lambda: indexer.stats["committed"] == 3)
    await indexer.stop()
    ledger.close_feed()
    await asyncio.wait_for(task, timeout=1.0)

    assert set(candidate_index.users(TOKEN)) == {ALICE, BOB}
    assert indexer.writer.load_position(BOB, TOKEN).borrow_amount == ETHER // 4


class CrashingFeedLedger(SimulatedLedger):
    """Feed whose first subscription yields one record and then fails to decode"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.subscriptions = 0

    async def subscribe_events(self, event_types, from_block):
        self.subscriptions += 1
        if self.subscriptions == 1:
            for record in await self.read_events(event_types, from_block):
                yield record
                raise ValueError("MismatchedABI: event signature did not match the provided ABI")
        async for record in super().subscribe_events(event_types, from_block):
            yield record


@pytest.mark.asyncio
async def test_run_survives_non_transient_feed_error(mirror_config, db_manager):
    ledger = CrashingFeedLedger()
    indexer = create_indexer(mirror_config, ledger, db_manager)
    first = ledger.deposit(ALICE, ETHER)

    task = asyncio.create_task(indexer.run())
    await wait_for(lambda: ledger.subscriptions == 2)
    second = ledger.deposit(BOB, ETHER)

    await wait_for(lambda: indexer.stats["committed"] == 2)
    assert not task.done()

    await indexer.stop()
    ledger.close_feed()
    await asyncio.wait_for(task, timeout=1.0)

    assert indexer.writer.is_committed(first)
    assert indexer.writer.is_committed(second)
