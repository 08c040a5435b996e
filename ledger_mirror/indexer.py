"""
Event Indexer

Pipeline orchestration: Normalizer -> Dedup/Debounce Gate -> Reconciler ->
Transactional Writer. Every notification, live or backfilled, takes the
same path. No single failure stops the indexer; failed units are logged,
released and retried on redelivery.
"""

import asyncio
import logging
import time
from typing import Optional, Dict, Any, List, Mapping, Iterable

from .types import (
    EventType, LedgerEvent, DepositEvent, MarketDataEvent, AdmitResult, GasMetrics,
    WriteResult, WriteStatus, LedgerMirrorError, NormalizationError, TransientLedgerError,
    humanize_error
)
from .config import MirrorConfig
from .database import DatabaseManager, RedisManager
from .ledger import Ledger, call_with_retry
from .normalizer import EventNormalizer, affected_users
from .watermark import WatermarkTracker, stream_key
from .dedup_gate import DedupGate
from .reconciler import PositionReconciler
from .writer import TransactionalWriter
from .liquidation_scanner import CandidateIndex
from .metrics_server import MetricsServer
from .logging_config import get_logger, log_event_admission, log_performance_metrics

logger = logging.getLogger(__name__)


class EventIndexer:
    """Consumes ledger notifications and mirrors their effects into the store"""

    def __init__(
        self,
        config: MirrorConfig,
        ledger: Ledger,
        db_manager: DatabaseManager,
        redis_manager: Optional[RedisManager] = None,
        candidate_index: Optional[CandidateIndex] = None
    ):
        self.config = config
        self.ledger = ledger
        self.candidate_index = candidate_index

        self.normalizer = EventNormalizer(config.chain_id)
        self.watermarks = WatermarkTracker(redis_manager)
        self.reconciler = PositionReconciler(ledger, config.risk, config.retry)
        self.writer = TransactionalWriter(db_manager, redis_manager, config.redis.ttl_seconds)
        self.gate = DedupGate(
            self.watermarks,
            is_committed=self._is_committed,
            debounce_seconds=config.indexer.debounce_ms / 1000,
            committed_cache_size=config.indexer.committed_cache_size,
            on_superseded=self._superseded
        )

        self.audit = get_logger("indexer")
        self.results: Dict[str, WriteResult] = {}
        self.stats: Dict[str, int] = {
            "admit": 0, "duplicate": 0, "stale": 0, "invalid": 0,
            "committed": 0, "rejected": 0, "failed": 0, "superseded": 0,
        }
        self._stopping = False

        logger.info("EventIndexer initialized")

    @property
    def streams(self) -> List[str]:
        return [stream_key(self.config.chain_id, t) for t in EventType]

    async def _is_committed(self, tx_hash: str) -> bool:
        return self.writer.is_committed(tx_hash)

    def _superseded(self, tx_hash: str, block_number: int, stream: str):
        """An admitted unit overtaken by a later block of its stream; nothing was written"""
        self.stats["superseded"] += 1
        log_event_admission(self.audit, AdmitResult.STALE.value, tx_hash, block_number, stream)
        MetricsServer.record_admission(AdmitResult.STALE.value)

    # ========================================================================
    # Admission
    # ========================================================================

    async def handle_notification(self, raw: Mapping[str, Any]) -> Optional[AdmitResult]:
        """
        Normalize and admit one feed record.

        Returns None when the record cannot be decoded or admission failed.
        """
        try:
            event = self.normalizer.normalize(raw)
        except NormalizationError as e:
            self.stats["invalid"] += 1
            logger.warning(f"Dropping undecodable notification {raw.get('txHash')}: {e}")
            return None

        return await self.admit(event)

    async def admit(self, event: LedgerEvent) -> Optional[AdmitResult]:
        stream = stream_key(event.chain_id, event.event_type)

        try:
            result = await self.gate.admit(
                event.tx_hash,
                event.block_number,
                stream,
                work=lambda: self.process(event)
            )
        except LedgerMirrorError as e:
            logger.error(f"Admission of {event.tx_hash} failed: {e}")
            return None

        self.stats[result.value.lower()] += 1
        log_event_admission(self.audit, result.value, event.tx_hash, event.block_number, stream)
        MetricsServer.record_admission(result.value)
        return result

    # ========================================================================
    # Unit of work
    # ========================================================================

    async def process(self, event: LedgerEvent) -> bool:
        """
        Reconcile and write one admitted event.

        Returns True once the outcome is durably recorded (committed,
        rejected with a FAILED row, or already present), False when the
        indexer is shutting down. Raises on failure so the gate releases
        the hash.
        """
        started = time.time()
        market = event.market

        try:
            positions = []
            for user in affected_users(event):
                previous = self.writer.load_position(user, market)
                positions.append(
                    await self.reconciler.reconcile(user, market, previous, event.block_number)
                )

            snapshot = None
            if not isinstance(event, MarketDataEvent):
                snapshot = await self.reconciler.reconcile_market(market)

            gas = await self._gas_metrics(event.tx_hash)

            if self._stopping:
                logger.info(f"Shutting down, abandoning {event.tx_hash}")
                return False

            result = self.writer.apply(event, positions, snapshot, gas)

        except LedgerMirrorError as e:
            self.stats["failed"] += 1
            MetricsServer.record_failure(humanize_error(e).name)
            logger.error(f"Processing {event.event_type.value} {event.tx_hash} failed: {e}")
            raise

        self.results[event.tx_hash] = result

        if result.status == WriteStatus.COMMITTED:
            self.stats["committed"] += 1
            MetricsServer.record_commit(event.event_type.value, len(result.positions))
            if self.candidate_index is not None and isinstance(event, DepositEvent):
                self.candidate_index.observe(event)
        elif result.status == WriteStatus.REJECTED:
            self.stats["rejected"] += 1

        stream = stream_key(event.chain_id, event.event_type)
        MetricsServer.update_watermark(stream, max(self.watermarks.current(stream), event.block_number))

        log_performance_metrics(self.audit, {
            "tx_hash": event.tx_hash,
            "status": result.status.value,
            "positions": len(positions),
            "duration_ms": round((time.time() - started) * 1000, 1),
        })
        return True

    async def _gas_metrics(self, tx_hash: str) -> Optional[GasMetrics]:
        try:
            return await self.ledger.read_transaction_costs(tx_hash)
        except TransientLedgerError as e:
            logger.debug(f"Gas metrics unavailable for {tx_hash}: {e}")
            return None

    # ========================================================================
    # Feeds
    # ========================================================================

    async def backfill(self, from_block: int, to_block: Optional[int] = None) -> Dict[str, int]:
        """Replay historical events through the gate and wait for them to settle"""
        records = await call_with_retry(
            lambda: self.ledger.read_events(list(EventType), from_block, to_block),
            attempts=self.config.retry.attempts,
            base_backoff=self.config.retry.base_backoff_seconds,
            max_backoff=self.config.retry.max_backoff_seconds,
            label=f"read_events({from_block}-{to_block if to_block is not None else 'head'})"
        )
        logger.info(f"Backfilling {len(records)} events from block {from_block}")

        outcomes: Dict[str, int] = {}
        for record in records:
            result = await self.handle_notification(record)
            key = result.value if result else "INVALID"
            outcomes[key] = outcomes.get(key, 0) + 1

        await self.gate.drain()
        return outcomes

    def resume_block(self) -> int:
        """First block not yet covered by every stream watermark"""
        return max(self.watermarks.lowest(self.streams) + 1, self.config.indexer.start_block)

    async def run(self):
        """Follow the live feed until stopped, resubscribing after failures"""
        attempt = 0
        while not self._stopping:
            from_block = self.resume_block()
            logger.info(f"Subscribing to ledger events from block {from_block}")
            try:
                async for raw in self.ledger.subscribe_events(list(EventType), from_block):
                    if self._stopping:
                        break
                    attempt = 0
                    await self.handle_notification(raw)
                else:
                    logger.warning("Ledger event feed ended")
            except TransientLedgerError as e:
                logger.error(f"Ledger event feed failed: {e}")
            except Exception as e:
                logger.error(f"Ledger event feed crashed: {e}", exc_info=True)

            if self._stopping:
                break

            backoff = min(
                self.config.retry.base_backoff_seconds * (2 ** attempt),
                self.config.retry.max_backoff_seconds
            )
            attempt += 1
            await asyncio.sleep(backoff)

    async def sync_market(self, token: str) -> bool:
        """Refresh one market's totals from the ledger"""
        snapshot = await self.reconciler.reconcile_market(token)
        if snapshot is None:
            return False
        self.writer.sync_market(snapshot, self.config.chain_id)
        return True

    async def market_sync_loop(self, tokens: Iterable[str]):
        """Periodic market refresh"""
        tokens = list(tokens)
        while not self._stopping:
            for token in tokens:
                try:
                    await self.sync_market(token)
                except LedgerMirrorError as e:
                    logger.error(f"Market sync for {token} failed: {e}")
            await asyncio.sleep(self.config.indexer.market_sync_interval_seconds)

    async def stop(self):
        """Abandon pending units without writing them"""
        self._stopping = True
        await self.gate.cancel_all()
        logger.info("EventIndexer stopped")
