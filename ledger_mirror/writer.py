"""
Transactional Writer

Applies one logical unit of work atomically: user upserts, market upsert,
activity rows, position upserts with risk history, and the Event row that
marks the transaction as processed. The Event primary key (transaction
hash) is the store-level idempotency backstop. This is the only component
that mutates store rows.
"""

import json
import logging
from datetime import datetime
from typing import Optional, List, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .types import (
    LedgerEvent, LiquidationEvent, MarketDataEvent, ReconciledPosition, MarketSnapshot,
    GasMetrics, WriteResult, WriteStatus, EventStatus, PositionStatus, ActivityRole,
    Provenance, InvariantViolation, ViolationReason, DuplicateEvent, PersistenceFailure
)
from .database import (
    DatabaseManager, RedisManager, UserModel, MarketModel, PositionModel,
    EventModel, UserActivityModel, RiskMetricModel
)
from .normalizer import affected_users
from .logging_config import get_logger, log_write_result, log_invariant_violation

logger = logging.getLogger(__name__)


def position_id(user: str, market: str) -> str:
    return f"{user.lower()}:{market.lower()}"


def position_cache_key(user: str, market: str) -> str:
    return f"position:{market.lower()}:{user.lower()}"


class TransactionalWriter:
    """Single-transaction writer, idempotent on transaction hash"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        redis_manager: Optional[RedisManager] = None,
        cache_ttl_seconds: Optional[int] = None
    ):
        self.db = db_manager
        self.redis = redis_manager
        self.cache_ttl_seconds = cache_ttl_seconds
        self.audit = get_logger("writer")

    # ========================================================================
    # Reads used by the pipeline
    # ========================================================================

    def is_committed(self, tx_hash: str) -> bool:
        """True if an Event row exists for this transaction"""
        with self.db.get_session() as session:
            return session.get(EventModel, tx_hash.lower()) is not None

    def load_position(self, user: str, market: str) -> Optional[ReconciledPosition]:
        """Last stored position, used as the fallback source when reconciling"""
        with self.db.get_session() as session:
            row = session.get(PositionModel, position_id(user, market))
            return self._to_position(row) if row is not None else None

    @staticmethod
    def _to_position(row: PositionModel) -> ReconciledPosition:
        return ReconciledPosition(
            user=row.user_id,
            market=row.market_id,
            deposit_amount=int(row.deposit_amount),
            borrow_amount=int(row.borrow_amount),
            health_factor=row.health_factor,
            liquidation_risk=row.liquidation_risk,
            collateral_value=int(row.collateral_value),
            price=int(row.price),
            interest_rate_bps=row.interest_rate_bps,
            status=row.status,
            last_update=row.last_update,
            block_number=row.last_block,
            health_factor_source=Provenance(row.health_factor_source),
            price_source=Provenance(row.price_source),
            config_source=Provenance(row.config_source)
        )

    def count_rows(self, model, **filters) -> int:
        with self.db.get_session() as session:
            query = select(func.count()).select_from(model).filter_by(**filters)
            return session.execute(query).scalar_one()

    # ========================================================================
    # Unit of work
    # ========================================================================

    def validate(self, event: LedgerEvent):
        """Reject events that would break a ledger invariant"""
        if isinstance(event, LiquidationEvent):
            if event.liquidator is None:
                raise InvariantViolation(ViolationReason.NOTHING_TO_LIQUIDATE, "Liquidation without liquidator")
            if event.liquidator == event.liquidated:
                raise InvariantViolation(
                    ViolationReason.SELF_LIQUIDATION,
                    f"{event.liquidator} cannot liquidate their own position"
                )

    def apply(
        self,
        event: LedgerEvent,
        positions: Sequence[ReconciledPosition] = (),
        market: Optional[MarketSnapshot] = None,
        gas: Optional[GasMetrics] = None
    ) -> WriteResult:
        """
        Apply one event atomically.

        Returns a COMMITTED, DUPLICATE or REJECTED result.

        Raises:
            PersistenceFailure: the transaction rolled back; nothing was written
        """
        try:
            self.validate(event)
        except InvariantViolation as e:
            return self._reject(event, e)

        users = affected_users(event)

        try:
            with self.db.get_session() as session:
                # Defense in depth against two concurrent admits
                if session.get(EventModel, event.tx_hash) is not None:
                    raise DuplicateEvent(event.tx_hash)

                for user in users:
                    self._upsert_user(session, user, event.timestamp)
                market_id = self._upsert_market(session, event, market)
                session.flush()

                activities = self._insert_activities(session, event, users, market_id)

                for position in positions:
                    self._upsert_position(session, event, position)

                session.add(EventModel(
                    tx_hash=event.tx_hash,
                    chain_id=event.chain_id,
                    event_type=event.event_type,
                    market_id=market_id,
                    block_number=event.block_number,
                    timestamp=event.timestamp,
                    payload=json.dumps(self._payload(event, users, gas)),
                    status=EventStatus.PROCESSED,
                    processed_at=datetime.utcnow()
                ))
                session.flush()

        except DuplicateEvent:
            logger.debug(f"Event {event.tx_hash} already processed")
            return WriteResult(tx_hash=event.tx_hash, status=WriteStatus.DUPLICATE)

        except PersistenceFailure as e:
            # A concurrent writer may have won the race on the Event key
            if isinstance(e.__cause__, IntegrityError) and self.is_committed(event.tx_hash):
                logger.debug(f"Event {event.tx_hash} committed concurrently")
                return WriteResult(tx_hash=event.tx_hash, status=WriteStatus.DUPLICATE)
            log_write_result(
                self.audit, event.tx_hash, "ROLLED_BACK", event.event_type.value,
                event.block_number, error=str(e)
            )
            raise

        self._cache_positions(positions)

        result = WriteResult(
            tx_hash=event.tx_hash,
            status=WriteStatus.COMMITTED,
            activities=activities,
            positions=[position_id(p.user, p.market) for p in positions]
        )
        log_write_result(
            self.audit, event.tx_hash, result.status.value, event.event_type.value,
            event.block_number, activities=activities
        )
        return result

    def _reject(self, event: LedgerEvent, error: InvariantViolation) -> WriteResult:
        """Record a FAILED Event row so redelivery is a no-op"""
        log_invariant_violation(
            self.audit, error.reason.value, error.category.value,
            {"tx_hash": event.tx_hash, "ledger_event": event.event_type.value}
        )

        try:
            with self.db.get_session() as session:
                if session.get(EventModel, event.tx_hash) is not None:
                    raise DuplicateEvent(event.tx_hash)
                session.add(EventModel(
                    tx_hash=event.tx_hash,
                    chain_id=event.chain_id,
                    event_type=event.event_type,
                    market_id=event.market,
                    block_number=event.block_number,
                    timestamp=event.timestamp,
                    payload=json.dumps(self._payload(event, affected_users(event), None)),
                    status=EventStatus.FAILED,
                    error=f"{error.reason.value}: {error}",
                    processed_at=datetime.utcnow()
                ))
        except DuplicateEvent:
            return WriteResult(tx_hash=event.tx_hash, status=WriteStatus.DUPLICATE)

        return WriteResult(
            tx_hash=event.tx_hash,
            status=WriteStatus.REJECTED,
            reason=error.reason,
            error=str(error)
        )

    def sync_market(self, snapshot: MarketSnapshot, chain_id: int):
        """Refresh market totals outside of any event"""
        with self.db.get_session() as session:
            row = session.get(MarketModel, snapshot.market)
            if row is None:
                row = MarketModel(id=snapshot.market, chain_id=chain_id)
                session.add(row)
            row.total_liquidity = snapshot.total_liquidity
            row.total_borrowed = snapshot.total_borrowed
            row.utilization_bps = snapshot.utilization_bps
            row.last_update = datetime.utcnow()
        logger.debug(f"Market {snapshot.market} synced: utilization {snapshot.utilization_bps} bps")

    # ========================================================================
    # Steps
    # ========================================================================

    def _upsert_user(self, session: Session, user: str, seen_at: datetime):
        row = session.get(UserModel, user)
        if row is None:
            session.add(UserModel(id=user, created_at=seen_at, updated_at=seen_at))
        else:
            row.updated_at = seen_at

    def _upsert_market(
        self,
        session: Session,
        event: LedgerEvent,
        snapshot: Optional[MarketSnapshot]
    ) -> str:
        market_id = event.market
        row = session.get(MarketModel, market_id)
        if row is None:
            row = MarketModel(
                id=market_id,
                chain_id=event.chain_id,
                total_liquidity=0,
                total_borrowed=0,
                utilization_bps=0
            )
            session.add(row)

        if isinstance(event, MarketDataEvent):
            row.total_liquidity = event.total_liquidity
            row.utilization_bps = event.utilization_rate
            row.ipfs_hash = event.ipfs_hash
        elif snapshot is not None:
            row.total_liquidity = snapshot.total_liquidity
            row.total_borrowed = snapshot.total_borrowed
            row.utilization_bps = snapshot.utilization_bps

        row.last_update = event.timestamp
        return market_id

    def _insert_activities(
        self,
        session: Session,
        event: LedgerEvent,
        users: List[str],
        market_id: str
    ) -> int:
        if isinstance(event, LiquidationEvent):
            roles = [(event.liquidated, ActivityRole.LIQUIDATED), (event.liquidator, ActivityRole.LIQUIDATOR)]
        else:
            roles = [(user, ActivityRole.ACTOR) for user in users]

        for user, role in roles:
            session.add(UserActivityModel(
                user_id=user,
                tx_hash=event.tx_hash,
                market_id=market_id,
                activity_type=event.event_type,
                role=role,
                amount=event.amount,
                block_number=event.block_number,
                timestamp=event.timestamp
            ))
        return len(roles)

    def _upsert_position(self, session: Session, event: LedgerEvent, position: ReconciledPosition):
        status = position.status
        if isinstance(event, LiquidationEvent) and position.user == event.liquidated:
            status = PositionStatus.LIQUIDATED

        key = position_id(position.user, position.market)
        row = session.get(PositionModel, key)
        if row is None:
            row = PositionModel(id=key, user_id=position.user, market_id=position.market)
            session.add(row)

        row.deposit_amount = position.deposit_amount
        row.borrow_amount = position.borrow_amount
        row.collateral_value = position.collateral_value
        row.price = position.price
        row.health_factor = position.health_factor
        row.liquidation_risk = position.liquidation_risk
        row.interest_rate_bps = position.interest_rate_bps
        row.status = status
        row.health_factor_source = position.health_factor_source.value
        row.price_source = position.price_source.value
        row.config_source = position.config_source.value
        row.last_block = event.block_number
        row.last_update = position.last_update

        session.add(RiskMetricModel(
            user_id=position.user,
            market_id=position.market,
            health_factor=position.health_factor,
            liquidation_risk=position.liquidation_risk,
            timestamp=position.last_update
        ))

    @staticmethod
    def _payload(event: LedgerEvent, users: List[str], gas: Optional[GasMetrics]) -> dict:
        payload = event.payload()
        payload['users'] = users
        if gas is not None:
            payload['gas'] = gas.to_payload()
        return payload

    def _cache_positions(self, positions: Sequence[ReconciledPosition]):
        if self.redis is None:
            return
        for position in positions:
            self.redis.set(
                position_cache_key(position.user, position.market),
                json.dumps(position.to_dict()),
                ttl=self.cache_ttl_seconds
            )
