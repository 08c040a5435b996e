"""
Derived Read API

Read-side views over the mirrored store: cached positions, liquidation
candidates, cross-chain gas comparison and action pre-flight.
"""

import json
import logging
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select

from .types import (
    EventType, EventStatus, ReconciledPosition, LiquidationCandidate, GasComparison,
    DataUnavailable
)
from .config import MirrorConfig
from .database import DatabaseManager, RedisManager, EventModel
from .reconciler import PositionReconciler
from .liquidation_scanner import LiquidationScanner
from .guards import ActionGuard
from .writer import TransactionalWriter, position_cache_key

logger = logging.getLogger(__name__)


class PositionQueries:
    """Read API used by the HTTP server and the CLI"""

    def __init__(
        self,
        config: MirrorConfig,
        db_manager: DatabaseManager,
        redis_manager: Optional[RedisManager],
        scanner: LiquidationScanner,
        reconciler: PositionReconciler
    ):
        self.config = config
        self.db = db_manager
        self.redis = redis_manager
        self.scanner = scanner
        self.reconciler = reconciler
        self.guard = ActionGuard(config.risk)
        self._store = TransactionalWriter(db_manager)

    def get_position(self, user: str, market: str) -> Optional[ReconciledPosition]:
        """Cached position if present, otherwise the stored row"""
        if self.redis is not None:
            cached = self.redis.get(position_cache_key(user, market))
            if cached is not None:
                try:
                    return ReconciledPosition.model_validate(json.loads(cached))
                except ValueError as e:
                    logger.warning(f"Discarding unreadable cached position {user}:{market}: {e}")
                    self.redis.delete(position_cache_key(user, market))

        return self._store.load_position(user, market)

    async def get_liquidation_candidates(
        self,
        market: str,
        requester: Optional[str] = None
    ) -> List[LiquidationCandidate]:
        return await self.scanner.scan(market, requester)

    def _gas_samples(self, event_type: EventType, chain_id: int) -> List[int]:
        """total_gas_cost of the most recent processed events with gas metrics"""
        query = (
            select(EventModel.payload)
            .where(
                EventModel.event_type == event_type,
                EventModel.chain_id == chain_id,
                EventModel.status == EventStatus.PROCESSED
            )
            .order_by(EventModel.block_number.desc())
        )

        samples: List[int] = []
        with self.db.get_session() as session:
            for payload in session.execute(query).scalars():
                gas = json.loads(payload).get('gas')
                if not gas:
                    continue
                samples.append(int(gas['total_gas_cost']))
                if len(samples) >= self.config.reporting.gas_sample_limit:
                    break
        return samples

    def get_gas_comparison(self, event_type: EventType, chain_a: int, chain_b: int) -> GasComparison:
        """
        Average gas cost of one operation on two chains.

        Raises:
            DataUnavailable: either chain has no processed samples
        """
        samples_a = self._gas_samples(event_type, chain_a)
        samples_b = self._gas_samples(event_type, chain_b)

        missing = [str(c) for c, s in ((chain_a, samples_a), (chain_b, samples_b)) if not s]
        if missing:
            raise DataUnavailable(
                f"No {event_type.value} gas samples for chain {', '.join(missing)}"
            )

        average_a = Decimal(sum(samples_a)) / len(samples_a)
        average_b = Decimal(sum(samples_b)) / len(samples_b)
        savings = (average_a - average_b) / average_a * 100 if average_a > 0 else Decimal(0)

        return GasComparison(
            event_type=event_type,
            chain_a=chain_a,
            chain_b=chain_b,
            average_cost_a=average_a,
            average_cost_b=average_b,
            samples_a=len(samples_a),
            samples_b=len(samples_b),
            savings_percent=savings,
            materially_cheaper=savings >= self.config.reporting.material_savings_percent
        )

    async def preflight(
        self,
        action: str,
        user: str,
        market: str,
        amount: int,
        requester: Optional[str] = None
    ) -> ReconciledPosition:
        """
        Validate an action against a freshly reconciled position.

        Raises:
            InvariantViolation: the action would be rejected
            TransientLedgerError: the position could not be read
        """
        previous = self._store.load_position(user, market)
        position = await self.reconciler.reconcile(user, market, previous)
        self.guard.check(action, position, amount, requester)
        return position
