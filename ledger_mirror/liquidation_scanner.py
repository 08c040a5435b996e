"""
Liquidation Scanner

Finds positions whose live health factor is below the liquidation threshold:
- Candidate discovery from historical Deposit events of one market
- Bounded-concurrency live reads of position and health factor
- Isolated per-candidate failures (one bad read never aborts the scan)
- Ascending health factor order, requester always excluded
"""

import asyncio
import logging
import time
from typing import Optional, List, Dict, Any, Iterable, Sequence, Callable, Awaitable

from .types import (
    EventType, LedgerEvent, DepositEvent, LiquidationCandidate,
    InvariantViolation, ViolationReason
)
from .config import RiskConfig, RetryConfig, ScannerConfig
from .ledger import Ledger, call_with_retry
from .reconciler import normalize_health_factor
from .metrics_server import MetricsServer
from .logging_config import get_logger, log_scan_summary

logger = logging.getLogger(__name__)

# (from_block, to_block) -> Deposit feed records
DepositFetch = Callable[[int, int], Awaitable[List[Dict[str, Any]]]]


def _distinct(addresses: Iterable[Optional[str]]) -> List[str]:
    """Case-insensitive de-duplication, first occurrence wins"""
    return list(dict.fromkeys(a.lower() for a in addresses if a))


# ============================================================================
# Candidate Index
# ============================================================================

class CandidateIndex:
    """
    Incrementally maintained set of depositors per market.

    Holds the same set a full Deposit-event discovery from start_block
    would return: each refresh only queries blocks newer than the last
    refresh, and deposits committed by the indexer are added as they land.
    """

    def __init__(self, start_block: int = 0):
        self.start_block = start_block
        self._users: Dict[str, Dict[str, None]] = {}
        self._scanned_to: Dict[str, int] = {}

    def observe(self, event: LedgerEvent):
        """Record the depositor of an indexed Deposit event"""
        if not isinstance(event, DepositEvent) or event.block_number < self.start_block:
            return
        self._users.setdefault(event.token, {})[event.primary_user] = None

    def users(self, market: str) -> List[str]:
        return list(self._users.get(market.lower(), {}))

    def scanned_to(self, market: str) -> int:
        return self._scanned_to.get(market.lower(), self.start_block - 1)

    async def refresh(self, market: str, head: int, fetch: DepositFetch) -> List[str]:
        """Query only the blocks after the last refresh, up to head"""
        market = market.lower()
        from_block = max(self.scanned_to(market) + 1, self.start_block)
        if from_block <= head:
            records = await fetch(from_block, head)
            known = self._users.setdefault(market, {})
            for user in _distinct(r['args'].get('user') for r in records):
                known[user] = None
            self._scanned_to[market] = head
        return self.users(market)


# ============================================================================
# Scanner
# ============================================================================

class LiquidationScanner:
    """Scans one market for liquidatable positions"""

    def __init__(
        self,
        ledger: Ledger,
        risk: RiskConfig,
        scanner: ScannerConfig,
        retry: RetryConfig,
        start_block: int = 0,
        candidate_index: Optional[CandidateIndex] = None
    ):
        self.ledger = ledger
        self.risk = risk
        self.scanner = scanner
        self.retry = retry
        self.start_block = start_block
        # A lookback window shrinks with the head, so it cannot be incremental
        self.candidate_index = candidate_index if scanner.lookback_blocks is None else None
        self.audit = get_logger("scanner")

    async def _read(self, label: str, fn):
        return await call_with_retry(
            fn,
            attempts=self.retry.attempts,
            base_backoff=self.retry.base_backoff_seconds,
            max_backoff=self.retry.max_backoff_seconds,
            label=label
        )

    async def discover_candidates(self, market: str) -> List[str]:
        """Every address that ever deposited into the market within the discovery range"""
        market = market.lower()
        head = await self._read("current_block", self.ledger.current_block)

        if self.scanner.lookback_blocks is not None:
            from_block = max(head - self.scanner.lookback_blocks + 1, 0)
        else:
            from_block = self.start_block

        async def fetch(start: int, end: int) -> List[Dict[str, Any]]:
            return await self._read(
                f"read_events(Deposit, {market}, {start}-{end})",
                lambda: self.ledger.read_events([EventType.DEPOSIT], start, end, token=market)
            )

        if self.candidate_index is not None:
            return await self.candidate_index.refresh(market, head, fetch)

        records = await fetch(from_block, head)
        return _distinct(r['args'].get('user') for r in records)

    async def _evaluate(
        self,
        semaphore: asyncio.Semaphore,
        user: str,
        market: str
    ) -> Optional[LiquidationCandidate]:
        async with semaphore:
            position = await self._read(
                f"read_position({user}, {market})",
                lambda: self.ledger.read_position(user, market)
            )
            if position.borrow_amount == 0 or position.deposit_amount == 0:
                return None
            raw = await self._read(
                f"read_health_factor({user})",
                lambda: self.ledger.read_health_factor(user)
            )

        health_factor = normalize_health_factor(
            raw, self.risk.health_factor_decimals, self.risk.health_factor_ceiling
        )
        if health_factor >= self.risk.liquidation_threshold:
            return None

        return LiquidationCandidate(
            user=user,
            deposit_amount=position.deposit_amount,
            borrow_amount=position.borrow_amount,
            health_factor=health_factor,
            raw_health_factor=raw
        )

    async def scan(self, market: str, requester: Optional[str] = None) -> List[LiquidationCandidate]:
        """
        Scan a market for liquidation candidates.

        The requester is never part of the result. Candidates whose reads
        fail are logged and excluded; the rest of the scan proceeds.
        """
        started = time.time()
        market = market.lower()
        requester = requester.lower() if requester else None

        discovered = await self.discover_candidates(market)
        targets = [user for user in discovered if user != requester]

        semaphore = asyncio.Semaphore(self.scanner.max_concurrency)
        results = await asyncio.gather(
            *(self._evaluate(semaphore, user, market) for user in targets),
            return_exceptions=True
        )

        candidates: List[LiquidationCandidate] = []
        failed = 0
        for user, result in zip(targets, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.warning(f"Skipping candidate {user} in {market}: {result}")
                continue
            if result is not None:
                candidates.append(result)

        candidates.sort(key=lambda c: c.health_factor)

        # Final pass: one row per address, never the requester
        seen = set()
        unique: List[LiquidationCandidate] = []
        for candidate in candidates:
            address = candidate.user.lower()
            if address in seen or address == requester:
                continue
            seen.add(address)
            unique.append(candidate)

        duration_ms = (time.time() - started) * 1000
        log_scan_summary(self.audit, market, len(discovered), failed, len(unique), duration_ms)
        MetricsServer.record_scan(duration_ms / 1000, len(unique))

        return unique


def select(
    candidates: Sequence[LiquidationCandidate],
    requester: Optional[str],
    target: str
) -> LiquidationCandidate:
    """
    Pick a liquidation target from scanner output.

    Raises:
        InvariantViolation: SELF_LIQUIDATION or POSITION_HEALTHY
    """
    target = target.lower()
    if requester and target == requester.lower():
        raise InvariantViolation(ViolationReason.SELF_LIQUIDATION, "Cannot liquidate your own position")

    for candidate in candidates:
        if candidate.user.lower() == target:
            return candidate

    raise InvariantViolation(ViolationReason.POSITION_HEALTHY, f"{target} is not a liquidation candidate")
