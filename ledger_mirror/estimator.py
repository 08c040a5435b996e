"""
Real-Time Estimator

Extrapolates a ledger-accrued value (typically debt) between authoritative
reads. The ledger accrues interest in discrete intervals; between reads the
estimator projects linearly and freezes once the projection has run for a
full accrual interval without a fresh anchor.

State machine:
    RUNNING --(elapsed > window)--> PAUSED
    PAUSED  --(continue_ / anchor)--> RUNNING
    any     --(switch_context)----> RUNNING at the fetched value

Fetch results are tagged with a generation token; a result from before the
latest context switch is dropped.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Callable, Awaitable, Tuple, Any

from .types import EstimatorState
from .config import EstimatorConfig
from .ledger import Ledger

logger = logging.getLogger(__name__)

# (base value, rate per second)
Snapshot = Tuple[Decimal, Decimal]
SnapshotFetch = Callable[[], Awaitable[Snapshot]]


# ============================================================================
# Accrual Model
# ============================================================================

@dataclass
class InterestDiagnostics:
    """Accrual position of a loan within the interval grid"""
    intervals_elapsed: int
    partial_interval_bps: int  # progress into the current interval, 0-9999
    seconds_to_next_accrual: int


class AccrualModel:
    """Discrete simple-interest accrual mirroring the ledger"""

    def __init__(self, accrual_interval_seconds: int = 300, intervals_per_year: int = 105120):
        self.accrual_interval_seconds = accrual_interval_seconds
        self.intervals_per_year = intervals_per_year

    @classmethod
    def from_config(cls, config: EstimatorConfig) -> "AccrualModel":
        return cls(config.accrual_interval_seconds, config.intervals_per_year)

    def rate_per_interval(self, annual_bps: int) -> Decimal:
        return Decimal(annual_bps) / Decimal(10000) / Decimal(self.intervals_per_year)

    def rate_per_second(self, principal: int, annual_bps: int) -> Decimal:
        """Linear growth used for extrapolation between accruals"""
        return Decimal(principal) * self.rate_per_interval(annual_bps) / Decimal(self.accrual_interval_seconds)

    def intervals(self, elapsed_seconds: float) -> int:
        return int(elapsed_seconds // self.accrual_interval_seconds) if elapsed_seconds > 0 else 0

    def settled_interest(self, principal: int, annual_bps: int, elapsed_seconds: float) -> int:
        """Interest the ledger has accrued; partial intervals accrue nothing"""
        accrued = Decimal(principal) * self.rate_per_interval(annual_bps) * self.intervals(elapsed_seconds)
        return int(accrued)

    def diagnostics(self, last_update_time: int, now: int) -> InterestDiagnostics:
        elapsed = max(now - last_update_time, 0)
        partial = elapsed % self.accrual_interval_seconds
        return InterestDiagnostics(
            intervals_elapsed=self.intervals(elapsed),
            partial_interval_bps=partial * 10000 // self.accrual_interval_seconds,
            seconds_to_next_accrual=self.accrual_interval_seconds - partial
        )


async def ledger_interest_snapshot(
    ledger: Ledger,
    user: str,
    token: str,
    model: AccrualModel
) -> Snapshot:
    """
    Anchor for a user's debt: current ledger debt and its accrual rate.

    Raises:
        TransientLedgerError: either ledger read failed
    """
    principal, current = await ledger.read_borrow_balance(user, token)
    config = await ledger.read_token_config(token)
    return Decimal(current), model.rate_per_second(principal, config.interest_rate_bps)


async def ledger_reward_snapshot(
    ledger: Ledger,
    user: str,
    model: AccrualModel,
    reward_rate_bps: int
) -> Snapshot:
    """
    Anchor for a user's staking reward: pending reward and its accrual rate
    on the staked amount.

    Raises:
        TransientLedgerError: the staking read failed
        DataUnavailable: no staking pool is configured
    """
    staked, pending = await ledger.read_stake_info(user)
    return Decimal(pending), model.rate_per_second(staked, reward_rate_bps)


# ============================================================================
# Estimator
# ============================================================================

class RealTimeEstimator:
    """Extrapolating estimator owned by a single tick task"""

    def __init__(
        self,
        window_seconds: float = 300,
        tick_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        on_tick: Optional[Callable[[Decimal], Any]] = None
    ):
        self.window_seconds = Decimal(str(window_seconds))
        self.tick_interval_seconds = tick_interval_seconds
        self.clock = clock
        self.on_tick = on_tick

        self.state = EstimatorState.PAUSED
        self.base_value = Decimal(0)
        self.rate = Decimal(0)
        self.anchor_time: Optional[float] = None
        self.value = Decimal(0)
        self.context: Optional[str] = None
        self.generation = 0

        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: EstimatorConfig,
        on_tick: Optional[Callable[[Decimal], Any]] = None
    ) -> "RealTimeEstimator":
        """Estimator whose window is one accrual interval"""
        return cls(
            window_seconds=config.accrual_interval_seconds,
            tick_interval_seconds=config.tick_interval_seconds,
            on_tick=on_tick
        )

    def anchor(self, base_value: Decimal, rate: Decimal, generation: Optional[int] = None) -> bool:
        """
        Anchor at a fresh authoritative value and resume ticking.

        Returns False if the value belongs to an older generation.
        """
        if generation is not None and generation != self.generation:
            logger.debug(f"Dropping snapshot from generation {generation} (current {self.generation})")
            return False

        self.base_value = Decimal(base_value)
        self.rate = Decimal(rate)
        self.anchor_time = self.clock()
        self.value = self.base_value
        self.state = EstimatorState.RUNNING
        self._restart_task()
        return True

    def value_at(self, t: float) -> Decimal:
        """base + rate * elapsed, with elapsed capped at the window"""
        if self.anchor_time is None:
            return self.base_value
        elapsed = Decimal(str(max(t - self.anchor_time, 0)))
        return self.base_value + self.rate * min(elapsed, self.window_seconds)

    @property
    def elapsed(self) -> float:
        return 0.0 if self.anchor_time is None else self.clock() - self.anchor_time

    def tick(self) -> Decimal:
        """Recompute the value; pause once the window has been exceeded"""
        if self.state != EstimatorState.RUNNING:
            return self.value

        now = self.clock()
        self.value = self.value_at(now)

        if Decimal(str(now - self.anchor_time)) > self.window_seconds:
            self.state = EstimatorState.PAUSED
            logger.info(f"Estimate stale after {self.window_seconds}s, frozen at {self.value}")

        if self.on_tick is not None:
            self.on_tick(self.value)
        return self.value

    async def continue_(self, fetch: SnapshotFetch) -> bool:
        """Re-anchor from a fresh snapshot within the current context"""
        generation = self.generation
        base_value, rate = await fetch()
        return self.anchor(base_value, rate, generation=generation)

    async def switch_context(self, key: str, fetch: SnapshotFetch) -> bool:
        """
        Account or network switch, or a settling transaction.

        Invalidates any in-flight fetch, stops ticking and anchors at the
        value fetched for the new context.
        """
        self.generation += 1
        generation = self.generation
        self.context = key
        self._cancel_task()
        self.state = EstimatorState.PAUSED

        base_value, rate = await fetch()
        return self.anchor(base_value, rate, generation=generation)

    # ========================================================================
    # Tick task
    # ========================================================================

    def _restart_task(self):
        """Cancel the running tick task and start a new one"""
        self._cancel_task()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Driven manually through tick() outside an event loop
            return
        self._task = loop.create_task(self._run())

    def _cancel_task(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self):
        while self.state == EstimatorState.RUNNING:
            await asyncio.sleep(self.tick_interval_seconds)
            self.tick()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def stop(self):
        task = self._task
        self._cancel_task()
        self.state = EstimatorState.PAUSED
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
