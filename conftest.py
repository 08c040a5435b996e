"""
Pytest configuration and shared fixtures for the ledger mirror

This module provides shared fixtures for:
- A simulated lending ledger (discrete interest accrual, liquidation bonus,
  failure injection, historical and live event feeds)
- SQLite-backed DatabaseManager and in-memory RedisManager
- Test configuration with fast retries
"""

import asyncio
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Sequence, Tuple

import pytest

from ledger_mirror.types import (
    EventType, LedgerPosition, TokenConfig, MarketTotals, GasMetrics,
    TransientLedgerError
)
from ledger_mirror.config import (
    MirrorConfig, ContractsConfig, DatabaseConfig, RedisConfig, IndexerConfig,
    RetryConfig, MonitoringConfig
)
from ledger_mirror.database import DatabaseManager, RedisManager
from ledger_mirror.ledger import Ledger, EVENT_NAMES
from ledger_mirror.estimator import AccrualModel
from ledger_mirror.logging_config import init_logging


TOKEN = "0x" + "aa" * 20
OTHER_TOKEN = "0x" + "ab" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CAROL = "0x" + "c4" * 20
LENDING_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ORACLE_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"

ETHER = 10 ** 18
MAX_UINT256 = 2 ** 256 - 1

# Annual rate that accrues 0.30864% simple interest per 5-minute interval
SCENARIO_RATE_BPS = 3244424

GAS_USED = {
    EventType.DEPOSIT: 60000,
    EventType.WITHDRAW: 55000,
    EventType.BORROW: 90000,
    EventType.REPAY: 70000,
    EventType.LIQUIDATION: 150000,
    EventType.MARKET_DATA: 40000,
}


def tx_hash_for(chain_id: int, nonce: int) -> str:
    return "0x" + f"{chain_id:08x}{nonce:056x}"


# ============================================================================
# Simulated Ledger
# ============================================================================

class SimulatedLedger(Ledger):
    """
    In-process lending ledger.

    Every state-changing call mines one block and emits one event. Interest
    accrues as simple interest over whole 5-minute intervals since the
    position's last update; health factor is deposits * threshold / debt
    with 4 decimals.
    """

    def __init__(
        self,
        chain_id: int = 31337,
        interest_rate_bps: int = 0,
        liquidation_threshold_bps: int = 8000,
        liquidation_penalty_bps: int = 1000,
        reward_rate_bps: int = 1000,
        gas_price: int = 2 * 10 ** 9
    ):
        self.chain_id = chain_id
        self.interest_rate_bps = interest_rate_bps
        self.liquidation_threshold_bps = liquidation_threshold_bps
        self.liquidation_penalty_bps = liquidation_penalty_bps
        self.reward_rate_bps = reward_rate_bps
        self.gas_price = gas_price
        self.accrual = AccrualModel()

        self.block = 0
        self.now = 1_700_000_000
        self.nonce = 0

        # (token, user) -> {"deposit", "principal", "last_update"}
        self.positions: Dict[Tuple[str, str], Dict[str, int]] = {}
        # user -> {"staked", "reward", "last_update"}
        self.stakes: Dict[str, Dict[str, int]] = {}
        self.prices: Dict[str, int] = {}
        self.unsupported_tokens: set = set()
        self.records: List[Dict[str, Any]] = []
        self.gas: Dict[str, GasMetrics] = {}

        self.calls: Counter = Counter()
        self._failures: Counter = Counter()
        self._subscribers: List[asyncio.Queue] = []

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail(self, method: str, times: int = 1):
        """Make the next `times` calls of a read method raise"""
        self._failures[method] += times

    async def _enter(self, method: str):
        self.calls[method] += 1
        if self._failures[method] > 0:
            self._failures[method] -= 1
            raise TransientLedgerError(f"{method}: simulated RPC failure")

    def advance_intervals(self, intervals: int):
        self.now += intervals * self.accrual.accrual_interval_seconds

    def record(self, tx_hash: str) -> Dict[str, Any]:
        return next(r for r in self.records if r["txHash"] == tx_hash)

    def close_feed(self):
        for queue in self._subscribers:
            queue.put_nowait(None)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _position(self, token: str, user: str) -> Dict[str, int]:
        return self.positions.setdefault(
            (token.lower(), user.lower()),
            {"deposit": 0, "principal": 0, "last_update": self.now}
        )

    def current_debt(self, token: str, user: str) -> int:
        position = self._position(token, user)
        interest = self.accrual.settled_interest(
            position["principal"], self.interest_rate_bps, self.now - position["last_update"]
        )
        return position["principal"] + interest

    def _settle(self, token: str, user: str) -> Dict[str, int]:
        position = self._position(token, user)
        position["principal"] = self.current_debt(token, user)
        position["last_update"] = self.now
        return position

    def pending_reward(self, user: str) -> int:
        stake = self.stakes.get(user.lower())
        if stake is None:
            return 0
        return stake["reward"] + self.accrual.settled_interest(
            stake["staked"], self.reward_rate_bps, self.now - stake["last_update"]
        )

    def health_factor_raw(self, user: str) -> int:
        user = user.lower()
        deposits = sum(p["deposit"] for (t, u), p in self.positions.items() if u == user)
        debt = sum(self.current_debt(t, u) for (t, u) in self.positions if u == user)
        if debt == 0:
            return MAX_UINT256
        return deposits * self.liquidation_threshold_bps // debt

    def _emit(self, event_type: EventType, args: Dict[str, Any]) -> str:
        self.block += 1
        self.nonce += 1
        tx_hash = tx_hash_for(self.chain_id, self.nonce)
        record = {
            "type": EVENT_NAMES[event_type],
            "args": args,
            "blockNumber": self.block,
            "txHash": tx_hash,
            "logIndex": 0,
            "timestamp": self.now,
        }
        self.records.append(record)
        self.gas[tx_hash] = GasMetrics(
            gas_used=GAS_USED[event_type], effective_gas_price=self.gas_price, block_number=self.block
        )
        for queue in self._subscribers:
            queue.put_nowait(dict(record))
        return tx_hash

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def deposit(self, user: str, amount: int, token: str = TOKEN) -> str:
        self._position(token, user)["deposit"] += amount
        return self._emit(EventType.DEPOSIT, {"token": token, "user": user, "amount": amount})

    def withdraw(self, user: str, amount: int, token: str = TOKEN) -> str:
        position = self._position(token, user)
        if amount > position["deposit"]:
            raise ValueError("Cannot withdraw more than deposited amount")
        position["deposit"] -= amount
        return self._emit(EventType.WITHDRAW, {"token": token, "user": user, "amount": amount})

    def borrow(self, user: str, amount: int, token: str = TOKEN) -> str:
        self._settle(token, user)["principal"] += amount
        return self._emit(EventType.BORROW, {"token": token, "user": user, "amount": amount})

    def repay(self, user: str, amount: int, token: str = TOKEN) -> str:
        position = self._position(token, user)
        accrued = self.current_debt(token, user) - position["principal"]
        position = self._settle(token, user)
        if amount > position["principal"]:
            raise ValueError("Cannot repay more than borrowed amount")
        position["principal"] -= amount
        return self._emit(EventType.REPAY, {
            "token": token, "user": user, "amount": amount, "interest": min(accrued, amount)
        })

    def liquidate(self, liquidator: str, user: str, amount: int, token: str = TOKEN) -> str:
        if self.health_factor_raw(user) >= 10000:
            raise ValueError("Position is healthy")
        position = self._settle(token, user)
        if amount > position["principal"]:
            raise ValueError("Cannot liquidate more than the debt")
        seized = amount * (10000 + self.liquidation_penalty_bps) // 10000
        position["principal"] -= amount
        position["deposit"] -= seized
        self._position(token, liquidator)["deposit"] += seized
        return self._emit(EventType.LIQUIDATION, {
            "liquidator": liquidator, "user": user, "token": token,
            "amount": amount, "collateralSeized": seized
        })

    def stake(self, user: str, amount: int):
        """Stake into the pool; the pool emits nothing on the lending feed"""
        reward = self.pending_reward(user)
        stake = self.stakes.setdefault(user.lower(), {"staked": 0, "reward": 0, "last_update": self.now})
        stake["staked"] += amount
        stake["reward"] = reward
        stake["last_update"] = self.now
        self.block += 1

    def publish_market_data(self, pool_id: str, total_liquidity: int, utilization_bps: int) -> str:
        return self._emit(EventType.MARKET_DATA, {
            "poolId": pool_id, "timestamp": self.now, "totalLiquidity": total_liquidity,
            "utilizationRate": utilization_bps, "ipfsHash": "QmSimulated"
        })

    # ------------------------------------------------------------------
    # Ledger capability
    # ------------------------------------------------------------------

    async def read_position(self, user: str, token: str) -> LedgerPosition:
        await self._enter("read_position")
        position = self._position(token, user)
        return LedgerPosition(
            deposit_amount=position["deposit"],
            borrow_amount=self.current_debt(token, user),
            last_update_time=position["last_update"]
        )

    async def read_health_factor(self, user: str) -> int:
        await self._enter("read_health_factor")
        return self.health_factor_raw(user)

    async def read_token_config(self, token: str) -> TokenConfig:
        await self._enter("read_token_config")
        return TokenConfig(
            interest_rate_bps=self.interest_rate_bps,
            liquidation_penalty_bps=self.liquidation_penalty_bps,
            is_supported=token.lower() not in self.unsupported_tokens
        )

    async def read_price(self, token: str) -> int:
        await self._enter("read_price")
        return self.prices.get(token.lower(), ETHER)

    async def read_market_totals(self, token: str) -> MarketTotals:
        await self._enter("read_market_totals")
        token = token.lower()
        return MarketTotals(
            total_deposits=sum(p["deposit"] for (t, _), p in self.positions.items() if t == token),
            total_borrows=sum(self.current_debt(t, u) for (t, u) in self.positions if t == token)
        )

    async def read_borrow_balance(self, user: str, token: str) -> Tuple[int, int]:
        await self._enter("read_borrow_balance")
        return self._position(token, user)["principal"], self.current_debt(token, user)

    async def read_stake_info(self, user: str) -> Tuple[int, int]:
        await self._enter("read_stake_info")
        stake = self.stakes.get(user.lower(), {"staked": 0})
        return stake["staked"], self.pending_reward(user)

    async def read_transaction_costs(self, tx_hash: str) -> GasMetrics:
        await self._enter("read_transaction_costs")
        if tx_hash not in self.gas:
            raise TransientLedgerError(f"No receipt for {tx_hash}")
        return self.gas[tx_hash]

    async def current_block(self) -> int:
        await self._enter("current_block")
        return self.block

    async def read_events(
        self,
        event_types: Sequence[EventType],
        from_block: int,
        to_block: Optional[int] = None,
        token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        await self._enter("read_events")
        names = {EVENT_NAMES[t] for t in event_types}
        head = self.block if to_block is None else to_block
        return [
            dict(r) for r in self.records
            if r["type"] in names
            and from_block <= r["blockNumber"] <= head
            and (token is None or str(r["args"].get("token", "")).lower() == token.lower())
        ]

    async def subscribe_events(self, event_types: Sequence[EventType], from_block: int):
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            for record in await self.read_events(event_types, from_block):
                yield record
            names = {EVENT_NAMES[t] for t in event_types}
            while True:
                record = await queue.get()
                if record is None:
                    return
                if record["type"] in names:
                    yield record
        finally:
            self._subscribers.remove(queue)


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    os.environ['ENVIRONMENT'] = 'test'


def pytest_collection_modifyitems(config, items):
    """Add markers based on test module"""
    for item in items:
        if "test_dedup_gate" in item.nodeid:
            item.add_marker(pytest.mark.gate)
        elif "test_reconciler" in item.nodeid:
            item.add_marker(pytest.mark.reconciler)
        elif "test_writer" in item.nodeid:
            item.add_marker(pytest.mark.writer)
        elif "test_liquidation_scanner" in item.nodeid:
            item.add_marker(pytest.mark.scanner)
        elif "test_estimator" in item.nodeid:
            item.add_marker(pytest.mark.estimator)

        if "scenario" in item.nodeid or "test_indexer" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def test_logging(tmp_path):
    """Route log files to a per-test directory"""
    return init_logging(log_dir=tmp_path / "logs", log_level="DEBUG")


@pytest.fixture
def mirror_config(tmp_path) -> MirrorConfig:
    """Test configuration: in-memory stores, fast retries, short debounce"""
    return MirrorConfig(
        contracts=ContractsConfig(
            lending_protocol=LENDING_ADDRESS,
            price_oracle=ORACLE_ADDRESS,
            default_market=TOKEN
        ),
        database=DatabaseConfig(url="sqlite://"),
        redis=RedisConfig(enabled=False),
        indexer=IndexerConfig(debounce_ms=50),
        retry=RetryConfig(attempts=3, base_backoff_seconds=0.01, max_backoff_seconds=0.05),
        monitoring=MonitoringConfig(log_dir=str(tmp_path / "logs"))
    )


@pytest.fixture
def db_manager(mirror_config):
    """SQLite in-memory store with all tables"""
    manager = DatabaseManager(mirror_config.database)
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def redis_manager():
    """Redis manager in in-memory fallback mode"""
    return RedisManager(RedisConfig(enabled=False))


@pytest.fixture
def ledger():
    return SimulatedLedger()


def block_time(ledger: SimulatedLedger) -> datetime:
    return datetime.fromtimestamp(ledger.now, tz=timezone.utc).replace(tzinfo=None)
