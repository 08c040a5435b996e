"""
Ledger Access Layer

The lending ledger as a capability set: position, health factor, token
configuration, price, market-total and staking reads, historical event queries and a
live event subscription. Web3Ledger implements it over JSON-RPC (HTTP for
reads, WebSocket eth_subscribe for live logs) with reconnection and
primary/backup failover.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional, Dict, Any, List, Callable, Awaitable, AsyncIterator, Sequence, Tuple

from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import LogTopicError, MismatchedABI
from websockets import connect
from websockets.exceptions import ConnectionClosed

from .types import (
    EventType, LedgerPosition, TokenConfig, MarketTotals, GasMetrics,
    TransientLedgerError, DataUnavailable
)
from .config import MirrorConfig

logger = logging.getLogger(__name__)

# Recent block timestamps kept for decoded records
BLOCK_TIMESTAMP_CACHE_SIZE = 1024


# ============================================================================
# Contract ABIs
# ============================================================================

def _event(name: str, inputs: List[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [{"name": n, "type": t, "indexed": i} for n, t, i in inputs],
    }


def _view(name: str, inputs: List[Tuple[str, str]], outputs: List[Tuple[str, str]]) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


LENDING_PROTOCOL_ABI = [
    _event("Deposit", [("token", "address", True), ("user", "address", True), ("amount", "uint256", False)]),
    _event("Withdraw", [("token", "address", True), ("user", "address", True), ("amount", "uint256", False)]),
    _event("Borrow", [("token", "address", True), ("user", "address", True), ("amount", "uint256", False)]),
    _event("Repay", [
        ("token", "address", True), ("user", "address", True),
        ("amount", "uint256", False), ("interest", "uint256", False),
    ]),
    _event("Liquidation", [
        ("liquidator", "address", True), ("user", "address", True), ("token", "address", True),
        ("amount", "uint256", False), ("collateralSeized", "uint256", False),
    ]),
    _event("MarketDataUpdated", [
        ("poolId", "string", False), ("timestamp", "uint256", False),
        ("totalLiquidity", "uint256", False), ("utilizationRate", "uint256", False),
        ("ipfsHash", "string", False),
    ]),
    _view("userPositions", [("token", "address"), ("user", "address")],
          [("depositAmount", "uint256"), ("borrowAmount", "uint256"), ("lastUpdateTime", "uint256")]),
    _view("getLiquidationHealthFactor", [("user", "address")], [("", "uint256")]),
    _view("tokenConfigs", [("token", "address")],
          [("isSupported", "bool"), ("interestRate", "uint256"), ("liquidationPenalty", "uint256")]),
    _view("totalDeposits", [("token", "address")], [("", "uint256")]),
    _view("totalBorrows", [("token", "address")], [("", "uint256")]),
    _view("getCurrentBorrowAmount", [("token", "address"), ("user", "address")], [("", "uint256")]),
]

PRICE_ORACLE_ABI = [
    _view("getPrice", [("token", "address")], [("", "uint256")]),
]

STAKING_POOL_ABI = [
    _view("getStakeInfo", [("account", "address")], [("stakedAmount", "uint256"), ("pendingReward", "uint256")]),
]

# Contract event name per canonical event type
EVENT_NAMES: Dict[EventType, str] = {
    EventType.DEPOSIT: "Deposit",
    EventType.WITHDRAW: "Withdraw",
    EventType.BORROW: "Borrow",
    EventType.REPAY: "Repay",
    EventType.LIQUIDATION: "Liquidation",
    EventType.MARKET_DATA: "MarketDataUpdated",
}

# Events whose first indexed argument is the token; filterable by topic
_TOKEN_FIRST = {EventType.DEPOSIT, EventType.WITHDRAW, EventType.BORROW, EventType.REPAY}


def event_topic(name: str) -> str:
    """Compute topic0 for a lending protocol event"""
    abi = next(item for item in LENDING_PROTOCOL_ABI if item["type"] == "event" and item["name"] == name)
    signature = f"{name}({','.join(i['type'] for i in abi['inputs'])})"
    return Web3.to_hex(Web3.keccak(text=signature))


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic"""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


# ============================================================================
# Retry Helper
# ============================================================================

async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    base_backoff: float = 0.5,
    max_backoff: float = 8.0,
    label: str = "ledger read",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> Any:
    """
    Call an async ledger read with exponential backoff.

    Raises TransientLedgerError once every attempt has failed.
    """
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            if attempt + 1 >= attempts:
                break
            backoff = min(base_backoff * (2 ** attempt), max_backoff)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{attempts}): {e}; retrying in {backoff:.1f}s"
            )
            await sleep(backoff)

    raise TransientLedgerError(f"{label} failed after {attempts} attempts: {last_error}") from last_error


# ============================================================================
# Ledger Capability
# ============================================================================

class Ledger(ABC):
    """Read and subscription capability of the lending ledger"""

    @abstractmethod
    async def read_position(self, user: str, token: str) -> LedgerPosition:
        ...

    @abstractmethod
    async def read_health_factor(self, user: str) -> int:
        """Fixed-point health factor, scaled by 10**health_factor_decimals"""

    @abstractmethod
    async def read_token_config(self, token: str) -> TokenConfig:
        ...

    @abstractmethod
    async def read_price(self, token: str) -> int:
        """Oracle price, 1e18 fixed-point"""

    @abstractmethod
    async def read_market_totals(self, token: str) -> MarketTotals:
        ...

    @abstractmethod
    async def read_borrow_balance(self, user: str, token: str) -> Tuple[int, int]:
        """(principal, current debt including accrued interest)"""

    @abstractmethod
    async def read_stake_info(self, user: str) -> Tuple[int, int]:
        """(staked amount, pending reward)"""

    @abstractmethod
    async def read_transaction_costs(self, tx_hash: str) -> GasMetrics:
        ...

    @abstractmethod
    async def current_block(self) -> int:
        ...

    @abstractmethod
    async def read_events(
        self,
        event_types: Sequence[EventType],
        from_block: int,
        to_block: Optional[int] = None,
        token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Historical feed records {type, args, blockNumber, txHash, logIndex, timestamp}"""

    @abstractmethod
    def subscribe_events(
        self,
        event_types: Sequence[EventType],
        from_block: int
    ) -> AsyncIterator[Dict[str, Any]]:
        """Backfill from from_block, then stream live feed records"""


# ============================================================================
# WebSocket Log Subscription
# ============================================================================

class LogSubscriptionManager:
    """
    Feeds contract logs from an eth_subscribe("logs") WebSocket.

    Endpoints are tried in order (primary, then backup). Each endpoint gets
    ``max_attempts`` consecutive reconnects with capped exponential backoff
    before the next one takes over; when every endpoint is exhausted,
    run() raises TransientLedgerError. Removed (reorged) logs are dropped.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        log_filter: Dict[str, Any],
        on_log: Callable[[Dict[str, Any]], Awaitable[None]],
        max_attempts: int = 10,
        base_backoff: float = 1.0,
        max_backoff: float = 60.0
    ):
        self.endpoints = [url for url in endpoints if url]
        self.log_filter = log_filter
        self.on_log = on_log
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff

        self.endpoint_index = 0
        self.failures = 0
        self.subscription_id: Optional[str] = None
        self.last_message_at: Optional[float] = None
        self._running = False
        self._ws = None

    @property
    def url(self) -> str:
        return self.endpoints[self.endpoint_index]

    async def run(self):
        """Stream logs until stop(); reconnects and fails over on errors"""
        if not self.endpoints:
            raise TransientLedgerError("No WebSocket endpoint configured")

        self._running = True
        while self._running:
            try:
                async with connect(self.url, ping_interval=20, ping_timeout=10) as ws:
                    self._ws = ws
                    await self._subscribe(ws)
                    self.failures = 0
                    async for message in ws:
                        await self._dispatch(message)
                logger.warning(f"Log subscription on {self.url} closed by peer")
            except ConnectionClosed as e:
                logger.warning(f"Log subscription on {self.url} dropped: {e}")
            except (OSError, asyncio.TimeoutError, TransientLedgerError) as e:
                logger.error(f"Log subscription on {self.url} failed: {e}")
            finally:
                self._ws = None
                self.subscription_id = None

            if self._running:
                await self._backoff()

    async def _subscribe(self, ws):
        await ws.send(json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", self.log_filter]
        }))
        reply = json.loads(await ws.recv())
        if "error" in reply:
            raise TransientLedgerError(f"eth_subscribe rejected: {reply['error']}")
        self.subscription_id = reply.get("result")
        logger.info(f"Subscribed to ledger logs on {self.url} ({self.subscription_id})")

    async def _dispatch(self, message: str):
        self.last_message_at = time.monotonic()
        try:
            payload = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"Unparseable subscription message: {e}")
            return

        if payload.get("method") != "eth_subscription":
            return
        params = payload.get("params") or {}
        if self.subscription_id and params.get("subscription") != self.subscription_id:
            return

        log = params.get("result")
        if not isinstance(log, dict):
            return
        if log.get("removed"):
            logger.debug(f"Ignoring removed log {log.get('transactionHash')}")
            return
        await self.on_log(log)

    async def _backoff(self):
        self.failures += 1
        if self.failures > self.max_attempts:
            if self.endpoint_index + 1 >= len(self.endpoints):
                self._running = False
                raise TransientLedgerError(f"All {len(self.endpoints)} WebSocket endpoints failed")
            self.endpoint_index += 1
            self.failures = 1
            logger.warning(f"Failing over to WebSocket endpoint {self.url}")

        delay = min(self.base_backoff * 2 ** (self.failures - 1), self.max_backoff)
        logger.info(f"Reconnecting to {self.url} in {delay:.1f}s (attempt {self.failures})")
        await asyncio.sleep(delay)

    async def stop(self):
        self._running = False
        if self._ws is not None:
            await self._ws.close()


# ============================================================================
# Web3 Ledger
# ============================================================================

class Web3Ledger(Ledger):
    """Ledger capability over web3.py JSON-RPC"""

    def __init__(self, config: MirrorConfig):
        self.config = config
        request_kwargs = {"timeout": config.rpc.request_timeout_seconds}

        self.primary_web3 = Web3(Web3.HTTPProvider(config.rpc.primary_http, request_kwargs=request_kwargs))
        self.backup_web3 = (
            Web3(Web3.HTTPProvider(config.rpc.backup_http, request_kwargs=request_kwargs))
            if config.rpc.backup_http else None
        )
        self.current_web3 = self.primary_web3
        self._bind_contracts()

        self._topics: Dict[str, str] = {event_topic(name): name for name in EVENT_NAMES.values()}
        self._block_timestamps: "OrderedDict[int, int]" = OrderedDict()

        logger.info("Web3Ledger initialized")

    def _bind_contracts(self):
        w3 = self.current_web3
        self.lending = w3.eth.contract(
            address=Web3.to_checksum_address(self.config.contracts.lending_protocol),
            abi=LENDING_PROTOCOL_ABI
        )
        self.oracle = w3.eth.contract(
            address=Web3.to_checksum_address(self.config.contracts.price_oracle),
            abi=PRICE_ORACLE_ABI
        )
        self.staking = None
        if self.config.contracts.staking_pool:
            self.staking = w3.eth.contract(
                address=Web3.to_checksum_address(self.config.contracts.staking_pool),
                abi=STAKING_POOL_ABI
            )

    def _failover(self, error: Exception):
        """Switch reads to the backup provider after a failure"""
        if self.backup_web3 is None:
            return
        if self.current_web3 is self.primary_web3:
            logger.warning(f"Primary RPC failed ({error}), failing over to backup")
            self.current_web3 = self.backup_web3
        else:
            logger.warning(f"Backup RPC failed ({error}), returning to primary")
            self.current_web3 = self.primary_web3
        self._bind_contracts()

    async def _read(self, label: str, fn: Callable[[], Any]) -> Any:
        """Run a blocking web3 call off the event loop"""
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            self._failover(e)
            raise TransientLedgerError(f"{label} failed: {e}") from e

    async def read_position(self, user: str, token: str) -> LedgerPosition:
        def _call():
            deposit, borrow, last_update = self.lending.functions.userPositions(
                Web3.to_checksum_address(token), Web3.to_checksum_address(user)
            ).call()
            return LedgerPosition(deposit_amount=deposit, borrow_amount=borrow, last_update_time=last_update)
        return await self._read("userPositions", _call)

    async def read_health_factor(self, user: str) -> int:
        return await self._read(
            "getLiquidationHealthFactor",
            lambda: self.lending.functions.getLiquidationHealthFactor(Web3.to_checksum_address(user)).call()
        )

    async def read_token_config(self, token: str) -> TokenConfig:
        def _call():
            is_supported, interest_rate, liquidation_penalty = self.lending.functions.tokenConfigs(
                Web3.to_checksum_address(token)
            ).call()
            return TokenConfig(
                interest_rate_bps=interest_rate,
                liquidation_penalty_bps=liquidation_penalty,
                is_supported=is_supported
            )
        return await self._read("tokenConfigs", _call)

    async def read_price(self, token: str) -> int:
        return await self._read(
            "getPrice",
            lambda: self.oracle.functions.getPrice(Web3.to_checksum_address(token)).call()
        )

    async def read_market_totals(self, token: str) -> MarketTotals:
        def _call():
            address = Web3.to_checksum_address(token)
            return MarketTotals(
                total_deposits=self.lending.functions.totalDeposits(address).call(),
                total_borrows=self.lending.functions.totalBorrows(address).call()
            )
        return await self._read("marketTotals", _call)

    async def read_borrow_balance(self, user: str, token: str) -> Tuple[int, int]:
        def _call():
            token_address = Web3.to_checksum_address(token)
            user_address = Web3.to_checksum_address(user)
            _, principal, _ = self.lending.functions.userPositions(token_address, user_address).call()
            current = self.lending.functions.getCurrentBorrowAmount(token_address, user_address).call()
            return principal, current
        return await self._read("getCurrentBorrowAmount", _call)

    async def read_stake_info(self, user: str) -> Tuple[int, int]:
        if self.staking is None:
            raise DataUnavailable("No staking pool configured")
        staked, pending = await self._read(
            "getStakeInfo",
            lambda: self.staking.functions.getStakeInfo(Web3.to_checksum_address(user)).call()
        )
        return staked, pending

    async def read_transaction_costs(self, tx_hash: str) -> GasMetrics:
        def _call():
            receipt = self.current_web3.eth.get_transaction_receipt(tx_hash)
            gas_price = receipt.get('effectiveGasPrice')
            if gas_price is None:
                gas_price = self.current_web3.eth.get_transaction(tx_hash)['gasPrice']
            return GasMetrics(
                gas_used=receipt['gasUsed'],
                effective_gas_price=gas_price,
                block_number=receipt['blockNumber']
            )
        return await self._read("getTransactionReceipt", _call)

    async def current_block(self) -> int:
        return await self._read("blockNumber", lambda: self.current_web3.eth.block_number)

    async def _block_timestamp(self, block_number: int) -> Optional[int]:
        if block_number in self._block_timestamps:
            self._block_timestamps.move_to_end(block_number)
            return self._block_timestamps[block_number]

        try:
            block = await self._read("getBlock", lambda: self.current_web3.eth.get_block(block_number))
        except TransientLedgerError as e:
            logger.debug(f"Block timestamp unavailable for {block_number}: {e}")
            return None

        self._block_timestamps[block_number] = block['timestamp']
        while len(self._block_timestamps) > BLOCK_TIMESTAMP_CACHE_SIZE:
            self._block_timestamps.popitem(last=False)
        return block['timestamp']

    def decode_log(self, log: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Decode a raw log (RPC or WebSocket form) into a feed record"""
        topics = log.get('topics') or []
        if not topics:
            return None

        name = self._topics.get(Web3.to_hex(HexBytes(topics[0])))
        if name is None:
            return None

        def to_int(value):
            return int(value, 16) if isinstance(value, str) else (value or 0)

        entry = {
            'address': Web3.to_checksum_address(log['address']),
            'topics': [HexBytes(t) for t in topics],
            'data': HexBytes(log.get('data') or b''),
            'blockNumber': to_int(log.get('blockNumber')),
            'blockHash': HexBytes(log.get('blockHash') or b'\x00' * 32),
            'transactionHash': HexBytes(log['transactionHash']),
            'transactionIndex': to_int(log.get('transactionIndex')),
            'logIndex': to_int(log.get('logIndex')),
        }
        try:
            decoded = self.lending.events[name]().process_log(entry)
        except (MismatchedABI, LogTopicError, DecodingError) as e:
            logger.warning(f"Skipping undecodable {name} log in tx {Web3.to_hex(entry['transactionHash'])}: {e}")
            return None

        return {
            'type': decoded['event'],
            'args': dict(decoded['args']),
            'blockNumber': decoded['blockNumber'],
            'txHash': Web3.to_hex(decoded['transactionHash']),
            'logIndex': decoded['logIndex'],
        }

    def _log_filter(self, event_types: Sequence[EventType], token: Optional[str]) -> Dict[str, Any]:
        topics: List[Any] = [[event_topic(EVENT_NAMES[t]) for t in event_types]]
        if token and all(t in _TOKEN_FIRST for t in event_types):
            topics.append(address_topic(token))
        return {"address": self.lending.address, "topics": topics}

    async def read_events(
        self,
        event_types: Sequence[EventType],
        from_block: int,
        to_block: Optional[int] = None,
        token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        head = to_block if to_block is not None else await self.current_block()
        log_filter = self._log_filter(event_types, token)
        chunk = self.config.indexer.backfill_chunk_blocks
        records: List[Dict[str, Any]] = []

        start = max(from_block, 0)
        while start <= head:
            end = min(start + chunk - 1, head)
            query = {**log_filter, "fromBlock": start, "toBlock": end}
            logs = await self._read("eth_getLogs", lambda q=query: self.current_web3.eth.get_logs(q))

            for log in logs:
                record = self.decode_log(log)
                if record is None:
                    continue
                if token and str(record['args'].get('token', '')).lower() != token.lower():
                    continue
                record['timestamp'] = await self._block_timestamp(record['blockNumber'])
                records.append(record)

            start = end + 1

        records.sort(key=lambda r: (r['blockNumber'], r['logIndex']))
        return records

    async def subscribe_events(
        self,
        event_types: Sequence[EventType],
        from_block: int
    ) -> AsyncIterator[Dict[str, Any]]:
        queue: asyncio.Queue = asyncio.Queue()
        manager = LogSubscriptionManager(
            endpoints=[self.config.rpc.primary_ws, self.config.rpc.backup_ws],
            log_filter=self._log_filter(event_types, None),
            on_log=queue.put
        )
        # Subscribe before backfilling so no log falls between the two
        listener = asyncio.create_task(manager.run())

        try:
            for record in await self.read_events(event_types, from_block):
                yield record

            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, listener}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    # Every endpoint failed; surface the error to the caller
                    listener.result()
                    return

                record = self.decode_log(getter.result())
                if record is not None:
                    record['timestamp'] = await self._block_timestamp(record['blockNumber'])
                    yield record
        finally:
            await manager.stop()
            listener.cancel()
