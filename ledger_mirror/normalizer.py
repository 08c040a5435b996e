"""
Event Normalizer

Converts raw ledger notifications into canonical, strongly-typed event
variants. Feeds differ in shape (named or positional args, hex or integer
numbers, byte or string hashes); everything downstream sees only the
canonical form.
"""

from datetime import datetime, timezone
from typing import Dict, Any, List, Mapping, Sequence, Union

from pydantic import ValidationError

from .types import (
    EventType, LedgerEvent, DepositEvent, WithdrawEvent, BorrowEvent, RepayEvent,
    LiquidationEvent, MarketDataEvent, NormalizationError
)


_TYPE_ALIASES: Dict[str, EventType] = {
    "deposit": EventType.DEPOSIT,
    "withdraw": EventType.WITHDRAW,
    "withdrawal": EventType.WITHDRAW,
    "borrow": EventType.BORROW,
    "repay": EventType.REPAY,
    "liquidation": EventType.LIQUIDATION,
    "liquidate": EventType.LIQUIDATION,
    "marketdataupdated": EventType.MARKET_DATA,
    "marketdata": EventType.MARKET_DATA,
    "market_data": EventType.MARKET_DATA,
}

# Positional argument order as emitted by the lending contract
_ARG_ORDER: Dict[EventType, Sequence[str]] = {
    EventType.DEPOSIT: ("token", "user", "amount"),
    EventType.WITHDRAW: ("token", "user", "amount"),
    EventType.BORROW: ("token", "user", "amount"),
    EventType.REPAY: ("token", "user", "amount", "interest"),
    EventType.LIQUIDATION: ("liquidator", "user", "token", "amount", "collateralSeized"),
    EventType.MARKET_DATA: ("poolId", "timestamp", "totalLiquidity", "utilizationRate", "ipfsHash"),
}

_SIMPLE_VARIANTS = {
    EventType.DEPOSIT: DepositEvent,
    EventType.WITHDRAW: WithdrawEvent,
    EventType.BORROW: BorrowEvent,
}


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _to_hex(value: Union[str, bytes]) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = str(value)
    return value if value.startswith("0x") else "0x" + value


def affected_users(event: LedgerEvent) -> List[str]:
    """Distinct users touched by an event; the liquidated party comes first"""
    users = [u for u in (event.primary_user, event.secondary_user) if u]
    return list(dict.fromkeys(users))


class EventNormalizer:
    """Raw notification -> canonical event variant"""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    def event_type(self, raw: Mapping[str, Any]) -> EventType:
        name = raw.get("type") or raw.get("event")
        if isinstance(name, EventType):
            return name
        key = str(name or "").replace(" ", "").lower()
        if key.upper() in EventType.__members__:
            return EventType[key.upper()]
        if key not in _TYPE_ALIASES:
            raise NormalizationError(f"Unknown event type: {name!r}")
        return _TYPE_ALIASES[key]

    def _args(self, event_type: EventType, args: Any) -> Dict[str, Any]:
        if isinstance(args, Mapping):
            return dict(args)
        if isinstance(args, (list, tuple)):
            names = _ARG_ORDER[event_type]
            if len(args) < len(names) - 1:
                raise NormalizationError(f"Too few args for {event_type.value}: {len(args)}")
            return dict(zip(names, args))
        raise NormalizationError(f"Unsupported args for {event_type.value}: {type(args).__name__}")

    def _timestamp(self, value: Any) -> datetime:
        if isinstance(value, datetime):
            return value
        if value is None:
            return datetime.utcnow()
        return datetime.fromtimestamp(_to_int(value), tz=timezone.utc).replace(tzinfo=None)

    def normalize(self, raw: Mapping[str, Any]) -> LedgerEvent:
        """
        Decode a feed record {type, args, blockNumber, txHash, logIndex?, timestamp?}.

        Raises:
            NormalizationError: unknown type, missing fields or invalid values
        """
        event_type = self.event_type(raw)
        args = self._args(event_type, raw.get("args"))

        tx_hash = raw.get("txHash") or raw.get("transactionHash")
        block_number = raw.get("blockNumber")
        if tx_hash is None or block_number is None:
            raise NormalizationError(f"{event_type.value} notification missing txHash or blockNumber")

        try:
            timestamp = raw.get("timestamp")
            if timestamp is None and event_type == EventType.MARKET_DATA:
                timestamp = args.get("timestamp")

            common = {
                "tx_hash": _to_hex(tx_hash),
                "block_number": _to_int(block_number),
                "log_index": _to_int(raw.get("logIndex") or 0),
                "timestamp": self._timestamp(timestamp),
                "chain_id": self.chain_id,
            }

            if event_type in _SIMPLE_VARIANTS:
                return _SIMPLE_VARIANTS[event_type](
                    token=args["token"],
                    primary_user=args["user"],
                    amount=_to_int(args["amount"]),
                    **common
                )

            if event_type == EventType.REPAY:
                return RepayEvent(
                    token=args["token"],
                    primary_user=args["user"],
                    amount=_to_int(args["amount"]),
                    interest=_to_int(args.get("interest") or 0),
                    **common
                )

            if event_type == EventType.LIQUIDATION:
                return LiquidationEvent(
                    token=args["token"],
                    primary_user=args["user"],
                    secondary_user=args["liquidator"],
                    amount=_to_int(args["amount"]),
                    collateral_seized=_to_int(args.get("collateralSeized") or 0),
                    **common
                )

            return MarketDataEvent(
                pool_id=str(args.get("poolId") or "default"),
                amount=0,
                total_liquidity=_to_int(args.get("totalLiquidity") or 0),
                utilization_rate=_to_int(args.get("utilizationRate") or 0),
                ipfs_hash=args.get("ipfsHash") or None,
                **common
            )

        except KeyError as e:
            raise NormalizationError(f"{event_type.value} notification missing arg {e}") from e
        except (ValidationError, ValueError, TypeError) as e:
            raise NormalizationError(f"Invalid {event_type.value} notification: {e}") from e
