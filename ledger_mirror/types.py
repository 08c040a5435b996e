"""
Core Data Models and Types

Defines the canonical event variants, ledger read models, derived position
models and the error taxonomy shared by every component.
"""

from enum import Enum
from typing import Optional, Dict, Any, List, Literal, Union, Annotated
from datetime import datetime
from decimal import Decimal
from dataclasses import dataclass, field
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Enums
# ============================================================================

class EventType(str, Enum):
    """Ledger event kinds"""
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    BORROW = "BORROW"
    REPAY = "REPAY"
    LIQUIDATION = "LIQUIDATION"
    MARKET_DATA = "MARKET_DATA"


class EventStatus(str, Enum):
    """Event row processing status"""
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class PositionStatus(str, Enum):
    """Materialized position status"""
    ACTIVE = "ACTIVE"
    LIQUIDATED = "LIQUIDATED"
    CLOSED = "CLOSED"


class AdmitResult(str, Enum):
    """Outcome of a gate admission"""
    ADMIT = "ADMIT"
    DUPLICATE = "DUPLICATE"
    STALE = "STALE"


class Provenance(str, Enum):
    """Where a reconciled field came from"""
    LEDGER = "ledger"        # Direct ledger read
    ORACLE = "oracle"        # Direct price oracle read
    FALLBACK = "fallback"    # Configured fallback value
    PREVIOUS = "previous"    # Last stored value
    DEFAULT = "default"      # Conservative default, no prior value


class EstimatorState(str, Enum):
    """Real-time estimator state"""
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"


class ActivityRole(str, Enum):
    """Role of a user in an activity row"""
    ACTOR = "ACTOR"
    LIQUIDATOR = "LIQUIDATOR"
    LIQUIDATED = "LIQUIDATED"


class WriteStatus(str, Enum):
    """Outcome of a transactional write"""
    COMMITTED = "COMMITTED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


class FailureCategory(str, Enum):
    """Human-readable failure categories shown to users"""
    INSUFFICIENT_COLLATERAL = "Insufficient collateral for this action"
    POSITION_UNHEALTHY = "Position is not eligible for this action"
    AMOUNT_EXCEEDS_BALANCE = "Amount exceeds available balance"
    USER_CANCELLED = "Transaction was cancelled"
    UNKNOWN = "Transaction failed"


class ViolationReason(str, Enum):
    """Reason codes for rejected actions"""
    SELF_LIQUIDATION = "SELF_LIQUIDATION"
    POSITION_HEALTHY = "POSITION_HEALTHY"
    NOTHING_TO_LIQUIDATE = "NOTHING_TO_LIQUIDATE"
    LIQUIDATION_EXCEEDS_CLOSE_FACTOR = "LIQUIDATION_EXCEEDS_CLOSE_FACTOR"
    WITHDRAW_EXCEEDS_DEPOSIT = "WITHDRAW_EXCEEDS_DEPOSIT"
    BORROW_EXCEEDS_COLLATERAL = "BORROW_EXCEEDS_COLLATERAL"
    REPAY_EXCEEDS_DEBT = "REPAY_EXCEEDS_DEBT"
    NON_POSITIVE_AMOUNT = "NON_POSITIVE_AMOUNT"
    UNSUPPORTED_TOKEN = "UNSUPPORTED_TOKEN"
    NO_COLLATERAL = "NO_COLLATERAL"
    OUTSTANDING_DEBT = "OUTSTANDING_DEBT"

    @property
    def category(self) -> FailureCategory:
        return _REASON_CATEGORIES.get(self, FailureCategory.UNKNOWN)


_REASON_CATEGORIES = {
    ViolationReason.SELF_LIQUIDATION: FailureCategory.POSITION_UNHEALTHY,
    ViolationReason.POSITION_HEALTHY: FailureCategory.POSITION_UNHEALTHY,
    ViolationReason.NOTHING_TO_LIQUIDATE: FailureCategory.POSITION_UNHEALTHY,
    ViolationReason.LIQUIDATION_EXCEEDS_CLOSE_FACTOR: FailureCategory.AMOUNT_EXCEEDS_BALANCE,
    ViolationReason.WITHDRAW_EXCEEDS_DEPOSIT: FailureCategory.AMOUNT_EXCEEDS_BALANCE,
    ViolationReason.BORROW_EXCEEDS_COLLATERAL: FailureCategory.INSUFFICIENT_COLLATERAL,
    ViolationReason.REPAY_EXCEEDS_DEBT: FailureCategory.AMOUNT_EXCEEDS_BALANCE,
    ViolationReason.NO_COLLATERAL: FailureCategory.INSUFFICIENT_COLLATERAL,
    ViolationReason.OUTSTANDING_DEBT: FailureCategory.INSUFFICIENT_COLLATERAL,
    ViolationReason.UNSUPPORTED_TOKEN: FailureCategory.POSITION_UNHEALTHY,
}


# ============================================================================
# Error Types
# ============================================================================

class LedgerMirrorError(Exception):
    """Base exception for all ledger mirror errors"""
    pass


class ConfigurationError(LedgerMirrorError):
    """Configuration validation or loading error"""
    pass


class TransientLedgerError(LedgerMirrorError):
    """Ledger RPC or read failure, safe to retry"""
    pass


class NormalizationError(LedgerMirrorError):
    """Raw notification could not be decoded into a canonical event"""
    pass


class DuplicateEvent(LedgerMirrorError):
    """Transaction already processed; a normal idempotency outcome"""
    pass


class StaleEvent(LedgerMirrorError):
    """Event at or below the stream watermark"""
    pass


class PersistenceFailure(LedgerMirrorError):
    """Store transaction failed and was rolled back"""
    pass


class DataUnavailable(LedgerMirrorError):
    """Requested aggregate or record does not exist"""
    pass


class InvariantViolation(LedgerMirrorError):
    """Action rejected before any write, with a reason code"""

    def __init__(self, reason: ViolationReason, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason.value)

    @property
    def category(self) -> FailureCategory:
        return self.reason.category


def humanize_error(error: Union[BaseException, str]) -> FailureCategory:
    """
    Translate an error or raw ledger revert message into a user-facing category.

    Raw ledger strings are never shown to users; they are matched against the
    revert messages the lending contract emits.
    """
    if isinstance(error, InvariantViolation):
        return error.category

    message = str(error).lower()
    if "user rejected" in message or "user denied" in message or "denied transaction" in message:
        return FailureCategory.USER_CANCELLED
    if "insufficient collateral" in message or "cannot borrow more" in message:
        return FailureCategory.INSUFFICIENT_COLLATERAL
    if "unhealthy position" in message or "position is healthy" in message:
        return FailureCategory.POSITION_UNHEALTHY
    if "cannot withdraw more than" in message or "cannot repay more than" in message:
        return FailureCategory.AMOUNT_EXCEEDS_BALANCE
    if "insufficient balance" in message or "exceeds balance" in message:
        return FailureCategory.AMOUNT_EXCEEDS_BALANCE
    return FailureCategory.UNKNOWN


# ============================================================================
# Canonical Event Variants
# ============================================================================

def _normalize_address(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not isinstance(v, str) or not v.startswith('0x') or len(v) != 42:
        raise ValueError(f"Invalid Ethereum address: {v}")
    return v.lower()


class LedgerEventBase(BaseModel):
    """Fields shared by every canonical ledger event"""
    model_config = ConfigDict(frozen=True)

    token: str = Field(..., description="Token (market) address, lower-cased")
    primary_user: str = Field(..., description="Main affected user, lower-cased")
    secondary_user: Optional[str] = Field(default=None, description="Counterparty, if any")
    amount: int = Field(..., ge=0, description="Amount in wei")
    block_number: int = Field(..., ge=0)
    tx_hash: str = Field(..., description="Transaction hash, the idempotency key")
    log_index: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    chain_id: int = Field(default=31337)

    @field_validator('token', 'primary_user', 'secondary_user')
    @classmethod
    def validate_address(cls, v):
        """Validate Ethereum address format"""
        return _normalize_address(v)

    @field_validator('tx_hash')
    @classmethod
    def validate_tx_hash(cls, v):
        if not v.startswith('0x') or len(v) != 66:
            raise ValueError(f"Invalid transaction hash: {v}")
        return v.lower()

    @property
    def market(self) -> str:
        return self.token

    def payload(self) -> Dict[str, Any]:
        """Opaque payload stored on the Event row"""
        data = self.model_dump(
            mode="json",
            exclude={'event_type', 'tx_hash', 'block_number', 'timestamp', 'chain_id'}
        )
        data['amount'] = str(self.amount)
        return data


class DepositEvent(LedgerEventBase):
    event_type: Literal[EventType.DEPOSIT] = EventType.DEPOSIT


class WithdrawEvent(LedgerEventBase):
    event_type: Literal[EventType.WITHDRAW] = EventType.WITHDRAW


class BorrowEvent(LedgerEventBase):
    event_type: Literal[EventType.BORROW] = EventType.BORROW


class RepayEvent(LedgerEventBase):
    event_type: Literal[EventType.REPAY] = EventType.REPAY
    interest: int = Field(default=0, ge=0, description="Interest portion of the repayment")

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['interest'] = str(self.interest)
        return data


class LiquidationEvent(LedgerEventBase):
    """Liquidation: primary_user is the liquidated party, secondary_user the liquidator"""
    event_type: Literal[EventType.LIQUIDATION] = EventType.LIQUIDATION
    collateral_seized: int = Field(default=0, ge=0)

    @property
    def liquidator(self) -> Optional[str]:
        return self.secondary_user

    @property
    def liquidated(self) -> str:
        return self.primary_user

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['collateral_seized'] = str(self.collateral_seized)
        return data


class MarketDataEvent(LedgerEventBase):
    """Market data update; carries no user"""
    event_type: Literal[EventType.MARKET_DATA] = EventType.MARKET_DATA
    primary_user: Optional[str] = None
    token: Optional[str] = None
    pool_id: str = Field(default="default")
    total_liquidity: int = Field(default=0, ge=0)
    utilization_rate: int = Field(default=0, ge=0, description="Utilization in basis points")
    ipfs_hash: Optional[str] = None

    @property
    def market(self) -> str:
        return self.token or self.pool_id

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['total_liquidity'] = str(self.total_liquidity)
        return data


LedgerEvent = Annotated[
    Union[DepositEvent, WithdrawEvent, BorrowEvent, RepayEvent, LiquidationEvent, MarketDataEvent],
    Field(discriminator="event_type")
]


# ============================================================================
# Ledger Read Models
# ============================================================================

class LedgerPosition(BaseModel):
    """Raw position as stored by the lending contract"""
    deposit_amount: int = Field(..., ge=0)
    borrow_amount: int = Field(..., ge=0)
    last_update_time: int = Field(default=0, description="Unix seconds of last accrual")


class TokenConfig(BaseModel):
    """Per-token interest and liquidation configuration"""
    interest_rate_bps: int = Field(..., ge=0, description="Annual interest rate in basis points")
    liquidation_penalty_bps: int = Field(default=1000, ge=0)
    is_supported: bool = Field(default=True)


class MarketTotals(BaseModel):
    total_deposits: int = Field(..., ge=0)
    total_borrows: int = Field(..., ge=0)


class GasMetrics(BaseModel):
    """Gas usage of one ledger transaction"""
    gas_used: int = Field(..., ge=0)
    effective_gas_price: int = Field(..., ge=0)
    block_number: Optional[int] = None

    @property
    def total_gas_cost(self) -> int:
        return self.gas_used * self.effective_gas_price

    def to_payload(self) -> Dict[str, Any]:
        return {
            'gas_used': str(self.gas_used),
            'effective_gas_price': str(self.effective_gas_price),
            'total_gas_cost': str(self.total_gas_cost),
        }


# ============================================================================
# Derived Models
# ============================================================================

class ReconciledPosition(BaseModel):
    """Position re-read from the ledger with derived risk fields"""
    user: str
    market: str
    deposit_amount: int = Field(..., ge=0)
    borrow_amount: int = Field(..., ge=0)
    health_factor: Decimal = Field(..., description="Normalized, clamped at the ceiling")
    liquidation_risk: Decimal = Field(..., description="Percent, 0 to 100")
    collateral_value: int = Field(..., ge=0, description="deposit * price, 1e18 fixed-point")
    price: int = Field(default=0, ge=0)
    interest_rate_bps: int = Field(default=0, ge=0)
    token_supported: bool = Field(default=True, description="Ledger accepts new borrows of the market token")
    status: PositionStatus = Field(default=PositionStatus.ACTIVE)
    last_update: datetime = Field(default_factory=datetime.utcnow)
    block_number: Optional[int] = None

    health_factor_source: Provenance = Field(default=Provenance.LEDGER)
    price_source: Provenance = Field(default=Provenance.ORACLE)
    config_source: Provenance = Field(default=Provenance.LEDGER)

    @field_validator('user')
    @classmethod
    def validate_user(cls, v):
        return _normalize_address(v)

    @field_validator('market')
    @classmethod
    def validate_market(cls, v):
        return v.lower()

    @property
    def is_degraded(self) -> bool:
        """True when any field came from something other than a direct read"""
        return (
            self.health_factor_source != Provenance.LEDGER
            or self.price_source != Provenance.ORACLE
            or self.config_source != Provenance.LEDGER
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-safe dictionary"""
        data = self.model_dump(mode="json")
        for key in ('deposit_amount', 'borrow_amount', 'collateral_value', 'price'):
            data[key] = str(getattr(self, key))
        return data


class MarketSnapshot(BaseModel):
    """Market totals derived from a ledger read"""
    market: str
    total_liquidity: int = Field(..., ge=0)
    total_borrowed: int = Field(..., ge=0)
    utilization_bps: int = Field(..., ge=0)


class LiquidationCandidate(BaseModel):
    """One row of scanner output"""
    user: str
    deposit_amount: int
    borrow_amount: int
    health_factor: Decimal
    raw_health_factor: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user': self.user,
            'deposit_amount': str(self.deposit_amount),
            'borrow_amount': str(self.borrow_amount),
            'health_factor': str(self.health_factor),
        }


class GasComparison(BaseModel):
    """Average gas cost of one operation on two chains"""
    event_type: EventType
    chain_a: int
    chain_b: int
    average_cost_a: Decimal
    average_cost_b: Decimal
    samples_a: int
    samples_b: int
    savings_percent: Decimal
    materially_cheaper: bool

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class WriteResult:
    """Result of one transactional write"""
    tx_hash: str
    status: WriteStatus
    activities: int = 0
    positions: List[str] = field(default_factory=list)
    reason: Optional[ViolationReason] = None
    error: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.status == WriteStatus.COMMITTED
