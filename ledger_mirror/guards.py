"""
Action Guards

Pre-flight validation of user actions against a reconciled position. Each
rejection raises InvariantViolation with a reason code that maps to a
human-readable failure category.
"""

import logging
from typing import Optional

from .types import ReconciledPosition, InvariantViolation, ViolationReason
from .config import RiskConfig

logger = logging.getLogger(__name__)

BPS = 10000


class ActionGuard:
    """Validates withdraw, borrow, repay and liquidation requests"""

    ACTIONS = ("withdraw", "borrow", "repay", "liquidate")

    def __init__(self, risk: RiskConfig):
        self.risk = risk

    @staticmethod
    def _require_positive(amount: int):
        if amount <= 0:
            raise InvariantViolation(ViolationReason.NON_POSITIVE_AMOUNT, f"Amount must be positive, got {amount}")

    def check_withdraw(self, position: ReconciledPosition, amount: int):
        self._require_positive(amount)
        if amount > position.deposit_amount:
            raise InvariantViolation(
                ViolationReason.WITHDRAW_EXCEEDS_DEPOSIT,
                f"Cannot withdraw {amount}, deposit is {position.deposit_amount}"
            )
        if position.borrow_amount > 0:
            raise InvariantViolation(
                ViolationReason.OUTSTANDING_DEBT,
                "Cannot withdraw collateral while a borrow is outstanding"
            )

    def max_borrow(self, position: ReconciledPosition) -> int:
        """Total debt allowed against the current deposit"""
        return position.deposit_amount * self.risk.collateral_factor_bps // BPS

    def check_borrow(self, position: ReconciledPosition, amount: int):
        self._require_positive(amount)
        if not position.token_supported:
            raise InvariantViolation(ViolationReason.UNSUPPORTED_TOKEN, f"Token {position.market} is not supported")
        if position.deposit_amount == 0:
            raise InvariantViolation(ViolationReason.NO_COLLATERAL, "Deposit collateral before borrowing")
        limit = self.max_borrow(position)
        if position.borrow_amount + amount > limit:
            raise InvariantViolation(
                ViolationReason.BORROW_EXCEEDS_COLLATERAL,
                f"Cannot borrow {amount}; debt would exceed {limit}"
            )

    def check_repay(self, position: ReconciledPosition, amount: int):
        self._require_positive(amount)
        if amount > position.borrow_amount:
            raise InvariantViolation(
                ViolationReason.REPAY_EXCEEDS_DEBT,
                f"Cannot repay {amount}, debt is {position.borrow_amount}"
            )

    def max_liquidation(self, position: ReconciledPosition) -> int:
        """Largest repayable amount in one liquidation"""
        return position.borrow_amount * self.risk.close_factor_bps // BPS

    def check_liquidation(self, position: ReconciledPosition, requester: Optional[str], amount: int):
        """
        Validate a liquidation of position by requester.

        Self-liquidation is checked first so it is reported even for an
        otherwise invalid request.
        """
        if requester and requester.lower() == position.user:
            raise InvariantViolation(ViolationReason.SELF_LIQUIDATION, "Cannot liquidate your own position")
        self._require_positive(amount)
        if position.borrow_amount == 0:
            raise InvariantViolation(ViolationReason.NOTHING_TO_LIQUIDATE, f"{position.user} has no debt")
        if position.health_factor >= self.risk.liquidation_threshold:
            raise InvariantViolation(
                ViolationReason.POSITION_HEALTHY,
                f"Health factor {position.health_factor} is not below {self.risk.liquidation_threshold}"
            )
        limit = self.max_liquidation(position)
        if amount > limit:
            raise InvariantViolation(
                ViolationReason.LIQUIDATION_EXCEEDS_CLOSE_FACTOR,
                f"Cannot liquidate more than {limit}"
            )

    def check(
        self,
        action: str,
        position: ReconciledPosition,
        amount: int,
        requester: Optional[str] = None
    ):
        """Dispatch by action name"""
        action = action.lower()
        if action == "liquidation":
            action = "liquidate"
        if action not in self.ACTIONS:
            raise ValueError(f"Unknown action: {action}; expected one of {', '.join(self.ACTIONS)}")

        if action == "liquidate":
            self.check_liquidation(position, requester, amount)
        else:
            getattr(self, f"check_{action}")(position, amount)
        logger.debug(f"{action} of {amount} by {requester or position.user} passed pre-flight")
