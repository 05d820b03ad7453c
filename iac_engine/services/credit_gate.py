"""
Credit gate for metered operations.

Scans, plans, applies and generations each cost credits. Billing itself is
an outside collaborator; CreditGate is the seam, InMemoryCreditGate keeps
balances in process.
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional
import asyncio
import logging

from iac_engine.core.config import config
from iac_engine.core.errors import PaymentRequiredError, ValidationError


logger = logging.getLogger(__name__)


CREDIT_COSTS: Dict[str, int] = {
    "CLOUD_SCAN": 20,
    "DEPLOY_PLAN": 15,
    "DEPLOY_APPLY": 30,
    "GENERATION": 10,
}


class CreditGate(ABC):
    """Interface: charge before metered work, refund if the work never happened."""

    @abstractmethod
    async def charge(self, user_id: str, action: str) -> int:
        pass

    @abstractmethod
    async def refund(self, user_id: str, action: str) -> int:
        pass

    @abstractmethod
    async def balance(self, user_id: str) -> int:
        pass


class InMemoryCreditGate(CreditGate):
    """Per-user balances with an atomic check-and-decrement."""

    def __init__(self, default_balance: Optional[int] = None):
        self.default_balance = config.DEFAULT_CREDIT_BALANCE if default_balance is None else default_balance
        self._balances: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def cost_of(action: str) -> int:
        if action not in CREDIT_COSTS:
            raise ValidationError(f"Unknown metered action: {action}")
        return CREDIT_COSTS[action]

    async def charge(self, user_id: str, action: str) -> int:
        """
        Deduct the action's cost.

        Returns:
            Remaining balance

        Raises:
            PaymentRequiredError: If the balance does not cover the cost
        """
        cost = self.cost_of(action)
        async with self._lock:
            balance = self._balances.get(user_id, self.default_balance)
            if balance < cost:
                raise PaymentRequiredError(
                    f"Insufficient credits: {action} costs {cost}, balance is {balance}",
                    details={"required": cost, "balance": balance},
                )
            self._balances[user_id] = balance - cost

        logger.info(f"Charged {cost} credits to user {user_id} for {action}")
        return balance - cost

    async def refund(self, user_id: str, action: str) -> int:
        cost = self.cost_of(action)
        async with self._lock:
            balance = self._balances.get(user_id, self.default_balance) + cost
            self._balances[user_id] = balance

        logger.info(f"Refunded {cost} credits to user {user_id} for {action}")
        return balance

    async def balance(self, user_id: str) -> int:
        return self._balances.get(user_id, self.default_balance)

    def set_balance(self, user_id: str, amount: int) -> None:
        self._balances[user_id] = amount


# Global singleton instance
_credit_gate: Optional[CreditGate] = None


def get_credit_gate() -> CreditGate:
    """
    Get the global credit gate.

    Returns:
        CreditGate instance
    """
    global _credit_gate
    if _credit_gate is None:
        _credit_gate = InMemoryCreditGate()
    return _credit_gate


def reset_credit_gate() -> CreditGate:
    global _credit_gate
    _credit_gate = InMemoryCreditGate()
    return _credit_gate
