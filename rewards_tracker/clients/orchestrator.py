from abc import ABC, abstractmethod
from decimal import Decimal

from rewards_tracker.models import OrderSide, OrderStatus, TransferResult


class Orchestrator(ABC):
    """
    Exchange, transfer and staking operations.

    Transfer and stake instructions are keyed by a caller-supplied correlation id;
    submitting the same id twice must not move funds twice.
    """

    @abstractmethod
    def place_order(self, pair: str, side: OrderSide, price: Decimal, quantity: Decimal) -> str:
        """Place a limit order. Returns the exchange order id."""
        pass

    @abstractmethod
    def order_status(self, order_id: str) -> OrderStatus:
        pass

    @abstractmethod
    def cancel_order(self, order_id: str):
        pass

    @abstractmethod
    def initiate_transfer(self, correlation_id: str, source: str, destination: str,
                          quantity: Decimal) -> TransferResult:
        """Move `quantity` from `source` to `destination`."""
        pass

    @abstractmethod
    def initiate_stake(self, correlation_id: str, stake_account: str, quantity: Decimal) -> TransferResult:
        """Delegate `quantity` held by `stake_account`."""
        pass
