from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from rewards_tracker.models import RewardEvent


class ChainObserver(ABC):
    """Read-only view of the chain. Implementations raise UnavailableError on RPC timeouts."""

    @abstractmethod
    def balance(self, account: str, as_of: Optional[int] = None) -> Decimal:
        """Balance of an account, optionally as of a timestamp."""
        pass

    @abstractmethod
    def reward_events(self, account: str, since_epoch: Optional[int]) -> List[RewardEvent]:
        """
        Reward credits of an account for epochs after `since_epoch`.

        Args:
            account: Account address
            since_epoch: Last reconciled epoch, or None for the full history

        Returns:
            list: RewardEvents ordered by epoch
        """
        pass

    @abstractmethod
    def transfer_confirmed(self, correlation_id: str) -> bool:
        """Whether the transfer or stake issued under `correlation_id` is final on chain."""
        pass
