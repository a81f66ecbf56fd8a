from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Tuple


class PriceClient(ABC):
    """Abstract interface for asset price feeds."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of the client for logging purposes."""
        pass

    @abstractmethod
    def price(self, asset: str, at_time: int) -> Tuple[Decimal, str]:
        """
        Get the unit price of an asset at a specific time.

        Args:
            asset: The asset symbol (e.g., 'SOL')
            at_time: Unix timestamp

        Returns:
            (unit_price, currency)

        Raises:
            PriceNotAvailableError: If price cannot be retrieved
        """
        pass

    @abstractmethod
    def get_current_price(self, asset: str) -> Tuple[Decimal, str]:
        """
        Get the current unit price of an asset.

        Raises:
            PriceNotAvailableError: If price cannot be retrieved
        """
        pass
