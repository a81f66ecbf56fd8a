class LedgerError(Exception):
    """Base class for all ledger errors."""
    pass


class InsufficientQuantityError(LedgerError):
    """Raised when a lot does not hold enough remaining quantity for a consumption."""

    def __init__(self, lot_id: str, requested, remaining):
        self.lot_id = lot_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(f"Lot {lot_id} has {remaining} remaining, cannot consume {requested}")


class InsufficientLotsError(LedgerError):
    """Raised when there are insufficient lots to cover a disposal."""

    def __init__(self, account: str, requested, available, timestamp: int = None):
        self.account = account
        self.requested = requested
        self.available = available
        self.timestamp = timestamp
        super().__init__(
            f"Need {requested} for {account} at {timestamp} but only {available} available in eligible lots"
        )


class UnavailableError(LedgerError):
    """Raised when an external collaborator is temporarily unreachable."""
    pass


class PriceNotAvailableError(UnavailableError):
    """Raised when price data is not available."""
    pass


class AlreadyProcessedError(LedgerError):
    """Raised when an event has already been applied to the ledger."""
    pass


class InvariantViolationError(LedgerError):
    """Raised when lot accounting no longer adds up. Fatal for the run."""
    pass


class LotNotFoundError(LedgerError):
    """Raised when a lot cannot be found for consumption."""
    pass


class UnknownAccountError(LedgerError):
    """Raised when an address is not a tracked account."""
    pass


class InvalidTransitionError(LedgerError):
    """Raised when a sweep task is asked to move to a state it cannot reach."""
    pass
