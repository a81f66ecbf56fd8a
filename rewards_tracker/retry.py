import logging
from typing import Any, Callable

import backoff

from rewards_tracker.exceptions import UnavailableError

logger = logging.getLogger(__name__)


def call_with_retry(func: Callable[..., Any], *args, label: str = "", max_tries: int = 3,
                    factor: float = 1.0, max_value: float = 30.0, **kwargs) -> Any:
    """
    Call a collaborator, retrying UnavailableError with exponential backoff.

    Any other exception propagates on the first attempt. When the retry budget is
    exhausted the last UnavailableError is re-raised to the caller.
    """
    name = label or getattr(func, "__name__", "call")

    def log_backoff(details):
        logger.warning(
            "%s unavailable (try %d), retrying in %.1fs: %s",
            name, details["tries"], details["wait"], details["exception"]
        )

    @backoff.on_exception(
        backoff.expo,
        UnavailableError,
        max_tries=max(1, max_tries),
        factor=factor,
        max_value=max_value,
        on_backoff=log_backoff,
    )
    def attempt():
        return func(*args, **kwargs)

    return attempt()
