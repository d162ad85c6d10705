"""Custom exceptions for the price data pipeline.

All pipeline exceptions live here to avoid circular imports between modules.
"""

from datetime import date


class PriceKeeperError(Exception):
    """Base exception for all pipeline errors."""


class TransientUpstreamFailure(PriceKeeperError):
    """Raised when the market data or exchange rate source is unreachable or times out."""


class PartialFetchFailure(PriceKeeperError):
    """Raised when some chunks of a chunked historical fetch failed.

    Carries the (since, until) windows that could not be fetched.
    """

    def __init__(self, failed_chunks: list[tuple[date, date]]) -> None:
        self.failed_chunks = failed_chunks
        windows = ", ".join(f"{a.isoformat()}..{b.isoformat()}" for a, b in failed_chunks)
        super().__init__(f"{len(failed_chunks)} chunk(s) failed: {windows}")


class ConfigurationError(PriceKeeperError):
    """Raised when required configuration is missing or malformed."""


class ValidationError(PriceKeeperError, ValueError):
    """Raised for malformed input such as inverted date ranges or negative periods."""


class StoreUnavailableError(PriceKeeperError):
    """Raised when the persistence store cannot be reached within the retry budget."""


class InvalidTransition(PriceKeeperError):
    """Raised when the scheduler is asked to move to a phase it cannot reach."""


class SchedulerNotReady(PriceKeeperError):
    """Raised when an operation needs the scheduler in the READY phase."""
