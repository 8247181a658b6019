"""Custom exceptions for the rate limiter."""


class RatelimitError(Exception):
    """Base class for rate limiter exceptions.

    All custom exceptions inherit from this class so callers can catch
    every library error with a single ``except`` clause.
    """

    def __init__(self, message: str = "Ratelimit error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(RatelimitError):
    """Raised when the limiter is configured in an unusable way.

    Configuration errors are fatal and raised synchronously to the caller.
    """


class ThresholdError(ConfigurationError):
    """Raised when the IP deny list threshold is outside 1..8."""

    def __init__(self, threshold: object):
        self.threshold = threshold
        super().__init__(
            f"Allowed threshold values are from 1 to 8, 1 and 8 included. "
            f"Received: {threshold}"
        )


class CacheRequiredError(ConfigurationError):
    """Raised when an algorithm that needs the ephemeral cache runs without one."""

    def __init__(self, algorithm: str = "cachedFixedWindow"):
        self.algorithm = algorithm
        super().__init__(f"The {algorithm} algorithm requires an ephemeral cache")


class UnsupportedContextError(ConfigurationError):
    """Raised when an algorithm does not support the configured region context."""

    def __init__(self, algorithm: str, context: str):
        self.algorithm = algorithm
        self.context = context
        super().__init__(f"The {algorithm} algorithm does not support {context} contexts")


class InvalidDurationError(ConfigurationError):
    """Raised when a window or interval string cannot be parsed."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Unable to parse window size: {value}")


class RegionsUnavailableError(RatelimitError):
    """Raised when every region failed to answer a multi-region request.

    Attributes:
        errors: The exception raised by each region, in region order.
    """

    def __init__(self, errors: list[BaseException]):
        self.errors = errors
        super().__init__(
            f"All {len(errors)} regions failed: "
            + "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        )


class IpDenyListFetchError(RatelimitError):
    """Raised when the IP reputation list cannot be downloaded."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Failed to fetch ip deny list: {detail}")
