"""
Exception types shared across podradio.

Only ConfigurationError is fatal. Everything else is recovered locally by
the component that catches it (retry, advance, or rejoin).
"""


class RadioError(Exception):
    """Base class for all podradio errors."""


class ConfigurationError(RadioError):
    """Missing or invalid configuration (env vars, target channel type)."""


class PipelineStartError(RadioError):
    """The transcoding pipeline could not be started for a source."""

    def __init__(self, locator: str, message: str):
        super().__init__(f"{message} (source={locator})")
        self.locator = locator


class PipelineStreamError(RadioError):
    """A pipeline that was streaming ended because of a failure, not end of input."""

    def __init__(self, locator: str, message: str):
        super().__init__(f"{message} (source={locator})")
        self.locator = locator


class TransportUnavailableError(RadioError):
    """The voice sink is not connected and cannot accept audio."""


class FeedError(RadioError):
    """Fetching or parsing the episode feed failed."""
