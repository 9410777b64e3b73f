"""
Voice sink interface for podradio.

The playback controller streams pipeline handles into whichever sink the
connection supervisor last handed it.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from podradio.errors import TransportUnavailableError

AfterCallback = Callable[[Optional[Exception]], None]


class VoiceSink(ABC):
    """
    Abstract base class for voice outputs.

    A sink plays one pipeline handle at a time. `after` is invoked exactly
    once when that playback ends (naturally, on error, or because stop() was
    called), possibly from a foreign thread.
    """

    @abstractmethod
    def play(self, handle: Any, after: AfterCallback) -> None:
        """
        Start streaming encoded audio from a pipeline handle.

        Raises:
            TransportUnavailableError: If the sink is not connected
        """
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop the current playback, if any. Must not raise."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying transport."""
        ...


class NullVoiceSink(VoiceSink):
    """Placeholder sink used until the voice session is established."""

    def play(self, handle: Any, after: AfterCallback) -> None:
        raise TransportUnavailableError("voice session not established")

    def stop(self) -> None:
        return

    def is_connected(self) -> bool:
        return False

    async def close(self) -> None:
        return
