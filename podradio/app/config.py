"""
Configuration management for podradio.

Reads configuration from a .env file and environment variables with sensible
defaults. Required values (bot token, voice channel, feed URL) have none.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from podradio.errors import ConfigurationError

DEFAULT_ENV_FILE = Path(".env")

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")


def _load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("RADIO_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _require(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ConfigurationError(f"Missing required environment variable {name}")
    return value


def _get_float(name: str, default: str) -> float:
    value_str = os.getenv(name, default)
    try:
        return float(value_str)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value_str} (must be a number)")


def _get_int(name: str, default: str) -> int:
    value_str = os.getenv(name, default)
    try:
        return int(value_str)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value_str} (must be an integer)")


@dataclass
class RadioConfig:
    """podradio configuration loaded from .env file and environment variables."""

    # Discord / feed (required)
    discord_token: str
    voice_channel_id: int
    rss_url: str

    # Feed
    refresh_rss_sec: float = 3600.0

    # Voice session
    rejoin_delay_sec: float = 5.0
    recovery_grace_sec: float = 5.0
    keepalive_sec: float = 15.0
    self_deafen: bool = True

    # Encoding
    opus_bitrate: str = "96k"
    opus_channels: int = 2
    ffmpeg_path: str = "ffmpeg"

    # Playback
    watchdog_ms: int = 45000
    stale_resume_sec: float = 3600.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def watchdog_sec(self) -> float:
        return self.watchdog_ms / 1000.0

    @classmethod
    def load_config(cls) -> "RadioConfig":
        """
        Load configuration from environment variables.

        Returns:
            RadioConfig instance with loaded values

        Raises:
            ConfigurationError: If a required variable is missing
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        discord_token = _require("DISCORD_TOKEN")
        channel_id_str = _require("VOICE_CHANNEL_ID")
        try:
            voice_channel_id = int(channel_id_str)
        except ValueError:
            raise ValueError(f"Invalid VOICE_CHANNEL_ID: {channel_id_str} (must be an integer)")
        rss_url = _require("RSS_URL")

        log_file = os.getenv("RADIO_LOG_FILE")
        if log_file == "":
            log_file = None

        config = cls(
            discord_token=discord_token,
            voice_channel_id=voice_channel_id,
            rss_url=rss_url,
            refresh_rss_sec=_get_float("RADIO_REFRESH_RSS_SEC", "3600"),
            rejoin_delay_sec=_get_float("RADIO_REJOIN_DELAY_SEC", "5"),
            recovery_grace_sec=_get_float("RADIO_RECOVERY_GRACE_SEC", "5"),
            keepalive_sec=_get_float("RADIO_KEEPALIVE_SEC", "15"),
            self_deafen=os.getenv("RADIO_SELF_DEAFEN", "true").lower() in _TRUE_VALUES,
            opus_bitrate=os.getenv("RADIO_OPUS_BITRATE", "96k"),
            opus_channels=_get_int("RADIO_OPUS_CHANNELS", "2"),
            ffmpeg_path=os.getenv("RADIO_FFMPEG_PATH", "ffmpeg"),
            watchdog_ms=_get_int("RADIO_WATCHDOG_MS", "45000"),
            stale_resume_sec=_get_float("RADIO_STALE_RESUME_SEC", "3600"),
            log_level=os.getenv("RADIO_LOG_LEVEL", "INFO").upper(),
            log_file=log_file,
        )

        # Validate configuration
        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.rss_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid RSS_URL: {self.rss_url} (must be an http(s) URL)")

        if not self.opus_bitrate.endswith("k"):
            raise ValueError(f"Invalid RADIO_OPUS_BITRATE: {self.opus_bitrate} (must end with 'k', e.g., '96k')")
        try:
            bitrate_value = int(self.opus_bitrate[:-1])
        except ValueError:
            raise ValueError(f"Invalid RADIO_OPUS_BITRATE: {self.opus_bitrate}")
        if bitrate_value <= 0:
            raise ValueError(f"Invalid RADIO_OPUS_BITRATE: {self.opus_bitrate} (must be positive)")

        if self.opus_channels not in (1, 2):
            raise ValueError(f"Invalid RADIO_OPUS_CHANNELS: {self.opus_channels} (must be 1 or 2)")

        for name, value in (
            ("RADIO_REFRESH_RSS_SEC", self.refresh_rss_sec),
            ("RADIO_KEEPALIVE_SEC", self.keepalive_sec),
            ("RADIO_WATCHDOG_MS", self.watchdog_ms),
        ):
            if value <= 0:
                raise ValueError(f"Invalid {name}: {value} (must be positive)")

        for name, value in (
            ("RADIO_REJOIN_DELAY_SEC", self.rejoin_delay_sec),
            ("RADIO_RECOVERY_GRACE_SEC", self.recovery_grace_sec),
            ("RADIO_STALE_RESUME_SEC", self.stale_resume_sec),
        ):
            if value < 0:
                raise ValueError(f"Invalid {name}: {value} (must be >= 0)")

        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid RADIO_LOG_LEVEL: {self.log_level}")


def load_config() -> RadioConfig:
    return RadioConfig.load_config()
