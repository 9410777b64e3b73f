"""
Presence Gate for podradio.

Turns voice-channel membership into playback decisions: nobody listening
pauses the station, somebody listening starts or resumes it. Only human
members count.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def listener_count(channel) -> int:
    """Number of non-bot members currently in the channel."""
    if channel is None:
        return 0
    return sum(1 for member in channel.members if not member.bot)


class PresenceGate:
    """Maps listener counts for one channel onto controller operations."""

    def __init__(self, controller, channel_id: int):
        self.controller = controller
        self.channel_id = channel_id
        self.last_count: Optional[int] = None

    def on_membership_change(self, count: int) -> None:
        previous = self.last_count
        self.last_count = count
        if count != previous:
            logger.info(f"[PRESENCE] Listeners in channel: {count}")

        if count == 0:
            self.controller.pause_for_empty()
        else:
            self.controller.resume_for_listener()

    def handle_voice_state_update(self, member, before, after) -> None:
        """Recount the target channel when an update touches it."""
        before_id = before.channel.id if before.channel is not None else None
        after_id = after.channel.id if after.channel is not None else None
        if self.channel_id not in (before_id, after_id):
            return
        if before_id == after_id:
            # mute/deafen toggles inside the channel
            return
        channel = after.channel if after_id == self.channel_id else before.channel
        self.on_membership_change(listener_count(channel))

    def sync(self, channel) -> None:
        """Evaluate current membership once, right after connecting."""
        self.on_membership_change(listener_count(channel))
