"""
podradio - continuous podcast radio for a Discord voice channel.

Streams a podcast feed episode by episode into one voice channel, pausing
while the channel is empty and resuming where it left off.
"""

__version__ = "1.0.0"
