"""Listener presence handling for podradio."""
