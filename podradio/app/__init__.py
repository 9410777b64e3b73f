"""Application wiring and entry point for podradio."""
