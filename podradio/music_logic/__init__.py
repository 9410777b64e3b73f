"""Episode feed fetching for podradio."""
