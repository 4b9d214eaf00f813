"""Dynamic (rule-based) playlists for MPD."""

__version__ = "0.1.0"
