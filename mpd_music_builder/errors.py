"""Exception types raised by the playlist builder."""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class PlaylistBuilderError(Exception):
    """Base class for every error raised by the builder."""


class ValidationError(PlaylistBuilderError):
    """Raised when a dynamic playlist's rules are malformed."""

    def __init__(self, message: str, playlist: Optional[str] = None) -> None:
        self.playlist = playlist
        if playlist:
            message = f"Playlist '{playlist}': {message}"
        super().__init__(message)


class UnsupportedFieldError(PlaylistBuilderError):
    """Raised when a tag field is not part of the catalogue schema."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Tag field '{field}' is not supported by the server")


class RemoteConnectionError(PlaylistBuilderError):
    """Raised when talking to the MPD server fails."""


class PartialBatchError(PlaylistBuilderError):
    """Raised when the server rejects part of a materialization command list."""

    def __init__(
        self,
        message: str,
        applied: int = 0,
        failed_command: Optional[Sequence[Any]] = None,
    ) -> None:
        self.applied = applied
        self.failed_command = tuple(failed_command) if failed_command else None
        # Set when a half-applied edit was rolled back to the previous contents.
        self.restored = False
        super().__init__(message)


class PlaylistImportError(PlaylistBuilderError):
    """Raised when an interchange document cannot be imported."""

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        self.problems = list(problems or [])
        super().__init__(message)


class PlaylistConflictError(PlaylistBuilderError):
    """Raised when attempting to save a playlist that already exists."""
