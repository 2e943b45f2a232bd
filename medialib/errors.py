"""
Exception hierarchy for the media library.

Errors that reach the HTTP layer carry the status code they map to, so the
routes can translate them without a lookup table.
"""
from __future__ import annotations

from typing import Optional


class MediaLibraryError(Exception):
    """Base exception for all media library errors."""
    status_code = 500


# -----------------------------
# Scan validation
# -----------------------------
class ScanPathError(MediaLibraryError):
    """Raised when a scan directory cannot be used."""
    status_code = 400

    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.path = path


class FolderNotFoundError(ScanPathError):
    status_code = 404

    def __init__(self, path: str):
        super().__init__(path, f"Folder not found: {path}")


class FolderNotDirectoryError(ScanPathError):
    status_code = 400

    def __init__(self, path: str):
        super().__init__(path, f"Path is not a directory: {path}")


class FolderNotReadableError(ScanPathError):
    status_code = 403

    def __init__(self, path: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(path, f"Cannot access folder {path}{detail}. Check permissions.")


# -----------------------------
# Transcoding
# -----------------------------
class ConversionError(MediaLibraryError):
    """Raised when the transcoder fails. `diagnostics` holds the tool's stderr."""

    def __init__(self, message: str, diagnostics: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.diagnostics = diagnostics
        self.returncode = returncode


class DestinationExistsError(ConversionError):
    pass


class ConversionCancelled(ConversionError):
    pass


# -----------------------------
# Catalog store
# -----------------------------
class DuplicateEntryError(MediaLibraryError):
    """Raised when an insert violates the unique source path."""
    status_code = 409


# -----------------------------
# Streaming
# -----------------------------
class StreamError(MediaLibraryError):
    status_code = 500


class EntryNotFoundError(StreamError):
    status_code = 404

    def __init__(self, entry_id: int):
        super().__init__(f"Movie not found: {entry_id}")
        self.entry_id = entry_id


class SourceMissingError(StreamError):
    """The catalog row exists but its file is gone from disk."""
    status_code = 404

    def __init__(self, path: str):
        super().__init__(f"Video file not found: {path}")
        self.path = path


class MalformedRangeError(StreamError):
    status_code = 416

    def __init__(self, header: str, size: int, message: Optional[str] = None):
        super().__init__(message or f"Invalid Range: {header!r}")
        self.header = header
        self.size = size


class RangeNotSatisfiableError(MalformedRangeError):
    def __init__(self, header: str, size: int):
        super().__init__(header, size, f"Range not satisfiable: {header!r} (size={size})")
