"""
Exceptions raised by polyglot-lsp.

Position errors are expected during editing (a cell was just added, a
response arrived after the document changed) and callers are meant to drop
the operation and retry after the next rebuild. Configuration errors are
not transient and should propagate.
"""

from __future__ import annotations


class PositionError(Exception):
    """A position could not be mapped between coordinate spaces."""


class StaleMappingError(PositionError):
    """The editor or line is not present in the current mapping tables."""


class OutOfRangeError(PositionError):
    """A line lies beyond the last recorded line of a document."""


class ChangeTimeoutError(Exception):
    """No change was observed within the bounded wait."""


class ExtractorConfigurationError(ValueError):
    """A foreign code extractor definition is broken."""


class ConfigError(ValueError):
    """Invalid settings."""
