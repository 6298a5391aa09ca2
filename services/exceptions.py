"""Error taxonomy for ingest, analysis and query handling."""


class LibraryVisionError(Exception):
    """Base class for all errors raised by the services package."""


class ConfigurationError(LibraryVisionError):
    """Ingest target or credentials cannot be resolved."""


class IngestFailure(LibraryVisionError):
    """A stream or file could not be opened or failed mid-read."""


class DetectorFailure(LibraryVisionError):
    """One frame's analysis call failed or returned an error payload."""


class EnrichmentFailure(LibraryVisionError):
    """A text-generation enrichment call failed."""


class NotFoundError(LibraryVisionError):
    """Unknown stream key or media item."""
