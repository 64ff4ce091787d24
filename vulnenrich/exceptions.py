"""Exception hierarchy for vulnenrich.

Adapter-level errors (``FetchError``, ``ParseError``, ``PersistError``)
carry the name of the source that raised them; ``EnrichmentError`` carries
the name of the failing enricher.
"""


class VulnEnrichError(Exception):
    """Base exception for all vulnenrich operations."""


class ConfigurationError(VulnEnrichError):
    """Raised when configuration loading or validation fails."""


class MediaTypeError(VulnEnrichError, ValueError):
    """Raised when a MIME type string cannot be composed or parsed."""


class SourceError(VulnEnrichError):
    """Base for failures attributed to one source adapter.

    Attributes:
        source: Name of the adapter the failure belongs to.
    """

    def __init__(self, message: str, source: str = ""):
        super().__init__(message)
        self.source = source


class FetchError(SourceError):
    """Raised when an upstream data source is unavailable."""


class ParseError(SourceError):
    """Raised when a fetched snapshot cannot be parsed."""


class PersistError(SourceError):
    """Raised when a store transaction fails and is rolled back."""


class EnrichmentError(VulnEnrichError):
    """Raised when an enricher fails during report assembly.

    Attributes:
        enricher: Name of the failing enricher.
    """

    def __init__(self, message: str, enricher: str = ""):
        super().__init__(message)
        self.enricher = enricher
