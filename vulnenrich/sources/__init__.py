"""Source adapters for external vulnerability data feeds.

Each feed lives in its own module. ``NVDSource`` implements the full
``SourceAdapter`` contract itself; single-sided sources (``EPSSSource``,
``KEVSource``) are registered through ``EnrichmentOnly``.
"""

from .base import (
    Capability,
    EnrichmentOnly,
    EnrichmentSource,
    FetchResult,
    Noop,
    SourceAdapter,
    VulnerabilityOnly,
    VulnerabilitySource,
)
from .epss import EPSSSource
from .kev import KEVSource
from .nvd import NVDSource

__all__ = [
    "Capability",
    "EnrichmentOnly",
    "EnrichmentSource",
    "EPSSSource",
    "FetchResult",
    "KEVSource",
    "Noop",
    "NVDSource",
    "SourceAdapter",
    "VulnerabilityOnly",
    "VulnerabilitySource",
]
