"""Report-time enrichers."""

from .base import Enricher, EnricherKind, Getter, LocalEnricher, RemoteEnricher
from .remote import HTTPEnricher
from .vulnmap import VulnerabilityMapEnricher, epss_enricher, kev_enricher, nvd_enricher

__all__ = [
    "Enricher",
    "EnricherKind",
    "Getter",
    "HTTPEnricher",
    "LocalEnricher",
    "RemoteEnricher",
    "VulnerabilityMapEnricher",
    "epss_enricher",
    "kev_enricher",
    "nvd_enricher",
]
