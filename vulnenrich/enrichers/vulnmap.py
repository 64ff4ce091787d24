"""Local enrichers producing vulnerability-keyed maps.

Each vulnerability in the report is tagged with the CVE identifiers found
in its name, links and description. Stored records sharing a tag are
filed under that vulnerability's ID, giving one payload per report::

    {"18": [<record payload>, ...], "21": [...]}

Record payloads are embedded byte-for-byte; they are never decoded.
"""

from __future__ import annotations

import json
import logging

from ..exceptions import EnrichmentError, VulnEnrichError
from ..mime import vulnerability_map_type
from ..models import VulnerabilityReport
from ..tags import TagIndex, extract_cve_ids
from .base import Getter, LocalEnricher

logger = logging.getLogger(__name__)


class VulnerabilityMapEnricher(LocalEnricher):
    """Map store records onto report vulnerabilities by CVE tag.

    Attributes:
        name: Enricher name (and pairing key).
        media_type: MIME type of the produced map.
    """

    def __init__(self, name: str, media_type: str):
        self.name = name
        self.media_type = media_type

    @staticmethod
    def index_report(report: VulnerabilityReport) -> TagIndex:
        """Build a CVE tag -> vulnerability ID index for ``report``."""
        index = TagIndex()
        for vid, vuln in report.vulnerabilities.items():
            index.add(vid, extract_cve_ids(vuln.name, vuln.links, vuln.description))
        return index

    async def enrich(self, getter: Getter, report: VulnerabilityReport) -> tuple[str, list[bytes]]:
        index = self.index_report(report)
        if not len(index):
            return self.media_type, []

        try:
            records = await getter.get(index.tags())
        except VulnEnrichError as exc:
            raise EnrichmentError(f"{self.name}: store query failed: {exc}", self.name) from exc

        by_vuln: dict[str, list[bytes]] = {}
        for rec in records:
            for vid in index.lookup(rec.tags):
                by_vuln.setdefault(str(vid), []).append(rec.payload)
        if not by_vuln:
            return self.media_type, []

        logger.debug("%s matched %d record(s) to %d vulnerabilities", self.name, len(records), len(by_vuln))
        entries = [json.dumps(vid).encode() + b":[" + b",".join(by_vuln[vid]) + b"]" for vid in sorted(by_vuln)]
        return self.media_type, [b"{" + b",".join(entries) + b"}"]


def nvd_enricher() -> VulnerabilityMapEnricher:
    return VulnerabilityMapEnricher("nvd", vulnerability_map_type("nvd", type_="NvdV2"))


def epss_enricher() -> VulnerabilityMapEnricher:
    return VulnerabilityMapEnricher("epss", vulnerability_map_type("epss", type_="EPSSv3"))


def kev_enricher() -> VulnerabilityMapEnricher:
    return VulnerabilityMapEnricher("kev", vulnerability_map_type("kev", type_="CisaKevV1"))
