"""CISA Known Exploited Vulnerabilities catalog."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, BinaryIO

import aiohttp

from .. import http
from ..models import EnrichmentRecord
from .base import FetchResult, empty_result, parsing, spool

logger = logging.getLogger(__name__)

CISA_KEV_URL = "https://www.cisa.gov/sites/default/files/feeds/known_exploited_vulnerabilities.json"

KEV_FIELDS = (
    "cveID",
    "vendorProject",
    "product",
    "vulnerabilityName",
    "dateAdded",
    "shortDescription",
    "requiredAction",
    "dueDate",
    "knownRansomwareCampaignUse",
)


def catalog_fingerprint(body: bytes) -> str:
    """``<catalogVersion>:<sha256>`` of a catalog body.

    The version alone is not trusted: CISA has re-published catalogs
    without bumping it.
    """
    digest = hashlib.sha256(body).hexdigest()
    try:
        version = json.loads(body).get("catalogVersion") or ""
    except (ValueError, AttributeError):
        version = ""
    return f"{version}:{digest}"


def kev_entries(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Extract normalized KEV entries from a catalog document."""
    vulns = data.get("vulnerabilities")
    if not isinstance(vulns, list):
        raise ValueError("KEV catalog has no vulnerabilities list")
    out: list[dict[str, Any]] = []
    for v in vulns:
        if not isinstance(v, dict):
            continue
        cve = (v.get("cveID") or "").strip().upper()
        if not cve.startswith("CVE-"):
            continue
        entry = {k: v.get(k) for k in KEV_FIELDS}
        entry["cveID"] = cve
        out.append(entry)
    return out


class KEVSource:
    """CISA KEV enrichment source; wrap with ``EnrichmentOnly`` to register."""

    name = "kev"
    mime_label = "kev"

    def __init__(self, url: str = CISA_KEV_URL, session: aiohttp.ClientSession | None = None):
        self.url = url
        self.session = session

    async def fetch(self, fingerprint: str | None) -> FetchResult:
        async with http.session_scope(self.session) as session:
            resp = await http.fetch(session, self.url)
        new_fp = catalog_fingerprint(resp.body)
        if fingerprint is not None and new_fp == fingerprint:
            return empty_result(new_fp)
        return FetchResult(stream=spool([resp.body]), fingerprint=new_fp)

    def parse(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        with parsing(self.name, stream):
            data = json.load(stream)
            if not isinstance(data, dict):
                raise ValueError("KEV catalog is not a JSON object")
            records = [EnrichmentRecord.from_json([e["cveID"]], e) for e in kev_entries(data)]
        logger.info("Parsed %d KEV entries", len(records))
        return records
