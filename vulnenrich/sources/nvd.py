"""NVD JSON 2.0 yearly feeds.

One upstream snapshot backs both pipelines: the vulnerability pipeline
stores a record per CVE (description, severity, references) and the
enrichment pipeline stores the CVSS/CWE details per CVE.

The fingerprint is derived from the ``sha256`` lines of the yearly
``.meta`` files, so an unchanged upstream costs one small request per
year and no feed download.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import gzip
import hashlib
import json
import logging
from typing import Any, BinaryIO, Iterator

import aiohttp

from .. import http
from ..exceptions import FetchError
from ..models import EnrichmentRecord
from .base import Capability, FetchResult, SourceAdapter, empty_result, parsing, spool

logger = logging.getLogger(__name__)

NVD_FEED_BASE_URL = "https://nvd.nist.gov/feeds/json/cve/2.0"


def default_years(span: int = 5) -> list[int]:
    """The current year and the ``span - 1`` years before it."""
    now = dt.datetime.now().year
    return list(range(now - span + 1, now + 1))


def parse_meta(text: str) -> dict[str, str]:
    """Parse an NVD ``.meta`` file into a dict (``sha256``, ``size``, ...)."""
    out: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            out[key.strip()] = value.strip()
    return out


def iter_feed_cves(raw: bytes) -> Iterator[dict[str, Any]]:
    """Yield the ``cve`` objects of one or more concatenated feed documents.

    Args:
        raw: Decompressed feed bytes; several JSON documents may follow one
            another.

    Yields:
        ``cve`` dicts with a valid, non-rejected CVE ID.
    """
    text = raw.decode("utf-8")
    decoder = json.JSONDecoder()
    pos = 0
    while True:
        while pos < len(text) and text[pos].isspace():
            pos += 1
        if pos >= len(text):
            break
        feed, pos = decoder.raw_decode(text, pos)
        if not isinstance(feed, dict) or not isinstance(feed.get("vulnerabilities"), list):
            raise ValueError("feed document has no vulnerabilities list")
        for vuln in feed["vulnerabilities"]:
            cve_data = vuln.get("cve", {}) if isinstance(vuln, dict) else {}
            cve_id = (cve_data.get("id") or "").strip().upper()
            if not cve_id.startswith("CVE-"):
                continue
            if cve_data.get("vulnStatus") == "Rejected":
                continue
            yield cve_data


def _primary_cvss(metric_list: list[dict[str, Any]]) -> dict[str, Any]:
    for m in metric_list:
        if m.get("type") == "Primary":
            return m.get("cvssData", {})
    return metric_list[0].get("cvssData", {}) if metric_list else {}


def cvss_details(cve_data: dict[str, Any]) -> dict[str, Any]:
    """Extract CVSS, CWE and counts from an NVD ``cve`` object."""
    metrics = cve_data.get("metrics", {})
    cvss3 = _primary_cvss(metrics.get("cvssMetricV31", [])) or _primary_cvss(metrics.get("cvssMetricV30", []))
    cvss2 = _primary_cvss(metrics.get("cvssMetricV2", []))

    cwe_ids = []
    for weakness in cve_data.get("weaknesses", []):
        for desc in weakness.get("description", []):
            val = desc.get("value", "")
            if val.startswith("CWE-") and val != "CWE-noinfo":
                cwe_ids.append(val)

    cpe_count = sum(
        len(node.get("cpeMatch", []))
        for config in cve_data.get("configurations", [])
        for node in config.get("nodes", [])
    )

    return {
        "id": cve_data["id"].strip().upper(),
        "cvss_v3_score": cvss3.get("baseScore"),
        "cvss_v3_severity": cvss3.get("baseSeverity"),
        "cvss_v3_vector": cvss3.get("vectorString"),
        "cvss_v2_score": cvss2.get("baseScore"),
        "cvss_v2_severity": cvss2.get("baseSeverity"),
        "cvss_v2_vector": cvss2.get("vectorString"),
        "cwe_ids": list(dict.fromkeys(cwe_ids))[:10] if cwe_ids else None,
        "cpe_count": cpe_count,
        "reference_count": len(cve_data.get("references", [])),
    }


def vulnerability_details(cve_data: dict[str, Any]) -> dict[str, Any]:
    """Extract the vulnerability summary from an NVD ``cve`` object."""
    description = ""
    for d in cve_data.get("descriptions", []):
        if (d.get("lang") or "").lower().startswith("en") and d.get("value"):
            description = str(d["value"])
            break
    cvss = cvss_details(cve_data)
    return {
        "name": cvss["id"],
        "description": description,
        "severity": cvss["cvss_v3_severity"] or cvss["cvss_v2_severity"] or "",
        "links": " ".join(r["url"] for r in cve_data.get("references", []) if r.get("url")),
        "published": cve_data.get("published"),
    }


class NVDSource(SourceAdapter):
    """NVD feed adapter for both the vulnerability and enrichment pipelines.

    Attributes:
        years: CVE years whose feeds are fetched.
        base_url: Feed directory URL.
        session: Optional shared ``aiohttp`` session.
    """

    name = "nvd"
    mime_label = "nvd"
    capability = Capability.BOTH

    def __init__(
        self,
        years: list[int] | None = None,
        base_url: str = NVD_FEED_BASE_URL,
        session: aiohttp.ClientSession | None = None,
    ):
        self.years = sorted(set(years or default_years()))
        self.base_url = base_url.rstrip("/")
        self.session = session

    def _url(self, year: int, suffix: str) -> str:
        return f"{self.base_url}/nvdcve-2.0-{year}.{suffix}"

    async def _fetch(self, fingerprint: str | None) -> FetchResult:
        async with http.session_scope(self.session) as session:
            metas = await asyncio.gather(*(http.fetch(session, self._url(y, "meta")) for y in self.years))
            h = hashlib.sha256()
            for year, meta in zip(self.years, metas):
                sha = parse_meta(meta.body.decode("utf-8", errors="replace")).get("sha256")
                if not sha:
                    raise FetchError(f"NVD meta for {year} has no sha256", self.name)
                h.update(f"{year}:{sha}\n".encode())
            new_fp = h.hexdigest()
            if fingerprint is not None and new_fp == fingerprint:
                logger.debug("NVD feeds unchanged (%s)", new_fp[:12])
                return empty_result(new_fp)

            logger.info("Downloading NVD feeds for %s", ", ".join(map(str, self.years)))
            feeds = await asyncio.gather(
                *(http.fetch(session, self._url(y, "json.gz"), headers={"Accept": "*/*"}) for y in self.years)
            )
        # Concatenated gzip members decompress to concatenated documents.
        return FetchResult(stream=spool(f.body for f in feeds), fingerprint=new_fp)

    async def fetch_vulnerabilities(self, fingerprint: str | None) -> FetchResult:
        return await self._fetch(fingerprint)

    async def fetch_enrichment(self, fingerprint: str | None) -> FetchResult:
        return await self._fetch(fingerprint)

    @staticmethod
    def _cves(stream: BinaryIO) -> list[dict[str, Any]]:
        with gzip.GzipFile(fileobj=stream, mode="rb") as gz:
            raw = gz.read()
        return list(iter_feed_cves(raw))

    def parse_vulnerabilities(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        with parsing(self.name, stream):
            records = [
                EnrichmentRecord.from_json([cve["id"].strip().upper()], vulnerability_details(cve))
                for cve in self._cves(stream)
            ]
        logger.info("Parsed %d NVD vulnerabilities", len(records))
        return records

    def parse_enrichment(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        with parsing(self.name, stream):
            records = [EnrichmentRecord.from_json([d["id"]], d) for d in map(cvss_details, self._cves(stream))]
        logger.info("Parsed %d NVD enrichment records", len(records))
        return records
