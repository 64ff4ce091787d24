"""FIRST.org EPSS daily scores.

The feed is a gzipped CSV preceded by a ``#model_version:...,score_date:...``
comment line. Fetches are conditional on the previous ETag.
"""

from __future__ import annotations

import csv
import gzip
import hashlib
import io
import logging
from typing import Any, BinaryIO

import aiohttp

from .. import http
from ..models import EnrichmentRecord
from .base import FetchResult, empty_result, parsing, spool

logger = logging.getLogger(__name__)

EPSS_CURRENT_CSV_GZ_URL = "https://epss.empiricalsecurity.com/epss_scores-current.csv.gz"


def fingerprint_for(body: bytes, etag: str | None) -> str:
    """Fingerprint a snapshot by ETag when the server sends one, else by content."""
    if etag:
        return f"etag:{etag}"
    return f"sha256:{hashlib.sha256(body).hexdigest()}"


def parse_epss_csv(text: str) -> list[dict[str, Any]]:
    """Parse EPSS CSV text into score dicts.

    Args:
        text: Decompressed CSV, optionally starting with ``#`` comment lines.

    Returns:
        Dicts with ``cve``, ``epss``, ``percentile``, ``model_version`` and
        ``score_date`` keys.

    Raises:
        ValueError: If the ``cve`` or ``epss`` column is missing.
    """
    meta: dict[str, str] = {}
    lines = []
    for line in text.splitlines():
        if not line:
            continue
        if line.lstrip().startswith("#"):
            for part in line.lstrip("#").split(","):
                key, sep, value = part.partition(":")
                if sep:
                    meta[key.strip()] = value.strip()
            continue
        lines.append(line)

    reader = csv.DictReader(io.StringIO("\n".join(lines)))
    if not reader.fieldnames or "cve" not in reader.fieldnames or "epss" not in reader.fieldnames:
        raise ValueError("EPSS CSV is missing the cve/epss columns")

    out: list[dict[str, Any]] = []
    for row in reader:
        cve = (row.get("cve") or "").strip().upper()
        epss = row.get("epss")
        if not cve.startswith("CVE-") or epss is None:
            continue
        try:
            score = float(epss)
        except ValueError:
            continue
        percentile = row.get("percentile")
        try:
            pct = float(percentile) if percentile is not None else None
        except ValueError:
            pct = None
        out.append(
            {
                "cve": cve,
                "epss": score,
                "percentile": pct,
                "model_version": meta.get("model_version"),
                "score_date": meta.get("score_date"),
            }
        )
    return out


class EPSSSource:
    """EPSS enrichment source; wrap with ``EnrichmentOnly`` to register.

    Attributes:
        url: Location of the gzipped CSV.
        session: Optional shared ``aiohttp`` session.
    """

    name = "epss"
    mime_label = "epss"

    def __init__(self, url: str = EPSS_CURRENT_CSV_GZ_URL, session: aiohttp.ClientSession | None = None):
        self.url = url
        self.session = session

    async def fetch(self, fingerprint: str | None) -> FetchResult:
        headers = {"Accept": "*/*"}
        if fingerprint and fingerprint.startswith("etag:"):
            headers["If-None-Match"] = fingerprint[len("etag:") :]

        async with http.session_scope(self.session) as session:
            resp = await http.fetch(session, self.url, headers=headers)

        if resp.not_modified:
            logger.debug("EPSS not modified")
            return empty_result(fingerprint)
        return FetchResult(stream=spool([resp.body]), fingerprint=fingerprint_for(resp.body, resp.headers.get("ETag")))

    def parse(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        with parsing(self.name, stream):
            with gzip.GzipFile(fileobj=stream, mode="rb") as gz:
                text = gz.read().decode("utf-8")
            records = [EnrichmentRecord.from_json([row["cve"]], row) for row in parse_epss_csv(text)]
        logger.info("Parsed %d EPSS scores", len(records))
        return records
