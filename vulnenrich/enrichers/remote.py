"""Remote enricher backed by an HTTP service."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from .. import http
from ..exceptions import EnrichmentError
from ..mime import validate
from ..models import VulnerabilityReport
from .base import Getter, RemoteEnricher

logger = logging.getLogger(__name__)


class HTTPEnricher(RemoteEnricher):
    """POST the report's vulnerabilities to a service and file its reply.

    The request body is ``{"vulnerabilities": {id: {...}, ...}}``; the
    response body is stored unmodified under ``media_type``.  An empty
    response contributes nothing.

    Attributes:
        name: Enricher name.
        url: Service endpoint.
        media_type: MIME type the response is filed under.
    """

    def __init__(
        self,
        name: str,
        url: str,
        media_type: str,
        token: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        validate(media_type)
        self.name = name
        self.url = url
        self.media_type = media_type
        self.token = token
        self.session = session

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def request_body(report: VulnerabilityReport) -> dict:
        return {
            "vulnerabilities": {
                vid: {
                    "id": v.id,
                    "name": v.name,
                    "description": v.description,
                    "links": v.links,
                    "severity": v.severity,
                    "package": v.package,
                }
                for vid, v in report.vulnerabilities.items()
            }
        }

    async def enrich(self, getter: Getter, report: VulnerabilityReport) -> tuple[str, list[bytes]]:
        if not report.vulnerabilities:
            return self.media_type, []
        try:
            async with http.session_scope(self.session) as session:
                body = await http.post_json(session, self.url, self.request_body(report), self._headers())
        except aiohttp.ClientResponseError as exc:
            raise EnrichmentError(f"{self.name}: HTTP {exc.status} from {self.url}", self.name) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise EnrichmentError(f"{self.name}: request to {self.url} failed: {exc}", self.name) from exc

        if not body.strip():
            return self.media_type, []
        logger.debug("%s returned %d bytes", self.name, len(body))
        return self.media_type, [body]
