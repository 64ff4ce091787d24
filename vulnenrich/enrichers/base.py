"""Getter and Enricher contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable

from ..models import EnrichmentRecord, VulnerabilityReport
from ..store import EnrichmentStore


class Getter:
    """Read handle on the store, bound to one MIME label.

    This is the only store access an enricher gets, so it cannot read
    another source's data.
    """

    def __init__(self, store: EnrichmentStore, mime_label: str):
        self._store = store
        self._mime_label = mime_label

    @property
    def mime_label(self) -> str:
        return self._mime_label

    async def get(self, tags: Iterable[str]) -> list[EnrichmentRecord]:
        """Current records under this label sharing any of ``tags``."""
        return await self._store.query(self._mime_label, tags)


class EnricherKind(Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Enricher(ABC):
    """Base class for report enrichers.

    ``enrich`` returns the MIME type the payloads are filed under and the
    raw payloads; an empty payload list contributes nothing to the report.
    Enrichers must treat the report as read-only.

    Attributes:
        name: Enricher name; pairs with the source adapter of the same name.
        kind: ``LOCAL`` (reads the store) or ``REMOTE`` (calls a service).
    """

    name: str = "base"
    kind: EnricherKind = EnricherKind.LOCAL

    @abstractmethod
    async def enrich(self, getter: Getter, report: VulnerabilityReport) -> tuple[str, list[bytes]]:
        """Produce this enricher's contribution to ``report``.

        Raises:
            EnrichmentError: If the enricher cannot produce its data.
        """
        ...


class LocalEnricher(Enricher):
    """Enricher answering from store data through its ``Getter``."""

    kind = EnricherKind.LOCAL


class RemoteEnricher(Enricher):
    """Enricher forwarding report data to an external service.

    The ``Getter`` passed to ``enrich`` is ignored.
    """

    kind = EnricherKind.REMOTE
