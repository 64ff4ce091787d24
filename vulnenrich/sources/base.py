"""Source adapter contract.

A source adapter fetches one external data source and parses it into
tagged records. The Update Manager consumes the full ``SourceAdapter``
contract; which pipelines it runs is decided by the adapter's declared
``capability``, never by inspecting the instance.

Adapters that only implement one side are written against the small
``EnrichmentSource`` / ``VulnerabilitySource`` protocols and wrapped
explicitly::

    registry.register_adapter(EnrichmentOnly(EPSSSource()))
"""

from __future__ import annotations

import csv
import io
import tempfile
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterable, Iterator, Protocol

from ..exceptions import ParseError
from ..models import EnrichmentRecord

# Spool to disk once a fetched snapshot passes this size.
SPOOL_MAX_MEMORY = 16 * 1024 * 1024


@dataclass
class FetchResult:
    """Outcome of a fetch.

    Attributes:
        stream: Snapshot bytes, positioned at the start.
        fingerprint: Marker describing the fetched snapshot.
    """

    stream: BinaryIO
    fingerprint: str

    def unchanged(self, prior: str | None) -> bool:
        return prior is not None and self.fingerprint == prior

    def close(self) -> None:
        self.stream.close()


def empty_result(fingerprint: str | None) -> FetchResult:
    """A ``FetchResult`` with no content that reports ``fingerprint``."""
    return FetchResult(stream=io.BytesIO(), fingerprint=fingerprint or "")


def spool(chunks: Iterable[bytes]) -> BinaryIO:
    """Write ``chunks`` into a spooled temporary file and rewind it."""
    f = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY, prefix="vulnenrich_")
    try:
        for chunk in chunks:
            f.write(chunk)
        f.seek(0)
    except BaseException:
        f.close()
        raise
    return f  # type: ignore[return-value]


@contextmanager
def parsing(source: str, stream: BinaryIO) -> Iterator[BinaryIO]:
    """Close ``stream`` on every exit path and wrap decode failures in ``ParseError``."""
    try:
        yield stream
    except ParseError:
        raise
    except (OSError, EOFError, ValueError, KeyError, TypeError, AttributeError, csv.Error, zlib.error) as exc:
        raise ParseError(f"{source}: malformed snapshot: {exc}", source) from exc
    finally:
        stream.close()


class Capability(Enum):
    """Which pipelines an adapter takes part in."""

    VULNERABILITY_ONLY = "vulnerability"
    ENRICHMENT_ONLY = "enrichment"
    BOTH = "both"
    NEITHER = "neither"

    @property
    def vulnerability(self) -> bool:
        return self in (Capability.VULNERABILITY_ONLY, Capability.BOTH)

    @property
    def enrichment(self) -> bool:
        return self in (Capability.ENRICHMENT_ONLY, Capability.BOTH)

    @classmethod
    def of(cls, vulnerability: bool, enrichment: bool) -> "Capability":
        if vulnerability and enrichment:
            return cls.BOTH
        if vulnerability:
            return cls.VULNERABILITY_ONLY
        if enrichment:
            return cls.ENRICHMENT_ONLY
        return cls.NEITHER


class SourceAdapter(ABC):
    """Full adapter contract consumed by the Update Manager.

    Attributes:
        name: Stable adapter name; keys update operations and pairs the
            adapter with the enricher of the same name.
        mime_label: Label enrichment records are committed and queried
            under.
        capability: Pipelines this adapter fulfils.
    """

    name: str = "base"
    mime_label: str = ""
    capability: Capability = Capability.NEITHER

    @abstractmethod
    async def fetch_vulnerabilities(self, fingerprint: str | None) -> FetchResult:
        """Fetch the vulnerability snapshot; may short-circuit on ``fingerprint``."""
        ...

    @abstractmethod
    def parse_vulnerabilities(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        """Parse a vulnerability snapshot. Must close ``stream``."""
        ...

    @abstractmethod
    async def fetch_enrichment(self, fingerprint: str | None) -> FetchResult:
        """Fetch the enrichment snapshot; may short-circuit on ``fingerprint``."""
        ...

    @abstractmethod
    def parse_enrichment(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        """Parse an enrichment snapshot. Must close ``stream``."""
        ...


class EnrichmentSource(Protocol):
    """The enrichment half of an adapter."""

    @property
    def name(self) -> str: ...

    @property
    def mime_label(self) -> str: ...

    async def fetch(self, fingerprint: str | None) -> FetchResult: ...

    def parse(self, stream: BinaryIO) -> list[EnrichmentRecord]: ...


class VulnerabilitySource(Protocol):
    """The vulnerability half of an adapter."""

    @property
    def name(self) -> str: ...

    async def fetch(self, fingerprint: str | None) -> FetchResult: ...

    def parse(self, stream: BinaryIO) -> list[EnrichmentRecord]: ...


class EnrichmentOnly(SourceAdapter):
    """Adapter that delegates enrichment to ``source``.

    The vulnerability side returns fixed empty results.
    """

    capability = Capability.ENRICHMENT_ONLY

    def __init__(self, source: EnrichmentSource):
        self.source = source
        self.name = source.name
        self.mime_label = source.mime_label

    async def fetch_enrichment(self, fingerprint: str | None) -> FetchResult:
        return await self.source.fetch(fingerprint)

    def parse_enrichment(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        return self.source.parse(stream)

    async def fetch_vulnerabilities(self, fingerprint: str | None) -> FetchResult:
        return empty_result(fingerprint)

    def parse_vulnerabilities(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        stream.close()
        return []


class VulnerabilityOnly(SourceAdapter):
    """Adapter that delegates vulnerabilities to ``source``.

    The enrichment side returns fixed empty results.
    """

    capability = Capability.VULNERABILITY_ONLY

    def __init__(self, source: VulnerabilitySource):
        self.source = source
        self.name = source.name
        self.mime_label = ""

    async def fetch_vulnerabilities(self, fingerprint: str | None) -> FetchResult:
        return await self.source.fetch(fingerprint)

    def parse_vulnerabilities(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        return self.source.parse(stream)

    async def fetch_enrichment(self, fingerprint: str | None) -> FetchResult:
        return empty_result(fingerprint)

    def parse_enrichment(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        stream.close()
        return []


class Noop(SourceAdapter):
    """Adapter fulfilling neither pipeline."""

    capability = Capability.NEITHER

    def __init__(self, name: str):
        self.name = name
        self.mime_label = ""

    async def fetch_vulnerabilities(self, fingerprint: str | None) -> FetchResult:
        return empty_result(fingerprint)

    def parse_vulnerabilities(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        stream.close()
        return []

    async def fetch_enrichment(self, fingerprint: str | None) -> FetchResult:
        return empty_result(fingerprint)

    def parse_enrichment(self, stream: BinaryIO) -> list[EnrichmentRecord]:
        stream.close()
        return []
