"""Core data types shared by the store, updaters and enrichers."""

import datetime as dt
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .tags import normalize_tags


class UpdateKind(str, Enum):
    """Partition of the operation log."""

    VULNERABILITY = "vulnerability"
    ENRICHMENT = "enrichment"


@dataclass(frozen=True)
class EnrichmentRecord:
    """One queryable unit of auxiliary data.

    Attributes:
        tags: Query keys for the record (e.g. CVE identifiers).
        payload: Opaque serialized bytes, never interpreted here.
    """

    tags: frozenset[str]
    payload: bytes

    def __post_init__(self) -> None:
        normalized = frozenset(normalize_tags(self.tags))
        if not normalized:
            raise ValueError("an enrichment record needs at least one tag")
        object.__setattr__(self, "tags", normalized)
        if isinstance(self.payload, str):
            object.__setattr__(self, "payload", self.payload.encode("utf-8"))

    @classmethod
    def from_json(cls, tags: Iterable[str], data: Any) -> "EnrichmentRecord":
        """Build a record whose payload is ``data`` serialized as compact JSON."""
        return cls(tags=frozenset(tags), payload=json.dumps(data, sort_keys=True, separators=(",", ":")).encode())

    def sorted_tags(self) -> tuple[str, ...]:
        return tuple(sorted(self.tags))

    def digest(self) -> str:
        """SHA-256 over the sorted tags and the payload."""
        h = hashlib.sha256()
        for tag in self.sorted_tags():
            h.update(tag.encode("utf-8"))
            h.update(b"\x00")
        h.update(b"\x01")
        h.update(self.payload)
        return h.hexdigest()


@dataclass(frozen=True)
class UpdateOperation:
    """A versioned batch boundary in the operation log.

    Attributes:
        ref: Globally unique identifier (UUID4 string).
        source_name: Name of the adapter that produced the batch.
        kind: ``vulnerability`` or ``enrichment``.
        fingerprint: Opaque marker of the fetched snapshot.
        mime_label: Label the batch is queried under (enrichment only).
        created_at: Creation time (UTC).
        superseded: ``False`` for the single current generation.
    """

    ref: str
    source_name: str
    kind: UpdateKind
    fingerprint: str
    mime_label: str
    created_at: dt.datetime
    superseded: bool = False

    @property
    def current(self) -> bool:
        return not self.superseded


@dataclass
class UpdateDiff:
    """Record-level difference between two vulnerability operations."""

    prev: UpdateOperation | None
    cur: UpdateOperation
    added: list[EnrichmentRecord] = field(default_factory=list)
    removed: list[EnrichmentRecord] = field(default_factory=list)


@dataclass(frozen=True)
class Vulnerability:
    """The parts of a report vulnerability that enrichers read."""

    id: str
    name: str
    description: str = ""
    links: str = ""
    severity: str = ""
    package: str = ""


@dataclass(frozen=True)
class VulnerabilityReport:
    """A vulnerability report as produced by the matcher.

    ``vulnerabilities`` and ``enrichments`` are exposed read-only, so the
    same report can be handed to concurrent enrichers.

    Attributes:
        manifest: Hash of the scanned manifest.
        vulnerabilities: Vulnerability ID -> ``Vulnerability``.
        enrichments: MIME type -> raw payloads.
    """

    manifest: str
    vulnerabilities: Mapping[str, Vulnerability] = field(default_factory=dict)
    enrichments: Mapping[str, tuple[bytes, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "vulnerabilities", MappingProxyType(dict(self.vulnerabilities)))
        object.__setattr__(
            self,
            "enrichments",
            MappingProxyType({k: tuple(v) for k, v in self.enrichments.items()}),
        )

    def with_enrichments(self, enrichments: Mapping[str, Iterable[bytes]]) -> "VulnerabilityReport":
        """Return a copy of this report carrying ``enrichments``."""
        return VulnerabilityReport(
            manifest=self.manifest,
            vulnerabilities=self.vulnerabilities,
            enrichments={k: tuple(v) for k, v in enrichments.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        """Render a JSON-compatible dict; raw payloads are decoded as JSON."""
        return {
            "manifest_hash": self.manifest,
            "vulnerabilities": {
                vid: {
                    "id": v.id,
                    "name": v.name,
                    "description": v.description,
                    "links": v.links,
                    "severity": v.severity,
                    "package": v.package,
                }
                for vid, v in self.vulnerabilities.items()
            },
            "enrichments": {k: [json.loads(p) for p in v] for k, v in self.enrichments.items()},
        }
