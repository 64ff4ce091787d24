"""Report-time enricher fan-out.

All registered enrichers run concurrently against the same read-only
report; their payloads are merged into the report's enrichment section
keyed by MIME type.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from .config import EnricherConfig
from .enrichers.base import Enricher, Getter
from .exceptions import EnrichmentError
from .models import VulnerabilityReport
from .registry import Registry
from .store import EnrichmentStore

logger = logging.getLogger(__name__)


class FailurePolicy(Enum):
    """What a failing enricher does to the report.

    ``OMIT`` leaves its key out; ``ABORT`` fails the whole assembly.
    """

    OMIT = "omit"
    ABORT = "abort"


@dataclass
class FanOutResult:
    """Merged enricher output.

    Attributes:
        enrichments: MIME type -> payloads, in registration order.
        errors: Enricher name -> failure.
    """

    enrichments: dict[str, list[bytes]] = field(default_factory=dict)
    errors: dict[str, EnrichmentError] = field(default_factory=dict)


class EnrichmentFanOut:
    """Run enrichers for a report and assemble the enrichment section.

    Attributes:
        store: Store the local enrichers read through their ``Getter``.
        registry: Enricher source and adapter pairing.
        policy: Failure policy.
        timeout: Per-enricher deadline in seconds, or ``None``.
        enabled: Enricher names to run; ``None`` or empty runs all.
    """

    def __init__(
        self,
        store: EnrichmentStore,
        registry: Registry,
        policy: FailurePolicy | str = FailurePolicy.OMIT,
        timeout: float | None = None,
        enabled: list[str] | None = None,
    ):
        self.store = store
        self.registry = registry
        self.policy = FailurePolicy(policy)
        self.timeout = timeout
        self.enabled = list(enabled or [])

    @classmethod
    def from_config(cls, store: EnrichmentStore, registry: Registry, config: EnricherConfig) -> "EnrichmentFanOut":
        return cls(store, registry, policy=config.failure_policy, timeout=config.timeout, enabled=config.enabled)

    def _enrichers(self) -> list[Enricher]:
        enrichers = self.registry.enrichers()
        if self.enabled:
            enrichers = [e for e in enrichers if e.name in self.enabled]
        return enrichers

    async def _run(self, enricher: Enricher, report: VulnerabilityReport) -> tuple[str, list[bytes]]:
        getter = Getter(self.store, self.registry.mime_label_for(enricher.name))
        try:
            key, payloads = await asyncio.wait_for(enricher.enrich(getter, report), self.timeout)
        except EnrichmentError as exc:
            if not exc.enricher:
                exc.enricher = enricher.name
            raise
        except asyncio.TimeoutError as exc:
            raise EnrichmentError(f"{enricher.name}: timed out after {self.timeout}s", enricher.name) from exc
        except Exception as exc:
            raise EnrichmentError(f"{enricher.name}: {type(exc).__name__}: {exc}", enricher.name) from exc
        return key, list(payloads)

    async def collect(self, report: VulnerabilityReport) -> FanOutResult:
        """Run every enabled enricher and merge the results.

        Args:
            report: Report to enrich; never modified.

        Returns:
            ``FanOutResult``. Enrichers with no payloads contribute no key;
            payloads of enrichers sharing a key are concatenated in
            registration order.

        Raises:
            EnrichmentError: Under ``ABORT``, the first failure in
                registration order, after all enrichers have finished.
        """
        enrichers = self._enrichers()
        outcomes = await asyncio.gather(*(self._run(e, report) for e in enrichers), return_exceptions=True)

        result = FanOutResult()
        for enricher, outcome in zip(enrichers, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, EnrichmentError):
                    # CancelledError and friends
                    raise outcome
                logger.warning("Enricher %s failed: %s", enricher.name, outcome, extra={"enricher": enricher.name})
                result.errors[enricher.name] = outcome
                continue
            key, payloads = outcome
            if payloads:
                result.enrichments.setdefault(key, []).extend(payloads)

        if result.errors and self.policy is FailurePolicy.ABORT:
            raise next(iter(result.errors.values()))
        return result

    async def enrich(self, report: VulnerabilityReport) -> VulnerabilityReport:
        """Return a copy of ``report`` carrying the merged enrichments."""
        result = await self.collect(report)
        return report.with_enrichments(result.enrichments)
