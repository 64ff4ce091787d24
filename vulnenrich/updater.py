"""Update Manager: drives source adapters through fetch, parse and commit.

Every cycle of one adapter for one kind runs::

    IDLE -> FETCHING -> UNCHANGED
                     -> PARSING -> PERSISTING -> COMMITTED
    (any stage)      -> FAILED

Cycles of different adapters run concurrently on a bounded worker pool; a
failed cycle is recorded in the ``CycleReport`` and never affects another
adapter or the data currently visible to readers.

Usage::

    manager = UpdateManager(store, default_registry(config), config.updater)
    report = await manager.run_once()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from .config import UpdaterConfig
from .exceptions import ConfigurationError, FetchError, ParseError, PersistError, SourceError, VulnEnrichError
from .models import UpdateKind
from .registry import Registry
from .sources.base import SourceAdapter
from .store import EnrichmentStore

logger = logging.getLogger(__name__)


class CycleState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    UNCHANGED = "unchanged"
    PARSING = "parsing"
    PERSISTING = "persisting"
    COMMITTED = "committed"
    FAILED = "failed"


# Error type reported for unexpected exceptions, by the stage they escaped.
_STAGE_ERRORS: dict[CycleState, type[SourceError]] = {
    CycleState.IDLE: FetchError,
    CycleState.FETCHING: FetchError,
    CycleState.PARSING: ParseError,
    CycleState.PERSISTING: PersistError,
}


@dataclass
class CycleResult:
    """Outcome of one adapter cycle.

    A cycle whose deadline expires while the store is already committing
    is checked against the store before it is reported: if the fetched
    generation became current, the cycle counts as ``COMMITTED``.

    Attributes:
        source: Adapter name.
        kind: Pipeline the cycle ran.
        state: Final state (``COMMITTED``, ``UNCHANGED`` or ``FAILED``).
        ref: New operation ref when committed.
        previous_ref: Operation that was current when the cycle started.
        fingerprint: Fingerprint reported by the fetch.
        records: Records stored by the commit, after de-duplication.
        error: Failure, when ``state`` is ``FAILED``.
        failed_stage: Stage the failure happened in.
    """

    source: str
    kind: UpdateKind
    state: CycleState = CycleState.IDLE
    ref: str | None = None
    previous_ref: str | None = None
    fingerprint: str | None = None
    records: int = 0
    error: SourceError | None = None
    failed_stage: CycleState | None = None


@dataclass
class CycleReport:
    """Results of one ``run_once`` call.

    Attributes:
        results: One ``CycleResult`` per adapter pipeline.
        errors: Human-readable error messages (cycle and GC failures).
    """

    results: list[CycleResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def committed(self) -> list[CycleResult]:
        return [r for r in self.results if r.state is CycleState.COMMITTED]

    @property
    def unchanged(self) -> list[CycleResult]:
        return [r for r in self.results if r.state is CycleState.UNCHANGED]

    @property
    def failed(self) -> list[CycleResult]:
        return [r for r in self.results if r.state is CycleState.FAILED]


class UpdateManager:
    """Runs update cycles for the adapters in a ``Registry``.

    An instance belongs to one event loop.

    Attributes:
        store: Destination of committed generations.
        registry: Adapter source.
        config: Worker pool, deadline and GC settings.
    """

    def __init__(self, store: EnrichmentStore, registry: Registry, config: UpdaterConfig | None = None):
        self.store = store
        self.registry = registry
        self.config = config or UpdaterConfig()
        self._workers = asyncio.Semaphore(self.config.workers)
        self._locks: dict[tuple[str, UpdateKind], asyncio.Lock] = {}

    def _lock(self, name: str, kind: UpdateKind) -> asyncio.Lock:
        return self._locks.setdefault((name, kind), asyncio.Lock())

    # ─── Single cycle ────────────────────────────────────────────────────────

    async def run_adapter(self, adapter: SourceAdapter, kind: UpdateKind | str) -> CycleResult:
        """Run one cycle of ``adapter`` for ``kind``.

        At most one cycle per ``(adapter, kind)`` runs at a time; a second
        call waits for the first to finish.

        Args:
            adapter: Adapter to drive.
            kind: Pipeline to run.

        Returns:
            ``CycleResult``; failures are reported there, not raised.
        """
        kind = UpdateKind(kind)
        result = CycleResult(source=adapter.name, kind=kind)
        async with self._lock(adapter.name, kind), self._workers:
            try:
                await asyncio.wait_for(self._cycle(adapter, kind, result), self.config.timeout)
            except SourceError as exc:
                self._fail(result, exc)
            except asyncio.TimeoutError:
                if not await self._landed(result):
                    error_type = _STAGE_ERRORS.get(result.state, FetchError)
                    self._fail(
                        result,
                        error_type(f"{adapter.name}: timed out after {self.config.timeout}s", adapter.name),
                    )
            except Exception as exc:
                error_type = _STAGE_ERRORS.get(result.state, FetchError)
                logger.exception("Unexpected failure in %s %s cycle", adapter.name, kind.value)
                wrapped = error_type(f"{adapter.name}: {type(exc).__name__}: {exc}", adapter.name)
                wrapped.__cause__ = exc
                self._fail(result, wrapped)
        return result

    async def _cycle(self, adapter: SourceAdapter, kind: UpdateKind, result: CycleResult) -> None:
        result.state = CycleState.FETCHING
        current = (await self.store.latest_refs(kind)).get(adapter.name)
        prior = current.fingerprint if current else None
        result.previous_ref = current.ref if current else None
        if kind is UpdateKind.ENRICHMENT:
            if current is not None and current.mime_label != adapter.mime_label:
                # Relabelled source: re-ingest under the new label.
                prior = None
            fetched = await adapter.fetch_enrichment(prior)
            parse = adapter.parse_enrichment
        else:
            fetched = await adapter.fetch_vulnerabilities(prior)
            parse = adapter.parse_vulnerabilities
        result.fingerprint = fetched.fingerprint

        if fetched.unchanged(prior):
            fetched.close()
            result.state = CycleState.UNCHANGED
            logger.info("%s %s unchanged, skipping", adapter.name, kind.value)
            return

        result.state = CycleState.PARSING
        records = await asyncio.to_thread(parse, fetched.stream)

        result.state = CycleState.PERSISTING
        if kind is UpdateKind.ENRICHMENT:
            ref = await self.store.commit(adapter.name, adapter.mime_label, fetched.fingerprint, records)
        else:
            ref = await self.store.commit_vulnerabilities(adapter.name, fetched.fingerprint, records)
        result.ref = ref
        result.state = CycleState.COMMITTED
        await self._count(result)

    async def _count(self, result: CycleResult) -> None:
        try:
            result.records = await self.store.record_count(result.ref)
        except VulnEnrichError as exc:
            logger.warning("Cannot count records of %s: %s", result.ref, exc)

    async def _landed(self, result: CycleResult) -> bool:
        """Whether a timed-out cycle's generation reached the store anyway.

        On ``True`` the result is updated to ``COMMITTED``.
        """
        if result.state is CycleState.PERSISTING:
            try:
                current = (await self.store.latest_refs(result.kind)).get(result.source)
            except VulnEnrichError as exc:
                logger.warning("Cannot check %s %s after timeout: %s", result.source, result.kind.value, exc)
                return False
            if current is None or current.ref == result.previous_ref or current.fingerprint != result.fingerprint:
                return False
            result.ref = current.ref
            result.state = CycleState.COMMITTED
        elif result.state is not CycleState.COMMITTED:
            return False

        logger.warning(
            "%s %s committed %s after its deadline",
            result.source,
            result.kind.value,
            result.ref,
            extra={"source": result.source, "kind": result.kind.value, "ref": result.ref},
        )
        if not result.records:
            await self._count(result)
        return True

    @staticmethod
    def _fail(result: CycleResult, exc: SourceError) -> None:
        if not exc.source:
            exc.source = result.source
        result.failed_stage = result.state
        result.state = CycleState.FAILED
        result.error = exc
        logger.warning(
            "%s %s cycle failed during %s: %s",
            result.source,
            result.kind.value,
            result.failed_stage.value,
            exc,
            extra={"source": result.source, "kind": result.kind.value},
        )

    # ─── Scheduling ──────────────────────────────────────────────────────────

    def _selected(self, names: tuple[str, ...]) -> list[SourceAdapter]:
        wanted = list(names) or list(self.config.sources)
        if not wanted:
            return self.registry.adapters()
        selected = []
        for name in wanted:
            try:
                selected.append(self.registry.adapter(name))
            except KeyError:
                raise ConfigurationError(f"unknown source adapter: {name}") from None
        return selected

    async def run_once(self, *names: str) -> CycleReport:
        """Run every pipeline of the selected adapters once, concurrently.

        Args:
            *names: Adapter names; defaults to ``config.sources``, then to
                every registered adapter.

        Returns:
            ``CycleReport`` with one result per pipeline.

        Raises:
            ConfigurationError: If a name is not registered.
        """
        jobs = []
        for adapter in self._selected(names):
            if adapter.capability.vulnerability:
                jobs.append(self.run_adapter(adapter, UpdateKind.VULNERABILITY))
            if adapter.capability.enrichment:
                jobs.append(self.run_adapter(adapter, UpdateKind.ENRICHMENT))

        report = CycleReport(results=list(await asyncio.gather(*jobs)))
        for r in report.failed:
            report.errors.append(f"{r.source} {r.kind.value} failed during {r.failed_stage.value}: {r.error}")

        if self.config.keep_operations > 0 and report.committed:
            try:
                await self.store.gc(self.config.keep_operations)
            except VulnEnrichError as exc:
                logger.error("GC failed: %s", exc)
                report.errors.append(f"gc failed: {exc}")

        logger.info(
            "Update cycle done: %d committed, %d unchanged, %d failed",
            len(report.committed),
            len(report.unchanged),
            len(report.failed),
        )
        return report

    async def run_forever(self, interval: float | None = None) -> None:
        """Call ``run_once`` every ``interval`` seconds until cancelled."""
        interval = interval if interval is not None else self.config.interval
        while True:
            await self.run_once()
            await asyncio.sleep(interval)
