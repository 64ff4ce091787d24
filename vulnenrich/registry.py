"""Explicit registry of source adapters and enrichers.

Nothing registers itself on import; the process builds a ``Registry`` at
startup (usually through ``default_registry``) and hands it to the Update
Manager and the fan-out.
"""

from __future__ import annotations

import logging

import aiohttp

from .config import Config, resolve_env
from .enrichers import Enricher, HTTPEnricher, epss_enricher, kev_enricher, nvd_enricher
from .sources import EnrichmentOnly, EPSSSource, KEVSource, NVDSource, SourceAdapter

logger = logging.getLogger(__name__)


class Registry:
    """Named collections of adapters and enrichers, in registration order.

    Example::

        registry = Registry()
        registry.register_adapter(NVDSource())
        registry.register_enricher(nvd_enricher())
        registry.mime_label_for("nvd")  # -> "nvd"
    """

    def __init__(self) -> None:
        self._adapters: dict[str, SourceAdapter] = {}
        self._enrichers: dict[str, Enricher] = {}

    def register_adapter(self, adapter: SourceAdapter) -> None:
        """Register a source adapter.

        Raises:
            ValueError: If an adapter with the same name is registered.
        """
        if adapter.name in self._adapters:
            raise ValueError(f"adapter {adapter.name!r} already registered")
        self._adapters[adapter.name] = adapter
        logger.debug("Registered adapter %s (%s)", adapter.name, adapter.capability.value)

    def register_enricher(self, enricher: Enricher) -> None:
        """Register an enricher.

        Raises:
            ValueError: If an enricher with the same name is registered.
        """
        if enricher.name in self._enrichers:
            raise ValueError(f"enricher {enricher.name!r} already registered")
        self._enrichers[enricher.name] = enricher
        logger.debug("Registered enricher %s (%s)", enricher.name, enricher.kind.value)

    def adapters(self) -> list[SourceAdapter]:
        return list(self._adapters.values())

    def enrichers(self) -> list[Enricher]:
        return list(self._enrichers.values())

    def adapter(self, name: str) -> SourceAdapter:
        """Look up an adapter by name; raises ``KeyError`` when unknown."""
        return self._adapters[name]

    def enricher(self, name: str) -> Enricher:
        """Look up an enricher by name; raises ``KeyError`` when unknown."""
        return self._enrichers[name]

    def mime_label_for(self, enricher_name: str) -> str:
        """MIME label the named enricher reads.

        An enricher reads the label of the adapter sharing its name, or a
        label equal to its own name when there is no such adapter.
        """
        adapter = self._adapters.get(enricher_name)
        if adapter is not None:
            return adapter.mime_label
        return enricher_name

    def clear(self) -> None:
        self._adapters.clear()
        self._enrichers.clear()


def default_registry(config: Config | None = None, session: aiohttp.ClientSession | None = None) -> Registry:
    """Build a registry with the built-in feeds and enrichers.

    Args:
        config: Source and enricher settings; defaults when omitted.
        session: Shared ``aiohttp`` session for every network component.

    Returns:
        A populated ``Registry``.
    """
    config = config or Config()
    registry = Registry()

    registry.register_adapter(NVDSource(years=config.nvd.years, base_url=config.nvd.feed_url, session=session))
    registry.register_adapter(EnrichmentOnly(EPSSSource(url=config.epss.url, session=session)))
    registry.register_adapter(EnrichmentOnly(KEVSource(url=config.kev.url, session=session)))

    registry.register_enricher(nvd_enricher())
    registry.register_enricher(epss_enricher())
    registry.register_enricher(kev_enricher())

    for remote in config.enrichers.remote:
        registry.register_enricher(
            HTTPEnricher(
                name=remote.name,
                url=remote.url,
                media_type=remote.media_type,
                token=resolve_env(remote.token),
                session=session,
            )
        )
    return registry
