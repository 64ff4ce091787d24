"""Unit tests for vulnenrich.registry — explicit adapter/enricher registration."""

import os
from unittest.mock import patch

import pytest

from vulnenrich.config import Config
from vulnenrich.enrichers import EnricherKind, HTTPEnricher, nvd_enricher
from vulnenrich.registry import Registry, default_registry
from vulnenrich.sources import Capability, EnrichmentOnly, Noop, NVDSource


class TestRegistry:
    def test_registration_order(self):
        r = Registry()
        r.register_adapter(Noop("b"))
        r.register_adapter(Noop("a"))
        assert [a.name for a in r.adapters()] == ["b", "a"]

    def test_duplicate_adapter(self):
        r = Registry()
        r.register_adapter(Noop("x"))
        with pytest.raises(ValueError):
            r.register_adapter(Noop("x"))

    def test_duplicate_enricher(self):
        r = Registry()
        r.register_enricher(nvd_enricher())
        with pytest.raises(ValueError):
            r.register_enricher(nvd_enricher())

    def test_same_name_across_categories(self):
        r = Registry()
        r.register_adapter(NVDSource(years=[2024]))
        r.register_enricher(nvd_enricher())
        assert r.adapter("nvd").name == r.enricher("nvd").name

    def test_lookup_unknown(self):
        with pytest.raises(KeyError):
            Registry().adapter("nope")

    def test_mime_label_pairing(self):
        class Relabelled(Noop):
            def __init__(self):
                super().__init__("nvd")
                self.mime_label = "nvd-v2"

        r = Registry()
        r.register_adapter(Relabelled())
        assert r.mime_label_for("nvd") == "nvd-v2"
        assert r.mime_label_for("unpaired") == "unpaired"

    def test_clear(self):
        r = Registry()
        r.register_adapter(Noop("x"))
        r.register_enricher(nvd_enricher())
        r.clear()
        assert r.adapters() == []
        assert r.enrichers() == []


class TestDefaultRegistry:
    def test_builtins(self):
        r = default_registry()
        assert [a.name for a in r.adapters()] == ["nvd", "epss", "kev"]
        assert r.adapter("nvd").capability is Capability.BOTH
        assert isinstance(r.adapter("epss"), EnrichmentOnly)
        assert r.adapter("kev").capability is Capability.ENRICHMENT_ONLY
        assert [e.name for e in r.enrichers()] == ["nvd", "epss", "kev"]
        assert all(e.kind is EnricherKind.LOCAL for e in r.enrichers())

    def test_config_applied(self):
        cfg = Config.model_validate({"nvd": {"years": [2021, 2022]}, "kev": {"url": "https://mirror/kev.json"}})
        r = default_registry(cfg)
        assert r.adapter("nvd").years == [2021, 2022]
        assert r.adapter("kev").source.url == "https://mirror/kev.json"

    @patch.dict(os.environ, {"ADV_TOKEN": "t0k"})
    def test_remote_enrichers(self):
        cfg = Config.model_validate(
            {
                "enrichers": {
                    "remote": [
                        {
                            "name": "advisor",
                            "url": "https://advisor/enrich",
                            "media_type": "application/vnd.example.advisor+json",
                            "token": "$ADV_TOKEN",
                        }
                    ]
                }
            }
        )
        remote = default_registry(cfg).enricher("advisor")
        assert isinstance(remote, HTTPEnricher)
        assert remote.kind is EnricherKind.REMOTE
        assert remote.token == "t0k"
