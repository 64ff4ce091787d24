"""Unit tests for vulnenrich.fanout — concurrent enricher fan-out and merge."""

import asyncio
import json

import pytest

from vulnenrich.config import EnricherConfig
from vulnenrich.enrichers import Getter, LocalEnricher, nvd_enricher
from vulnenrich.exceptions import EnrichmentError
from vulnenrich.fanout import EnrichmentFanOut, FailurePolicy
from vulnenrich.models import EnrichmentRecord, Vulnerability, VulnerabilityReport
from vulnenrich.registry import Registry
from vulnenrich.sources import Noop

NVD_TYPE = "message/vnd.clair.map.vulnerability; enricher=nvd type=NvdV2"

# ── Helpers / fixtures ───────────────────────────────────────────────────────


class StaticEnricher(LocalEnricher):
    """Returns fixed payloads, optionally after a delay or with an error."""

    def __init__(self, name, key="application/json", payloads=(), error=None, delay=0.0):
        self.name = name
        self.key = key
        self.payloads = list(payloads)
        self.error = error
        self.delay = delay
        self.seen_label = None

    async def enrich(self, getter: Getter, report):
        self.seen_label = getter.mime_label
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.key, self.payloads


def _report() -> VulnerabilityReport:
    return VulnerabilityReport(
        manifest="sha256:feed",
        vulnerabilities={"18": Vulnerability(id="18", name="CVE-2021-44228")},
    )


def _registry(*enrichers) -> Registry:
    r = Registry()
    for e in enrichers:
        r.register_enricher(e)
    return r


# ── collect / enrich ─────────────────────────────────────────────────────────


class TestFanOut:
    def test_nvd_report_example(self, store):
        rec = EnrichmentRecord.from_json(["CVE-2021-44228"], {"id": "CVE-2021-44228", "cvss_v3_score": 10.0})

        async def run():
            await store.commit("nvd", "nvd", "fp", [rec])
            return await EnrichmentFanOut(store, _registry(nvd_enricher())).enrich(_report())

        enriched = asyncio.run(run())
        assert list(enriched.enrichments) == [NVD_TYPE]
        out = enriched.to_dict()["enrichments"][NVD_TYPE]
        assert out == [{"18": [{"id": "CVE-2021-44228", "cvss_v3_score": 10.0}]}]

    def test_empty_results_contribute_no_key(self, store):
        fanout = EnrichmentFanOut(store, _registry(StaticEnricher("a"), StaticEnricher("b", key="x", payloads=[b"1"])))
        result = asyncio.run(fanout.collect(_report()))
        assert result.enrichments == {"x": [b"1"]}
        assert result.errors == {}

    def test_same_key_concatenated_in_registration_order(self, store):
        slow = StaticEnricher("slow", key="k", payloads=[b"1", b"2"], delay=0.05)
        fast = StaticEnricher("fast", key="k", payloads=[b"3"])
        result = asyncio.run(EnrichmentFanOut(store, _registry(slow, fast)).collect(_report()))
        assert result.enrichments == {"k": [b"1", b"2", b"3"]}

    def test_enrichers_run_concurrently(self, store):
        enrichers = [StaticEnricher(f"e{i}", key=f"k{i}", payloads=[b"x"], delay=0.2) for i in range(5)]
        fanout = EnrichmentFanOut(store, _registry(*enrichers))

        async def run():
            loop = asyncio.get_running_loop()
            start = loop.time()
            await fanout.collect(_report())
            return loop.time() - start

        assert asyncio.run(run()) < 0.8

    def test_report_not_modified(self, store):
        report = _report()
        fanout = EnrichmentFanOut(store, _registry(StaticEnricher("a", payloads=[b"{}"])))
        enriched = asyncio.run(fanout.enrich(report))
        assert report.enrichments == {}
        assert enriched.enrichments == {"application/json": (b"{}",)}

    def test_getter_uses_paired_label(self, store):
        paired = StaticEnricher("nvd")
        unpaired = StaticEnricher("custom")
        registry = _registry(paired, unpaired)

        class Labelled(Noop):
            def __init__(self):
                super().__init__("nvd")
                self.mime_label = "nvd-feed"

        registry.register_adapter(Labelled())
        asyncio.run(EnrichmentFanOut(store, registry).collect(_report()))
        assert paired.seen_label == "nvd-feed"
        assert unpaired.seen_label == "custom"

    def test_enabled_filter(self, store):
        a = StaticEnricher("a", key="a", payloads=[b"1"])
        b = StaticEnricher("b", key="b", payloads=[b"2"])
        result = asyncio.run(EnrichmentFanOut(store, _registry(a, b), enabled=["b"]).collect(_report()))
        assert list(result.enrichments) == ["b"]
        assert a.seen_label is None


# ── Failure policy ───────────────────────────────────────────────────────────


class TestFailurePolicy:
    def test_omit_drops_failed_key(self, store):
        ok = StaticEnricher("ok", key="ok", payloads=[b"1"])
        bad = StaticEnricher("bad", key="bad", error=EnrichmentError("service down"))
        result = asyncio.run(EnrichmentFanOut(store, _registry(bad, ok)).collect(_report()))
        assert result.enrichments == {"ok": [b"1"]}
        assert set(result.errors) == {"bad"}
        assert result.errors["bad"].enricher == "bad"

    def test_unexpected_exception_wrapped(self, store):
        bad = StaticEnricher("bad", error=KeyError("missing"))
        result = asyncio.run(EnrichmentFanOut(store, _registry(bad)).collect(_report()))
        assert isinstance(result.errors["bad"], EnrichmentError)
        assert isinstance(result.errors["bad"].__cause__, KeyError)

    def test_abort_raises_first_failure_after_join(self, store):
        slow_ok = StaticEnricher("slow", key="s", payloads=[b"1"], delay=0.05)
        first = StaticEnricher("first", error=EnrichmentError("first failure"))
        second = StaticEnricher("second", error=EnrichmentError("second failure"))
        fanout = EnrichmentFanOut(store, _registry(first, slow_ok, second), policy=FailurePolicy.ABORT)
        with pytest.raises(EnrichmentError) as exc_info:
            asyncio.run(fanout.collect(_report()))
        assert exc_info.value.enricher == "first"
        assert slow_ok.seen_label is not None

    def test_timeout(self, store):
        slow = StaticEnricher("slow", payloads=[b"1"], delay=1.0)
        result = asyncio.run(EnrichmentFanOut(store, _registry(slow), timeout=0.05).collect(_report()))
        assert result.enrichments == {}
        assert "timed out" in str(result.errors["slow"])

    def test_policy_from_string(self, store):
        assert EnrichmentFanOut(store, Registry(), policy="abort").policy is FailurePolicy.ABORT

    def test_from_config(self, store):
        cfg = EnricherConfig(failure_policy="abort", timeout=5, enabled=["nvd"])
        fanout = EnrichmentFanOut.from_config(store, Registry(), cfg)
        assert fanout.policy is FailurePolicy.ABORT
        assert fanout.timeout == 5
        assert fanout.enabled == ["nvd"]


class TestReportPayloads:
    def test_to_dict_round_trip(self, store):
        fanout = EnrichmentFanOut(store, _registry(StaticEnricher("a", payloads=[json.dumps({"18": [1]}).encode()])))
        enriched = asyncio.run(fanout.enrich(_report()))
        assert enriched.to_dict()["enrichments"] == {"application/json": [{"18": [1]}]}
