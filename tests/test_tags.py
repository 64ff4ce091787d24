"""Unit tests for vulnenrich.tags — tag normalization and the inverted index."""

from vulnenrich.tags import TagIndex, extract_cve_ids, normalize_tags

# ── normalize_tags ───────────────────────────────────────────────────────────


class TestNormalizeTags:
    def test_sorted_and_unique(self):
        assert normalize_tags(["b", "a", "b"]) == ("a", "b")

    def test_drops_empty(self):
        assert normalize_tags(["CVE-2024-1", ""]) == ("CVE-2024-1",)

    def test_tags_kept_verbatim(self):
        assert normalize_tags([" a", "a", "   "]) == ("   ", " a", "a")

    def test_bare_string_is_one_tag(self):
        assert normalize_tags("CVE-2024-1") == ("CVE-2024-1",)

    def test_ignores_non_strings(self):
        assert normalize_tags(["x", None, 3]) == ("x",)  # type: ignore[list-item]

    def test_empty(self):
        assert normalize_tags([]) == ()


# ── extract_cve_ids ──────────────────────────────────────────────────────────


class TestExtractCveIds:
    def test_finds_in_order(self):
        text = "See CVE-2024-0002 and cve-2023-12345 then CVE-2024-0002 again"
        assert extract_cve_ids(text) == ["CVE-2024-0002", "CVE-2023-12345"]

    def test_multiple_texts(self):
        assert extract_cve_ids("CVE-2020-1234", None, "https://x/CVE-2021-44228") == [
            "CVE-2020-1234",
            "CVE-2021-44228",
        ]

    def test_short_sequence_rejected(self):
        assert extract_cve_ids("CVE-2020-123") == []


# ── TagIndex ─────────────────────────────────────────────────────────────────


class TestTagIndex:
    def test_lookup_union(self):
        idx = TagIndex()
        idx.add("18", ["CVE-2020-1"])
        idx.add("19", ["CVE-2020-1", "CVE-2020-2"])
        assert idx.lookup(["CVE-2020-1"]) == {"18", "19"}
        assert idx.lookup(["CVE-2020-2"]) == {"19"}
        assert idx.lookup(["CVE-2020-3"]) == set()

    def test_tags_and_len(self):
        idx = TagIndex()
        idx.add("a", ["z", "y"])
        idx.add("b", ["y"])
        assert idx.tags() == ("y", "z")
        assert len(idx) == 2
        assert "z" in idx
        assert "q" not in idx
