"""Tag-set helpers.

Pure functions for normalizing tag sets and pulling CVE identifiers out
of free text, plus a small in-memory inverted index used to route stored
records back to the report entities that asked for them.
No I/O — all inputs are in-memory data structures.
"""

import re
from typing import Hashable, Iterable

CVE_RE = re.compile(r"CVE-\d{4}-\d{4,}", flags=re.IGNORECASE)


def normalize_tags(tags: Iterable[str] | str) -> tuple[str, ...]:
    """Normalize a tag collection into a sorted, de-duplicated tuple.

    Tags are opaque and compared exactly as given. A bare string counts as
    one tag. Empty or non-string entries are dropped.

    Args:
        tags: A tag string, or any iterable of tag strings (duplicates
            allowed).

    Returns:
        Sorted tuple of unique tags.
    """
    if isinstance(tags, str):
        tags = (tags,)
    return tuple(sorted({tag for tag in tags if isinstance(tag, str) and tag}))


def extract_cve_ids(*texts: str | None) -> list[str]:
    """Find CVE identifiers in one or more strings.

    Args:
        texts: Strings to scan (``None`` entries are skipped).

    Returns:
        Upper-cased CVE IDs in order of first appearance, without
        duplicates.
    """
    seen: dict[str, None] = {}
    for text in texts:
        if not text:
            continue
        for m in CVE_RE.finditer(text):
            seen.setdefault(m.group(0).upper(), None)
    return list(seen)


class TagIndex:
    """Inverted index from tag to the keys that carry it.

    Example::

        idx = TagIndex()
        idx.add("18", ["CVE-2020-1"])
        idx.add("19", ["CVE-2020-1", "CVE-2020-2"])
        idx.lookup(["CVE-2020-2"])  # {"19"}
    """

    def __init__(self) -> None:
        self._index: dict[str, set[Hashable]] = {}

    def add(self, key: Hashable, tags: Iterable[str]) -> None:
        """Associate ``key`` with every tag in ``tags``."""
        for tag in normalize_tags(tags):
            self._index.setdefault(tag, set()).add(key)

    def lookup(self, tags: Iterable[str]) -> set[Hashable]:
        """Return every key carrying at least one of ``tags``."""
        out: set[Hashable] = set()
        for tag in normalize_tags(tags):
            out.update(self._index.get(tag, ()))
        return out

    def tags(self) -> tuple[str, ...]:
        """Return all indexed tags, sorted."""
        return tuple(sorted(self._index))

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, tag: object) -> bool:
        return tag in self._index
