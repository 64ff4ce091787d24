"""Shared fixtures for the vulnenrich test suite."""

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from vulnenrich.models import EnrichmentRecord
from vulnenrich.store import EnrichmentStore


@pytest.fixture
def store(tmp_path: Path) -> EnrichmentStore:
    """An initialized store on a temporary database file."""
    s = EnrichmentStore(tmp_path / "store.db")
    asyncio.run(s.initialize())
    return s


@pytest.fixture
def make_record() -> Callable[..., EnrichmentRecord]:
    """Factory: ``make_record("CVE-2024-1", score=9.8)``."""

    def _make(*tags: str, **payload: Any) -> EnrichmentRecord:
        return EnrichmentRecord.from_json(tags, payload or {"tags": list(tags)})

    return _make
