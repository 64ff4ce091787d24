"""Unit tests for vulnenrich.config — Pydantic configuration models."""

import datetime as dt
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from pydantic import ValidationError

from vulnenrich.config import (
    Config,
    EnricherConfig,
    NVDSourceConfig,
    UpdaterConfig,
    load_config,
    resolve_env,
)
from vulnenrich.exceptions import ConfigurationError

# ── Models ───────────────────────────────────────────────────────────────────


class TestUpdaterConfig:
    def test_defaults(self):
        u = UpdaterConfig()
        assert u.workers == 4
        assert u.interval == 6 * 3600
        assert u.timeout is None
        assert u.keep_operations == 2
        assert u.sources == []

    def test_worker_bounds(self):
        with pytest.raises(ValidationError):
            UpdaterConfig(workers=0)
        with pytest.raises(ValidationError):
            UpdaterConfig(workers=65)

    def test_negative_keep_rejected(self):
        with pytest.raises(ValidationError):
            UpdaterConfig(keep_operations=-1)


class TestNVDSourceConfig:
    def test_default_years_end_this_year(self):
        years = NVDSourceConfig().years
        assert len(years) == 5
        assert years[-1] == dt.datetime.now().year

    def test_years_sorted_unique(self):
        assert NVDSourceConfig(years=[2024, 2022, 2024]).years == [2022, 2024]

    def test_too_early(self):
        with pytest.raises(ValidationError):
            NVDSourceConfig(years=[1990])


class TestEnricherConfig:
    def test_policy_normalized(self):
        assert EnricherConfig(failure_policy="ABORT").failure_policy == "abort"
        assert EnricherConfig(failure_policy=None).failure_policy == "omit"

    def test_policy_invalid(self):
        with pytest.raises(ValidationError):
            EnricherConfig(failure_policy="retry")

    def test_remote_entries(self):
        cfg = EnricherConfig(remote=[{"name": "adv", "url": "https://x", "media_type": "application/json"}])
        assert cfg.remote[0].name == "adv"
        assert cfg.remote[0].token is None


# ── load_config ──────────────────────────────────────────────────────────────


class TestLoadConfig:
    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "vulnenrich.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "store": {"path": str(tmp_path / "db.sqlite")},
                    "updater": {"workers": 2, "sources": ["kev"]},
                    "enrichers": {"failure_policy": "abort"},
                }
            )
        )
        cfg = load_config(path)
        assert cfg.store.path == tmp_path / "db.sqlite"
        assert cfg.updater.workers == 2
        assert cfg.updater.sources == ["kev"]
        assert cfg.enrichers.failure_policy == "abort"

    def test_json_file(self, tmp_path: Path):
        path = tmp_path / "vulnenrich.json"
        path.write_text(json.dumps({"nvd": {"years": [2023]}}))
        assert load_config(path).nvd.years == [2023]

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == Config()

    def test_unknown_suffix(self, tmp_path: Path):
        path = tmp_path / "config.conf"
        path.write_text("updater:\n  workers: 8\n")
        assert load_config(path).updater.workers == 8

    def test_invalid_values(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("updater:\n  workers: 0\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_undecodable(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_top_level_list(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")


# ── resolve_env ──────────────────────────────────────────────────────────────


class TestResolveEnv:
    @patch.dict(os.environ, {"ADVISOR_TOKEN": "s3cret"})
    def test_env_reference(self):
        assert resolve_env("$ADVISOR_TOKEN") == "s3cret"

    def test_unset_reference(self):
        with patch.dict(os.environ, {}, clear=True):
            assert resolve_env("$MISSING") is None

    def test_literal_and_empty(self):
        assert resolve_env("plain") == "plain"
        assert resolve_env(None) is None
        assert resolve_env("") is None
