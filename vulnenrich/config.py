"""Configuration models using Pydantic.

Example YAML::

    store:
      path: /var/lib/vulnenrich/store.db
    updater:
      workers: 4
      interval: 21600
      keep_operations: 2
      sources: [nvd, epss, kev]
    nvd:
      years: [2022, 2023, 2024]
    enrichers:
      failure_policy: omit
      timeout: 30
      remote:
        - name: advisor
          url: https://advisor.example.com/enrich
          media_type: application/vnd.example.advisor+json
          token: $ADVISOR_TOKEN
"""

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError
from .sources.epss import EPSS_CURRENT_CSV_GZ_URL
from .sources.kev import CISA_KEV_URL
from .sources.nvd import NVD_FEED_BASE_URL, default_years


class StoreConfig(BaseModel):
    """Enrichment store settings.

    Attributes:
        path: SQLite database file.
        busy_timeout: Seconds a writer waits for the database lock.
    """

    path: Path = Path("vulnenrich.db")
    busy_timeout: float = Field(default=5.0, gt=0)


class UpdaterConfig(BaseModel):
    """Update Manager settings.

    Attributes:
        workers: Maximum adapter cycles running at once.
        interval: Seconds between scheduled cycles.
        timeout: Deadline for one adapter cycle, in seconds.  ``None``
            disables it.
        keep_operations: Generations kept per source by GC; ``0`` disables GC.
        sources: Adapter names to run; empty runs every registered adapter.
    """

    workers: int = Field(default=4, ge=1, le=64)
    interval: float = Field(default=6 * 3600, gt=0)
    timeout: float | None = Field(default=None, gt=0)
    keep_operations: int = Field(default=2, ge=0)
    sources: list[str] = Field(default_factory=list)


class NVDSourceConfig(BaseModel):
    years: list[int] = Field(default_factory=default_years)
    feed_url: str = NVD_FEED_BASE_URL

    @field_validator("years")
    @classmethod
    def _check_years(cls, v: list[int]) -> list[int]:
        for year in v:
            if year < 1999:
                raise ValueError(f"NVD feeds start in 1999, got {year}")
        return sorted(set(v))


class EPSSSourceConfig(BaseModel):
    url: str = EPSS_CURRENT_CSV_GZ_URL


class KEVSourceConfig(BaseModel):
    url: str = CISA_KEV_URL


class RemoteEnricherConfig(BaseModel):
    """A remote enricher endpoint.

    Attributes:
        name: Enricher name (also its pairing key).
        url: Endpoint receiving the report's vulnerabilities.
        media_type: MIME type the response is filed under.
        token: Bearer token, or ``$ENV_VAR`` reference.
    """

    name: str
    url: str
    media_type: str
    token: str | None = None


class EnricherConfig(BaseModel):
    """Report-time fan-out settings.

    Attributes:
        failure_policy: ``omit`` drops a failed enricher's key; ``abort``
            fails the whole assembly.
        timeout: Deadline for one enricher, in seconds.
        enabled: Enricher names to run; empty runs all registered.
        remote: Remote enrichers to register.
    """

    failure_policy: str = "omit"
    timeout: float | None = Field(default=None, gt=0)
    enabled: list[str] = Field(default_factory=list)
    remote: list[RemoteEnricherConfig] = Field(default_factory=list)

    @field_validator("failure_policy", mode="before")
    @classmethod
    def _check_policy(cls, v: Any) -> str:
        value = str(v or "omit").strip().lower()
        if value not in ("omit", "abort"):
            raise ValueError("failure_policy must be 'omit' or 'abort'")
        return value


class Config(BaseModel):
    """Root configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    updater: UpdaterConfig = Field(default_factory=UpdaterConfig)
    nvd: NVDSourceConfig = Field(default_factory=NVDSourceConfig)
    epss: EPSSSourceConfig = Field(default_factory=EPSSSourceConfig)
    kev: KEVSourceConfig = Field(default_factory=KEVSourceConfig)
    enrichers: EnricherConfig = Field(default_factory=EnricherConfig)


def load_config(path: Path) -> Config:
    """Load configuration from a YAML or JSON file.

    Args:
        path: Path to the configuration file.

    Returns:
        Validated ``Config`` instance.

    Raises:
        FileNotFoundError: if the file doesn't exist.
        ConfigurationError: if the content cannot be decoded or fails
            validation.
    """
    suffix = path.suffix.lower()
    content = path.read_text(encoding="utf-8")

    try:
        if suffix in (".yaml", ".yml"):
            raw = yaml.safe_load(content) or {}
        elif suffix == ".json":
            raw = json.loads(content) if content.strip() else {}
        else:
            try:
                raw = yaml.safe_load(content) or {}
            except yaml.YAMLError:
                raw = json.loads(content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not decode {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")

    try:
        return Config.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def resolve_env(value: str | None) -> str | None:
    """Resolve ``$ENV_VAR`` references in a string.

    If the value starts with ``$``, look it up in ``os.environ``.
    Otherwise return as-is.  Returns ``None`` if the env var is unset.
    """
    if not value:
        return None
    if value.startswith("$"):
        return os.environ.get(value[1:])
    return value
