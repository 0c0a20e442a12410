"""Configuration loader and typed settings for Quire."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - installed without a checkout
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = []
    seen: set[Path] = set()
    for candidate in (cwd_candidate, repo_candidate):
        if candidate in seen:
            continue
        seen.add(candidate)
        candidates.append(candidate)
    return candidates


_DEFAULT_SETTINGS_PATHS = _build_default_settings_paths()


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("QUIRE_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    for candidate in _DEFAULT_SETTINGS_PATHS:
        if candidate.exists():
            return candidate
    return _DEFAULT_SETTINGS_PATHS[0]


CACHE_BACKENDS = frozenset({"memory", "sql"})
EXECUTOR_KINDS = frozenset({"process", "thread"})


@dataclass
class CacheConfig:
    """Artefact cache backend selection.

    The cache is disposable: ``memory`` loses everything on exit, ``sql`` keeps
    blobs in a SQLAlchemy database between runs.
    """

    backend: str = "sql"
    url: str = "sqlite:///cache/artifacts.db"


@dataclass
class HashingConfig:
    """Worker pool used to offload digest and downscale work."""

    executor: str = "process"
    max_workers: int = 2


@dataclass
class GroupingConfig:
    """Default thresholds for the similarity grouping strategies."""

    phash_threshold: float = 0.85
    profile_threshold: float = 0.8
    profile_bins: int = 16


@dataclass
class QueueConfig:
    """Bounded job queue used for batch hashing at ingest."""

    job_limit: int = 10


@dataclass
class Settings:
    """Top-level application settings."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    hashing: HashingConfig = field(default_factory=HashingConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    A missing file or a document that is not a mapping yields default
    :class:`Settings`. Individual keys with the wrong type or an unsupported
    value are ignored and keep their defaults.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    raw: Any
    with path.open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        return settings

    cache_raw = _as_dict(raw.get("cache"))
    cache_cfg = settings.cache
    backend = cache_raw.get("backend")
    if isinstance(backend, str) and backend in CACHE_BACKENDS:
        cache_cfg.backend = backend
    if isinstance(cache_raw.get("url"), str) and cache_raw["url"].strip():
        cache_cfg.url = cache_raw["url"].strip()

    hashing_raw = _as_dict(raw.get("hashing"))
    hashing_cfg = settings.hashing
    executor = hashing_raw.get("executor")
    if isinstance(executor, str) and executor in EXECUTOR_KINDS:
        hashing_cfg.executor = executor
    max_workers = hashing_raw.get("max_workers")
    if isinstance(max_workers, int) and not isinstance(max_workers, bool) and max_workers > 0:
        hashing_cfg.max_workers = max_workers

    grouping_raw = _as_dict(raw.get("grouping"))
    grouping_cfg = settings.grouping
    if _is_number(grouping_raw.get("phash_threshold")):
        grouping_cfg.phash_threshold = float(grouping_raw["phash_threshold"])
    if _is_number(grouping_raw.get("profile_threshold")):
        grouping_cfg.profile_threshold = float(grouping_raw["profile_threshold"])
    bins = grouping_raw.get("profile_bins")
    if isinstance(bins, int) and not isinstance(bins, bool) and bins > 0:
        grouping_cfg.profile_bins = bins

    queue_raw = _as_dict(raw.get("queue"))
    job_limit = queue_raw.get("job_limit")
    if isinstance(job_limit, int) and not isinstance(job_limit, bool) and job_limit > 0:
        settings.queue.job_limit = job_limit

    return settings


__all__ = [
    "CacheConfig",
    "HashingConfig",
    "GroupingConfig",
    "QueueConfig",
    "Settings",
    "load_settings",
]
