"""Engine configuration: pydantic models loaded from TOML with env overrides.

Config file is looked up in order:
  1. Explicit ``path`` argument to :func:`load_config`
  2. Path in FOODGRAPH_CONFIG env var (if set)
  3. foodgraph.toml in the current working directory

Each section is a TOML table (``[resolution]``, ``[scoring]``, ``[cache]``,
``[ingest]``). Individual fields can then be overridden with
``FOODGRAPH_<SECTION>_<FIELD>`` environment variables, e.g.
``FOODGRAPH_INGEST_MAX_WORKERS=8``. If no file is found, built-in defaults
are used.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FOODGRAPH_CONFIG"
ENV_PREFIX = "FOODGRAPH_"


class ResolutionConfig(BaseModel, frozen=True):
    """Thresholds for mapping surface names onto entities."""

    max_edit_distance: int = Field(
        default=3,
        ge=0,
        description="Largest Levenshtein distance a fuzzy candidate may have.",
    )
    high_confidence: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Scores above this merge into the candidate.",
    )
    medium_confidence: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Scores from here up to high_confidence go through merge heuristics.",
    )
    max_create_attempts: int = Field(
        default=5,
        ge=1,
        description="Insert-if-absent attempts before ConflictRetryExhausted.",
    )
    max_update_attempts: int = Field(
        default=10,
        ge=1,
        description="Read-modify-write attempts for versioned rows.",
    )
    enable_fuzzy: bool = True
    signal_source_limit: int = Field(
        default=10000,
        ge=1,
        description="Most recent restaurant-level source keys remembered per restaurant for replay dedup.",
    )

    @model_validator(mode="after")
    def bands_must_be_ordered(self) -> "ResolutionConfig":
        if self.medium_confidence > self.high_confidence:
            raise ValueError("medium_confidence must not exceed high_confidence")
        return self


class ScoringConfig(BaseModel, frozen=True):
    """Constants for metric aggregation and quality scoring."""

    decay_days: float = Field(
        default=60.0,
        gt=0,
        description="Time constant of exp(-age/decay) applied to all evidence.",
    )
    recent_days: float = Field(default=30.0, gt=0)
    active_days: float = Field(default=7.0, gt=0)
    top_mention_limit: int = Field(default=5, ge=1)
    trending_min_mentions: int = Field(
        default=3,
        ge=1,
        description="Top mentions required before a connection can be trending.",
    )

    dish_evidence_weight: float = Field(default=0.87, ge=0.0, le=1.0)
    dish_restaurant_weight: float = Field(default=0.13, ge=0.0, le=1.0)
    restaurant_top_weight: float = Field(default=0.80, ge=0.0, le=1.0)
    restaurant_breadth_weight: float = Field(default=0.20, ge=0.0, le=1.0)
    restaurant_top_dishes: int = Field(default=5, ge=1)
    praise_scale: float = Field(default=2.0, ge=0, description="log1p(general praise upvotes) multiplier.")
    praise_cap: float = Field(default=10.0, ge=0, description="Largest general-praise bonus.")

    mention_weight: float = 0.35
    upvote_weight: float = 0.40
    diversity_weight: float = 0.15
    recent_weight: float = 0.10
    mention_scale: float = Field(default=20.0, gt=0, description="log1p(mentions) multiplier.")
    upvote_scale: float = Field(default=12.0, gt=0, description="log1p(decayed upvotes) multiplier.")
    diversity_scale: float = Field(default=25.0, gt=0)
    recent_scale: float = Field(default=25.0, gt=0)

    category_weight_floor: float = Field(
        default=0.1,
        gt=0,
        description="Lower bound of each factor in a category-performance weight.",
    )
    category_signal_weight: float = Field(
        default=5.0,
        ge=0,
        description="Points of category performance per unit of restaurant-level signal strength.",
    )

    score_floor: float = 0.0
    score_ceiling: float = 100.0


class CacheConfig(BaseModel, frozen=True):
    """TTLs and sizes of the three cache tiers."""

    query_ttl_seconds: float = Field(default=3600.0, gt=0)
    recent_ttl_seconds: float = Field(default=86400.0, gt=0)
    static_ttl_seconds: float = Field(default=604800.0, gt=0)
    max_entries_per_tier: int = Field(default=10000, ge=1)


class IngestConfig(BaseModel, frozen=True):
    """Worker pool and collaborator-call settings."""

    batch_size: int = Field(default=50, ge=1)
    max_workers: int = Field(default=4, ge=1)
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)
    upstream_max_attempts: int = Field(default=3, ge=1)
    upstream_backoff_seconds: float = Field(default=0.5, ge=0)
    max_requeues: int = Field(default=1, ge=0)


class EngineConfig(BaseModel, frozen=True):
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)


def _default_config_paths(environ: Mapping[str, str]) -> list[Path]:
    """Return paths to check for foodgraph.toml (first existing wins)."""
    paths: list[Path] = []
    if environ.get(CONFIG_ENV_VAR):
        paths.append(Path(environ[CONFIG_ENV_VAR]))
    paths.append(Path.cwd() / "foodgraph.toml")
    return paths


def _env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, str]]:
    """Collect FOODGRAPH_<SECTION>_<FIELD> variables into per-section dicts."""
    out: dict[str, dict[str, str]] = {}
    for section, model in EngineConfig.model_fields.items():
        fields = model.annotation.model_fields  # type: ignore[union-attr]
        for field_name in fields:
            env_name = f"{ENV_PREFIX}{section.upper()}_{field_name.upper()}"
            if env_name in environ:
                out.setdefault(section, {})[field_name] = environ[env_name]
    return out


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load engine config from TOML and environment.

    Args:
        path: Explicit TOML file. Must exist if given.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        Validated EngineConfig. Unknown sections are ignored.

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist.
        pydantic.ValidationError: If any value is out of range.
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if path is not None:
        candidates = [Path(path)]
        if not candidates[0].is_file():
            raise FileNotFoundError(str(path))
    else:
        candidates = _default_config_paths(environ)

    for candidate in candidates:
        if candidate.is_file():
            with open(candidate, "rb") as f:
                data = tomllib.load(f)
            logger.debug("Loaded config from %s", candidate)
            break

    sections: dict[str, dict[str, Any]] = {}
    for section in EngineConfig.model_fields:
        table = data.get(section)
        if isinstance(table, dict):
            sections[section] = dict(table)
    for section, overrides in _env_overrides(environ).items():
        sections.setdefault(section, {}).update(overrides)

    return EngineConfig.model_validate(sections)
