"""
Engine configuration.

Every threshold used by the four engines lives here so that breakpoints can be
tuned against real trip data. Scalar settings can be overridden from the
environment as TRIPCORR_<FIELD_NAME>, e.g. TRIPCORR_MERGE_RADIUS_M=350.
"""

import os
import logging
from dataclasses import dataclass, fields, replace
from typing import Optional, Tuple

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = 'TRIPCORR_'


@dataclass(frozen=True)
class EngineConfig:
    chunk_size: int = 1000
    upsert_attempts: int = 3
    grid_cell_m: float = 500.0

    # POI discovery
    min_cluster_trips: int = 10
    merge_radius_m: float = 500.0
    max_recentre_passes: int = 5
    min_idle_minutes: float = 0.0
    default_poi_radius_km: float = 1.0
    confidence_trip_weight: float = 0.6
    confidence_accuracy_weight: float = 0.4
    confidence_trip_saturation: int = 50
    accuracy_scale_m: float = 200.0

    # Terminal verification: (max drift metres inclusive, status, confidence)
    default_terminal_radius_km: float = 2.0
    drift_bands: Tuple[Tuple[float, str, int], ...] = (
        (50.0, 'VERIFIED', 95),
        (100.0, 'GOOD', 85),
        (500.0, 'NEEDS_REVIEW', 70),
    )
    inaccurate_confidence: int = 25

    # Route patterns: (tier, min endpoint confidence, max avg accuracy m (exclusive), min trips)
    min_route_trips: int = 10
    route_min_poi_confidence: float = 0.0
    quality_tiers: Tuple[Tuple[str, float, float, int], ...] = (
        ('platinum', 90.0, 30.0, 50),
        ('gold', 80.0, 50.0, 20),
        ('silver', 70.0, 100.0, 10),
    )
    efficiency_bands: Tuple[Tuple[float, float], ...] = (
        (0.15, 95.0),
        (0.25, 85.0),
        (0.35, 75.0),
    )
    efficiency_floor: float = 65.0

    # Optimization: (priority, min km saved per trip, min trips per week)
    cost_per_km: float = 2.5
    weeks_per_year: int = 52
    optimization_priorities: Tuple[Tuple[str, float, float], ...] = (
        ('Critical', 50.0, 5.0),
        ('High', 25.0, 3.0),
        ('Medium', 10.0, 1.0),
    )

    # Customer matching
    customer_search_radius_km: float = 2.0
    min_name_similarity: float = 70.0
    customer_top_n: int = 5
    spatial_weight: float = 0.6
    name_weight: float = 0.4
    spatial_score_steps: Tuple[Tuple[float, float], ...] = (
        (0.5, 100.0),
        (1.0, 90.0),
        (2.0, 75.0),
    )
    spatial_score_beyond: float = 50.0
    spatial_score_no_coords: float = 25.0
    auto_assign_threshold: float = 90.0
    recommendation_buckets: Tuple[Tuple[float, str], ...] = (
        (90.0, 'auto_assign'),
        (75.0, 'review'),
        (60.0, 'possible'),
    )

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> 'EngineConfig':
        environ = os.environ if environ is None else environ
        overrides = {}

        for f in fields(cls):
            if f.type not in (int, float, str):
                continue
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == '':
                continue
            caster = f.type
            try:
                overrides[f.name] = caster(raw)
            except ValueError:
                raise ConfigurationError(f"{ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid {caster.__name__}")

        if overrides:
            logger.info("Engine config overrides from environment: %s", sorted(overrides))

        config = cls(**overrides)
        config.validate()
        return config

    def with_overrides(self, **changes) -> 'EngineConfig':
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self):
        positive = (
            'chunk_size', 'upsert_attempts', 'grid_cell_m', 'min_cluster_trips',
            'merge_radius_m', 'max_recentre_passes', 'default_poi_radius_km',
            'confidence_trip_saturation', 'accuracy_scale_m', 'default_terminal_radius_km',
            'min_route_trips', 'weeks_per_year', 'customer_search_radius_km', 'customer_top_n',
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")

        for name in ('min_idle_minutes', 'cost_per_km', 'route_min_poi_confidence'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative, got {getattr(self, name)}")

        for name in ('min_name_similarity', 'auto_assign_threshold', 'spatial_score_beyond',
                     'spatial_score_no_coords', 'inaccurate_confidence', 'efficiency_floor',
                     'route_min_poi_confidence'):
            if not 0 <= getattr(self, name) <= 100:
                raise ConfigurationError(f"{name} must be within [0, 100], got {getattr(self, name)}")

        _check_weights('confidence', self.confidence_trip_weight, self.confidence_accuracy_weight)
        _check_weights('customer', self.spatial_weight, self.name_weight)

        _check_ascending('drift_bands', [b[0] for b in self.drift_bands])
        _check_scores('drift_bands', [b[2] for b in self.drift_bands])
        _check_ascending('efficiency_bands', [b[0] for b in self.efficiency_bands])
        _check_ascending('spatial_score_steps', [s[0] for s in self.spatial_score_steps])
        _check_scores('spatial_score_steps', [s[1] for s in self.spatial_score_steps])
        _check_descending('recommendation_buckets', [b[0] for b in self.recommendation_buckets])
        _check_scores('recommendation_buckets', [b[0] for b in self.recommendation_buckets])
        _check_descending('quality_tiers', [t[1] for t in self.quality_tiers])
        _check_scores('quality_tiers', [t[1] for t in self.quality_tiers])
        _check_descending('optimization_priorities', [p[1] for p in self.optimization_priorities])

        for tier, _, max_accuracy, min_trips in self.quality_tiers:
            if max_accuracy <= 0 or min_trips < 0:
                raise ConfigurationError(f"quality tier {tier} has invalid accuracy/trip thresholds")

        if any(b[0] <= 0 for b in self.drift_bands):
            raise ConfigurationError("drift_bands thresholds must be positive")
        if any(s[0] <= 0 for s in self.spatial_score_steps):
            raise ConfigurationError("spatial_score_steps distances must be positive")


def _check_weights(label: str, *weights: float):
    if any(w < 0 or w > 1 for w in weights):
        raise ConfigurationError(f"{label} weights must be within [0, 1]")
    if abs(sum(weights) - 1.0) > 1e-6:
        raise ConfigurationError(f"{label} weights must sum to 1.0, got {sum(weights)}")


def _check_ascending(label: str, values: list):
    if any(b <= a for a, b in zip(values, values[1:])):
        raise ConfigurationError(f"{label} thresholds must be strictly ascending: {values}")


def _check_descending(label: str, values: list):
    if any(b > a for a, b in zip(values, values[1:])):
        raise ConfigurationError(f"{label} thresholds must be descending: {values}")


def _check_scores(label: str, values: list):
    if any(v < 0 or v > 100 for v in values):
        raise ConfigurationError(f"{label} scores must be within [0, 100]: {values}")


def get_database_url():
    db_url = os.environ.get("DATABASE_URL")
    if db_url:
        if db_url.startswith('https://'):
            db_url = db_url.replace('https://', 'postgresql://', 1)
        elif db_url.startswith('postgres://'):
            db_url = db_url.replace('postgres://', 'postgresql://', 1)
    return db_url
