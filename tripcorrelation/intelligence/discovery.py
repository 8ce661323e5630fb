"""
POI Discovery Engine
Clusters trip start/end points into candidate operational locations and keeps
discovered_poi in step with them: nearby clusters update the existing POI in
place, anything new is created as an unclassified POI for an operator to name.

Clustering is density based: densest seeds first, each cluster re-centred until
it stops growing, then close centroids merged pairwise.
"""

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from tripcorrelation.config import EngineConfig
from tripcorrelation.exceptions import ConfigurationError, InputDataError, RecordNotFoundError
from tripcorrelation.models import (
    CLASSIFICATION_STATUSES, POI_TYPES, DiscoveredPOI, TerminalLocation, TripHistory,
    atomic_upsert, db
)

from .geo import (
    METERS_PER_DEGREE_LAT, bounding_box, centroid, distance_m, haversine_m, is_valid_coordinate, spread_m
)
from .grid import SpatialIndex

logger = logging.getLogger(__name__)

MIN_SERVICE_RADIUS_KM = 0.1
MAX_SERVICE_RADIUS_KM = 500.0
DOMINANT_SHARE = 0.8


@dataclass
class TerminalDetails:
    kind: ClassVar[str] = 'terminal'
    allowed_types: ClassVar[Tuple[str, ...]] = ('terminal',)

    terminal_id: Optional[int] = None
    carrier: Optional[str] = None


@dataclass
class SiteDetails:
    kind: ClassVar[str] = 'site'
    allowed_types: ClassVar[Tuple[str, ...]] = ('customer', 'depot', 'rest_area')

    address: Optional[str] = None
    contact: Optional[str] = None


POIDetails = Union[TerminalDetails, SiteDetails]
DETAIL_KINDS = {cls.kind: cls for cls in (TerminalDetails, SiteDetails)}


def details_from_dict(data: Optional[Dict]) -> Optional[POIDetails]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ConfigurationError("POI details must be an object with a 'kind' tag")

    data = dict(data)
    kind = data.pop('kind', None)
    cls = DETAIL_KINDS.get(kind)
    if cls is None:
        raise ConfigurationError(f"Unknown POI details kind: {kind!r}")
    try:
        return cls(**data)
    except TypeError:
        raise ConfigurationError(f"Unexpected fields for {kind} details: {sorted(data)}")


def details_to_dict(details: Optional[POIDetails]) -> Optional[Dict]:
    if details is None:
        return None
    return {'kind': details.kind, **asdict(details)}


@dataclass
class EndpointSample:
    trip_id: int
    kind: str
    lat: float
    lng: float
    seen_at: Optional[datetime]
    idle_hours: Optional[float]


@dataclass
class ClusterCandidate:
    members: List[int]
    lat: float
    lng: float
    start_count: int
    end_count: int
    gps_accuracy_m: float
    confidence_score: float
    avg_idle_hours: Optional[float]
    first_seen: Optional[datetime]
    last_seen: Optional[datetime]

    @property
    def trip_count(self) -> int:
        return self.start_count + self.end_count


@dataclass
class DiscoveryResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    points_analyzed: int = 0
    clusters_found: int = 0
    noise_points: int = 0
    invalid_rows: int = 0
    dry_run: bool = False
    poi_ids: List[int] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


def confidence_score(trip_count: int, gps_accuracy_m: Optional[float],
                     config: EngineConfig) -> float:
    saturation = config.confidence_trip_saturation
    if trip_count <= saturation:
        trip_term = 80.0 * trip_count / saturation
    else:
        trip_term = 80.0 + 20.0 * (1 - saturation / trip_count)

    if gps_accuracy_m is None:
        accuracy_term = 0.0
    else:
        accuracy_term = 100.0 * max(0.0, 1 - gps_accuracy_m / config.accuracy_scale_m)

    score = config.confidence_trip_weight * trip_term + config.confidence_accuracy_weight * accuracy_term
    return round(min(100.0, max(0.0, score)), 1)


def suggest_name(start_count: int, end_count: int) -> str:
    total = start_count + end_count
    if total and start_count / total > DOMINANT_SHARE:
        label = "Start Point Cluster"
    elif total and end_count / total > DOMINANT_SHARE:
        label = "End Point Cluster"
    else:
        label = "Mixed Use Location"
    return f"{label} ({total} trips)"


def spatial_key_for(lat: float, lng: float, radius_m: float) -> str:
    """Grid cell of a new POI's centroid. Cells span half the merge radius, so two
    POIs sharing a cell are always close enough to have been merged."""
    cell_deg = (radius_m / 2) / METERS_PER_DEGREE_LAT
    return f"{math.floor((lat + 90) / cell_deg)}:{math.floor((lng + 180) / cell_deg)}"


def suggest_poi_type(poi: DiscoveredPOI) -> str:
    if poi.matched_terminal_id:
        return 'terminal'
    total = (poi.start_point_count or 0) + (poi.end_point_count or 0)
    if not total:
        return 'unknown'
    if poi.start_point_count / total > DOMINANT_SHARE:
        return 'terminal'
    if poi.end_point_count / total > DOMINANT_SHARE:
        return 'customer'
    return 'unknown'


def cluster_points(points: Sequence[Tuple[float, float]], min_points: int, radius_m: float,
                   cell_size_m: float = 500.0, max_passes: int = 5) -> List[List[int]]:
    """
    Group points into clusters of at least min_points members.

    Returns lists of indices into points. Points not in any list are noise.
    Output is deterministic for a given input order.
    """
    index = SpatialIndex(cell_size_m, distance_fn=haversine_m)
    for i, (lat, lng) in enumerate(points):
        index.insert(i, lat, lng)

    density = [index.count_near(lat, lng, radius_m) for lat, lng in points]
    order = sorted(range(len(points)), key=lambda i: (-density[i], i))

    clusters = []
    for seed in order:
        if seed not in index:
            continue

        members = [k for k, _ in index.within(points[seed][0], points[seed][1], radius_m)]
        if len(members) < min_points:
            continue

        for _ in range(max_passes):
            c_lat, c_lng = centroid(points[k] for k in members)
            grown = set(members)
            grown.update(k for k, _ in index.within(c_lat, c_lng, radius_m))
            if len(grown) == len(members):
                break
            members = sorted(grown)

        for k in members:
            index.remove(k)
        clusters.append(sorted(members))

    centres = [centroid(points[k] for k in members) for members in clusters]
    while True:
        best = None
        for i in range(len(clusters)):
            for j in range(i + 1, len(clusters)):
                d = haversine_m(centres[i][0], centres[i][1], centres[j][0], centres[j][1])
                if d < radius_m and (best is None or d < best[0]):
                    best = (d, i, j)
        if best is None:
            break

        _, i, j = best
        clusters[i] = sorted(clusters[i] + clusters[j])
        centres[i] = centroid(points[k] for k in clusters[i])
        del clusters[j]
        del centres[j]

    return [members for members in clusters if len(members) >= min_points]


class POIDiscoveryEngine:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()

    def _load_endpoints(self, since, until, result: DiscoveryResult) -> List[EndpointSample]:
        min_idle_hours = self.config.min_idle_minutes / 60.0
        samples = []

        for batch in TripHistory.iter_batches(self.config.chunk_size, since, until):
            for trip in batch:
                if min_idle_hours > 0 and (trip.idling_time_hours or 0) < min_idle_hours:
                    continue

                for kind, lat, lng, seen_at in (
                    ('start', trip.start_latitude, trip.start_longitude, trip.start_time),
                    ('end', trip.end_latitude, trip.end_longitude, trip.end_time)
                ):
                    if not is_valid_coordinate(lat, lng):
                        result.invalid_rows += 1
                        result.errors.append(
                            InputDataError('trip', trip.id, f"invalid {kind} coordinates").to_dict()
                        )
                        continue
                    samples.append(EndpointSample(trip.id, kind, float(lat), float(lng),
                                                  seen_at, trip.idling_time_hours))

        return samples

    def _summarize(self, samples: List[EndpointSample], members: List[int]) -> ClusterCandidate:
        points = [(samples[k].lat, samples[k].lng) for k in members]
        lat, lng = centroid(points)
        accuracy = spread_m(points, (lat, lng))

        starts = sum(1 for k in members if samples[k].kind == 'start')
        idles = [samples[k].idle_hours for k in members if samples[k].idle_hours is not None]
        seen = [samples[k].seen_at for k in members if samples[k].seen_at is not None]

        return ClusterCandidate(
            members=members,
            lat=lat,
            lng=lng,
            start_count=starts,
            end_count=len(members) - starts,
            gps_accuracy_m=round(accuracy, 1),
            confidence_score=confidence_score(len(members), accuracy, self.config),
            avg_idle_hours=sum(idles) / len(idles) if idles else None,
            first_seen=min(seen) if seen else None,
            last_seen=max(seen) if seen else None
        )

    def discover_pois(self, min_cluster_trips: Optional[int] = None,
                      merge_radius_meters: Optional[float] = None,
                      dry_run: bool = False, since=None, until=None) -> DiscoveryResult:
        min_points = self.config.min_cluster_trips if min_cluster_trips is None else min_cluster_trips
        radius_m = self.config.merge_radius_m if merge_radius_meters is None else merge_radius_meters
        if min_points < 1:
            raise ConfigurationError(f"min_cluster_trips must be at least 1, got {min_points}")
        if radius_m <= 0:
            raise ConfigurationError(f"merge_radius_meters must be positive, got {radius_m}")

        result = DiscoveryResult(dry_run=dry_run)
        samples = self._load_endpoints(since, until, result)
        result.points_analyzed = len(samples)

        clusters = cluster_points([(s.lat, s.lng) for s in samples], min_points, radius_m,
                                  self.config.grid_cell_m, self.config.max_recentre_passes)
        result.clusters_found = len(clusters)
        result.noise_points = len(samples) - sum(len(members) for members in clusters)

        existing = SpatialIndex(self.config.grid_cell_m)
        for poi in DiscoveredPOI.query.order_by(DiscoveredPOI.id).all():
            existing.insert(poi.id, poi.centroid_latitude, poi.centroid_longitude)

        groups: Dict[Optional[int], List[List[int]]] = {}
        fresh = []
        for members in clusters:
            c_lat, c_lng = centroid((samples[k].lat, samples[k].lng) for k in members)
            hit = existing.nearest_within(c_lat, c_lng, radius_m)
            if hit is None:
                fresh.append(members)
            else:
                groups.setdefault(hit[0], []).extend(members)

        for poi_id in sorted(groups):
            candidate = self._summarize(samples, sorted(groups[poi_id]))
            self._apply_update(poi_id, candidate, result)

        for members in fresh:
            candidate = self._summarize(samples, members)
            self._apply_create(candidate, result, radius_m)

        logger.info(
            "POI discovery%s: %d points, %d clusters, %d created, %d updated, %d skipped, %d invalid",
            " (dry run)" if dry_run else "", result.points_analyzed, result.clusters_found,
            result.created, result.updated, result.skipped, result.invalid_rows
        )
        return result

    def _refresh(self, target: DiscoveredPOI, candidate: ClusterCandidate):
        target.centroid_latitude = candidate.lat
        target.centroid_longitude = candidate.lng
        target.trip_count = candidate.trip_count
        target.start_point_count = candidate.start_count
        target.end_point_count = candidate.end_count
        target.gps_accuracy_meters = candidate.gps_accuracy_m
        target.confidence_score = candidate.confidence_score
        target.avg_idle_time_hours = candidate.avg_idle_hours
        if target.classification_status == 'unclassified':
            target.suggested_name = suggest_name(candidate.start_count, candidate.end_count)
        if candidate.first_seen and (target.first_seen is None or candidate.first_seen < target.first_seen):
            target.first_seen = candidate.first_seen
        if candidate.last_seen and (target.last_seen is None or candidate.last_seen > target.last_seen):
            target.last_seen = candidate.last_seen

    def _apply_update(self, poi_id: int, candidate: ClusterCandidate, result: DiscoveryResult):
        poi = db.session.get(DiscoveredPOI, poi_id)
        if poi is None or poi.classification_status == 'ignored':
            result.skipped += 1
            return
        if result.dry_run:
            result.updated += 1
            result.poi_ids.append(poi_id)
            return

        def apply():
            target = db.session.get(DiscoveredPOI, poi_id)
            self._refresh(target, candidate)
            return target.id

        atomic_upsert(apply, f"poi:{poi_id}", self.config.upsert_attempts)
        result.updated += 1
        result.poi_ids.append(poi_id)

    def _nearest_existing(self, lat: float, lng: float, radius_m: float) -> Optional[DiscoveredPOI]:
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_m)
        nearby = DiscoveredPOI.query.filter(
            DiscoveredPOI.centroid_latitude.between(min_lat, max_lat),
            DiscoveredPOI.centroid_longitude.between(min_lng, max_lng)
        ).all()

        best = None
        for poi in nearby:
            d = distance_m(lat, lng, poi.centroid_latitude, poi.centroid_longitude)
            if d <= radius_m and (best is None or (d, poi.id) < best[0]):
                best = ((d, poi.id), poi)
        return best[1] if best else None

    def _apply_create(self, candidate: ClusterCandidate, result: DiscoveryResult,
                      radius_m: Optional[float] = None):
        if result.dry_run:
            result.created += 1
            return

        radius_m = self.config.merge_radius_m if radius_m is None else radius_m
        key = spatial_key_for(candidate.lat, candidate.lng, radius_m)

        def apply():
            # another run may have written a POI here since the index was built
            existing = self._nearest_existing(candidate.lat, candidate.lng, radius_m)
            if existing is not None:
                if existing.classification_status == 'ignored':
                    return 'skipped', existing.id
                self._refresh(existing, candidate)
                return 'updated', existing.id

            poi = DiscoveredPOI(
                centroid_latitude=candidate.lat,
                centroid_longitude=candidate.lng,
                spatial_key=key,
                service_radius_km=self.config.default_poi_radius_km,
                classification_status='unclassified',
                poi_type='unknown'
            )
            self._refresh(poi, candidate)
            db.session.add(poi)
            db.session.flush()
            return 'created', poi.id

        action, poi_id = atomic_upsert(apply, f"poi@{key}", self.config.upsert_attempts)
        if action == 'skipped':
            result.skipped += 1
            return
        setattr(result, action, getattr(result, action) + 1)
        result.poi_ids.append(poi_id)

    def classify_poi(self, poi_id: int, poi_type: str, name: Optional[str],
                     details: Union[POIDetails, Dict, None] = None,
                     service_radius_km: Optional[float] = None,
                     notes: Optional[str] = None, actor_id: Optional[str] = None) -> DiscoveredPOI:
        if poi_type not in POI_TYPES or poi_type == 'unknown':
            raise ConfigurationError(f"Invalid POI type: {poi_type!r}")
        if poi_type != 'ignore' and not (name or '').strip():
            raise ConfigurationError("A name is required to classify a POI")
        if service_radius_km is not None and not (
                MIN_SERVICE_RADIUS_KM <= service_radius_km <= MAX_SERVICE_RADIUS_KM):
            raise ConfigurationError(
                f"service_radius_km must be within [{MIN_SERVICE_RADIUS_KM}, {MAX_SERVICE_RADIUS_KM}]"
            )

        if isinstance(details, dict):
            details = details_from_dict(details)
        if details is not None and poi_type not in details.allowed_types:
            raise ConfigurationError(f"{details.kind} details cannot be attached to a {poi_type} POI")

        poi = db.session.get(DiscoveredPOI, poi_id)
        if poi is None:
            raise RecordNotFoundError('poi', poi_id)

        terminal_id = getattr(details, 'terminal_id', None)
        if terminal_id is not None and db.session.get(TerminalLocation, terminal_id) is None:
            raise RecordNotFoundError('terminal', terminal_id)

        poi.poi_type = poi_type
        poi.classification_status = 'ignored' if poi_type == 'ignore' else 'classified'
        if name:
            poi.actual_name = name.strip()
        poi.details = details_to_dict(details)
        if poi_type != 'terminal':
            poi.matched_terminal_id = None
        elif terminal_id is not None:
            poi.matched_terminal_id = terminal_id
        if service_radius_km is not None:
            poi.service_radius_km = service_radius_km
        if notes is not None:
            poi.notes = notes
        poi.classified_by = actor_id
        poi.classified_at = datetime.utcnow()
        db.session.commit()

        logger.info("POI %s classified as %s by %s", poi_id, poi_type, actor_id or 'unknown')
        return poi

    def ignore_poi(self, poi_id: int, reason: Optional[str] = None,
                   actor_id: Optional[str] = None) -> DiscoveredPOI:
        poi = db.session.get(DiscoveredPOI, poi_id)
        if poi is None:
            raise RecordNotFoundError('poi', poi_id)

        poi.classification_status = 'ignored'
        poi.poi_type = 'ignore'
        poi.notes = reason or "Marked as ignored"
        poi.classified_by = actor_id
        poi.classified_at = datetime.utcnow()
        db.session.commit()

        logger.info("POI %s ignored: %s", poi_id, poi.notes)
        return poi

    def list_pois(self, status=None, poi_type=None, min_trip_count=None,
                  min_confidence=None) -> List[DiscoveredPOI]:
        query = DiscoveredPOI.query
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            unknown = set(statuses) - set(CLASSIFICATION_STATUSES)
            if unknown:
                raise ConfigurationError(f"Unknown classification status: {sorted(unknown)}")
            query = query.filter(DiscoveredPOI.classification_status.in_(statuses))
        if poi_type:
            types = [poi_type] if isinstance(poi_type, str) else list(poi_type)
            query = query.filter(DiscoveredPOI.poi_type.in_(types))
        if min_trip_count is not None:
            query = query.filter(DiscoveredPOI.trip_count >= min_trip_count)
        if min_confidence is not None:
            query = query.filter(DiscoveredPOI.confidence_score >= min_confidence)

        return query.order_by(DiscoveredPOI.trip_count.desc(), DiscoveredPOI.id).all()

    def discovery_summary(self) -> Dict:
        pois = DiscoveredPOI.query.all()
        by_status = Counter(p.classification_status for p in pois)
        by_type = Counter(p.poi_type for p in pois)
        active = [p for p in pois if p.classification_status != 'ignored']

        return {
            'total_pois': len(pois),
            'by_status': {s: by_status.get(s, 0) for s in CLASSIFICATION_STATUSES},
            'by_type': dict(sorted(by_type.items())),
            'total_trips_covered': sum(p.trip_count or 0 for p in active),
            'avg_confidence': round(sum(p.confidence_score or 0 for p in active) / len(active), 1) if active else None,
            'needs_classification': by_status.get('unclassified', 0)
        }
