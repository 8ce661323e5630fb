"""
Route Pattern Consolidator
Resolves every trip's endpoints to classified POIs, aggregates the trips per
ordered (start, end) POI pair and materializes the pairs with enough trips as
route_patterns rows. Also scans delivery routes for a closer loading terminal.
"""

import hashlib
import logging
import statistics
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

from tripcorrelation.config import EngineConfig
from tripcorrelation.exceptions import AmbiguousMatchError, ConfigurationError, InputDataError
from tripcorrelation.models import DiscoveredPOI, RoutePattern, TripHistory, atomic_upsert, db

from .geo import distance_km, is_valid_coordinate
from .grid import SpatialIndex

logger = logging.getLogger(__name__)

ROUTE_TYPES_BY_PAIR = {
    ('terminal', 'customer'): 'delivery',
    ('customer', 'terminal'): 'return',
    ('terminal', 'terminal'): 'transfer',
    ('customer', 'customer'): 'customer_to_customer',
}
LOWEST_PRIORITY = 'Low'


def route_hash_for(start_poi_id: int, end_poi_id: int) -> str:
    return hashlib.md5(f"{start_poi_id}|{end_poi_id}".encode()).hexdigest()


def classify_route_type(start_type: Optional[str], end_type: Optional[str]) -> str:
    if start_type == 'depot':
        return 'positioning'
    return ROUTE_TYPES_BY_PAIR.get((start_type, end_type), 'unknown')


def classify_quality_tier(start_confidence: Optional[float], end_confidence: Optional[float],
                          avg_gps_accuracy_m: Optional[float], trip_count: int,
                          config: EngineConfig) -> str:
    if start_confidence is None or end_confidence is None or avg_gps_accuracy_m is None:
        return 'bronze'
    weakest = min(start_confidence, end_confidence)
    for tier, min_confidence, max_accuracy, min_trips in config.quality_tiers:
        if weakest >= min_confidence and avg_gps_accuracy_m < max_accuracy and trip_count >= min_trips:
            return tier
    return 'bronze'


def efficiency_rating(avg_hours: float, std_hours: float, config: EngineConfig) -> float:
    cv = std_hours / avg_hours if avg_hours > 0 else 0.0
    for max_cv, rating in config.efficiency_bands:
        if cv < max_cv:
            return rating
    return config.efficiency_floor


def priority_for(distance_saved_km: float, weekly_frequency: float, config: EngineConfig) -> str:
    for name, min_saved, min_weekly in config.optimization_priorities:
        if distance_saved_km >= min_saved and weekly_frequency >= min_weekly:
            return name
    return LOWEST_PRIORITY


class RouteAccumulator:
    def __init__(self):
        self.travel_hours: List[float] = []
        self.distances_km: List[float] = []
        self.vehicles = Counter()
        self.drivers = Counter()
        self.first_trip = None
        self.last_trip = None

    def add(self, trip: TripHistory, hours: float):
        self.travel_hours.append(hours)
        self.distances_km.append(trip.distance_km)
        if trip.vehicle_registration:
            self.vehicles[trip.vehicle_registration] += 1
        if trip.driver_name:
            self.drivers[trip.driver_name] += 1
        if self.first_trip is None or trip.start_time < self.first_trip:
            self.first_trip = trip.start_time
        if self.last_trip is None or trip.start_time > self.last_trip:
            self.last_trip = trip.start_time

    @property
    def trip_count(self) -> int:
        return len(self.travel_hours)

    def trips_per_week(self) -> float:
        weeks = (self.last_trip - self.first_trip).total_seconds() / (7 * 24 * 3600)
        return round(self.trip_count / max(1.0, weeks), 2)

    def stats(self) -> Dict:
        avg_hours = statistics.mean(self.travel_hours)
        return {
            'trip_count': self.trip_count,
            'average_travel_time_hours': round(avg_hours, 3),
            'best_time_hours': round(min(self.travel_hours), 3),
            'worst_time_hours': round(max(self.travel_hours), 3),
            'time_variability': round(statistics.stdev(self.travel_hours), 3) if self.trip_count > 1 else 0.0,
            'average_distance_km': round(statistics.mean(self.distances_km), 2),
            'min_distance_km': round(min(self.distances_km), 2),
            'max_distance_km': round(max(self.distances_km), 2),
            'most_common_vehicle': self.vehicles.most_common(1)[0][0] if self.vehicles else None,
            'most_common_driver': self.drivers.most_common(1)[0][0] if self.drivers else None,
            'first_trip_date': self.first_trip,
            'last_trip_date': self.last_trip,
            'trips_per_week': self.trips_per_week()
        }


@dataclass
class RouteGenerationResult:
    created: int = 0
    updated: int = 0
    removed: int = 0
    matched_trips: int = 0
    unmatched_trips: int = 0
    same_location_trips: int = 0
    below_minimum: int = 0
    ambiguous_resolutions: int = 0
    invalid_rows: int = 0
    errors: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class OptimizationOpportunity:
    route_id: int
    route_hash: str
    customer_poi_id: int
    customer_name: str
    current_terminal_poi_id: int
    current_terminal_name: str
    alternative_terminal_poi_id: int
    alternative_terminal_name: str
    current_distance_km: float
    alternative_distance_km: float
    distance_saved_km: float
    weekly_frequency: float
    annual_km_saved: float
    annual_cost_saving: float
    priority: str

    def to_dict(self) -> Dict:
        return asdict(self)


class RoutePatternConsolidator:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()

    def _load_pois(self) -> Tuple[Dict[int, DiscoveredPOI], SpatialIndex]:
        pois = DiscoveredPOI.query.filter(
            DiscoveredPOI.classification_status == 'classified',
            DiscoveredPOI.poi_type.not_in(('ignore', 'unknown')),
            DiscoveredPOI.confidence_score >= self.config.route_min_poi_confidence
        ).order_by(DiscoveredPOI.id).all()

        index = SpatialIndex(self.config.grid_cell_m)
        for poi in pois:
            index.insert(poi.id, poi.centroid_latitude, poi.centroid_longitude, poi.service_radius_m)
        return {poi.id: poi for poi in pois}, index

    def _resolve(self, index: SpatialIndex, trip: TripHistory, kind: str, lat: float, lng: float,
                 result: RouteGenerationResult) -> Optional[int]:
        matches = index.containing(lat, lng)
        if not matches:
            return None

        chosen, best = matches[0]
        tied = [key for key, d in matches if d == best]
        if len(tied) > 1:
            result.ambiguous_resolutions += 1
            error = AmbiguousMatchError('trip', trip.id, tied, chosen)
            result.errors.append(error.to_dict())
            logger.debug("%s endpoint: %s", kind, error)
        return chosen

    def _validate(self, trip: TripHistory) -> Optional[str]:
        if not is_valid_coordinate(trip.start_latitude, trip.start_longitude):
            return "invalid start coordinates"
        if not is_valid_coordinate(trip.end_latitude, trip.end_longitude):
            return "invalid end coordinates"
        if trip.distance_km is None or trip.distance_km <= 0:
            return "non-positive distance"
        hours = trip.travel_time_hours
        if hours is None or hours <= 0:
            return "non-positive duration"
        return None

    def generate_route_patterns(self) -> RouteGenerationResult:
        result = RouteGenerationResult()
        pois, index = self._load_pois()
        pairs: Dict[Tuple[int, int], RouteAccumulator] = defaultdict(RouteAccumulator)

        for batch in TripHistory.iter_batches(self.config.chunk_size):
            for trip in batch:
                reason = self._validate(trip)
                if reason:
                    result.invalid_rows += 1
                    result.errors.append(InputDataError('trip', trip.id, reason).to_dict())
                    continue

                start_id = self._resolve(index, trip, 'start', trip.start_latitude, trip.start_longitude, result)
                end_id = self._resolve(index, trip, 'end', trip.end_latitude, trip.end_longitude, result)
                if start_id is None or end_id is None:
                    result.unmatched_trips += 1
                    continue
                if start_id == end_id:
                    result.same_location_trips += 1
                    continue

                result.matched_trips += 1
                pairs[(start_id, end_id)].add(trip, trip.travel_time_hours)

        qualified = {}
        for pair, acc in pairs.items():
            if acc.trip_count < self.config.min_route_trips:
                result.below_minimum += 1
                continue
            qualified[pair] = acc

        kept_hashes = set()
        for (start_id, end_id) in sorted(qualified):
            values = self._pattern_values(pois[start_id], pois[end_id], qualified[(start_id, end_id)])
            values['has_return_route'] = (end_id, start_id) in qualified
            kept_hashes.add(values['route_hash'])

            outcome = atomic_upsert(lambda v=values: self._write_pattern(v), values['route_hash'],
                                    self.config.upsert_attempts)
            if outcome == 'created':
                result.created += 1
            else:
                result.updated += 1

        for pattern in RoutePattern.query.all():
            if pattern.route_hash not in kept_hashes:
                db.session.delete(pattern)
                result.removed += 1
        db.session.commit()

        logger.info(
            "Route patterns: %d created, %d updated, %d removed; %d matched, %d unmatched, "
            "%d same-location, %d below minimum, %d invalid",
            result.created, result.updated, result.removed, result.matched_trips,
            result.unmatched_trips, result.same_location_trips, result.below_minimum, result.invalid_rows
        )
        return result

    def _pattern_values(self, start: DiscoveredPOI, end: DiscoveredPOI, acc: RouteAccumulator) -> Dict:
        values = acc.stats()
        straight = distance_km(start.centroid_latitude, start.centroid_longitude,
                               end.centroid_latitude, end.centroid_longitude)
        accuracies = [a for a in (start.gps_accuracy_meters, end.gps_accuracy_meters) if a is not None]
        avg_accuracy = round(sum(accuracies) / len(accuracies), 1) if accuracies else None

        values.update({
            'route_hash': route_hash_for(start.id, end.id),
            'start_poi_id': start.id,
            'end_poi_id': end.id,
            'start_location': start.display_name,
            'end_location': end.display_name,
            'route_type': classify_route_type(start.poi_type, end.poi_type),
            'data_quality_tier': classify_quality_tier(
                start.confidence_score, end.confidence_score, avg_accuracy, acc.trip_count, self.config
            ),
            'efficiency_rating': efficiency_rating(
                values['average_travel_time_hours'], values['time_variability'], self.config
            ),
            'straight_line_distance_km': round(straight, 2),
            'route_deviation_ratio': round(values['average_distance_km'] / straight, 3) if straight > 0 else None,
            'avg_gps_accuracy_meters': avg_accuracy,
            'start_poi_confidence': start.confidence_score,
            'end_poi_confidence': end.confidence_score,
            'is_stale': False
        })
        return values

    def _write_pattern(self, values: Dict) -> str:
        pattern = RoutePattern.query.filter_by(route_hash=values['route_hash']).first()
        outcome = 'updated'
        if pattern is None:
            pattern = RoutePattern()
            db.session.add(pattern)
            outcome = 'created'
        for key, value in values.items():
            setattr(pattern, key, value)
        return outcome

    def find_optimization_opportunities(self, min_priority: Optional[str] = None) -> List[OptimizationOpportunity]:
        ranking = [p[0] for p in self.config.optimization_priorities] + [LOWEST_PRIORITY]
        if min_priority is not None and min_priority not in ranking:
            raise ConfigurationError(f"Unknown priority {min_priority!r}; expected one of {ranking}")

        terminals = DiscoveredPOI.query.filter_by(
            classification_status='classified', poi_type='terminal'
        ).order_by(DiscoveredPOI.id).all()
        routes = RoutePattern.query.filter_by(route_type='delivery', is_stale=False).order_by(RoutePattern.id).all()

        opportunities = []
        for route in routes:
            opportunity = self._best_alternative(route, terminals)
            if opportunity is None:
                continue
            if min_priority is not None and ranking.index(opportunity.priority) > ranking.index(min_priority):
                continue
            opportunities.append(opportunity)

        opportunities.sort(key=lambda o: (-o.annual_cost_saving, o.route_id))
        logger.info("Found %d optimization opportunities across %d delivery routes", len(opportunities), len(routes))
        return opportunities

    def _best_alternative(self, route: RoutePattern, terminals: List[DiscoveredPOI]) -> Optional[OptimizationOpportunity]:
        start = route.start_poi
        end = route.end_poi
        current = distance_km(start.centroid_latitude, start.centroid_longitude,
                              end.centroid_latitude, end.centroid_longitude)

        best = None
        for terminal in terminals:
            if terminal.id == start.id:
                continue
            d = distance_km(terminal.centroid_latitude, terminal.centroid_longitude,
                            end.centroid_latitude, end.centroid_longitude)
            if best is None or d < best[1]:
                best = (terminal, d)

        if best is None or best[1] >= current:
            return None

        alternative, alt_distance = best
        deviation = max(1.0, route.route_deviation_ratio or 1.0)
        saved = (current - alt_distance) * deviation
        weekly = route.trips_per_week or 0.0
        annual_km = saved * weekly * self.config.weeks_per_year

        return OptimizationOpportunity(
            route_id=route.id,
            route_hash=route.route_hash,
            customer_poi_id=end.id,
            customer_name=end.display_name,
            current_terminal_poi_id=start.id,
            current_terminal_name=start.display_name,
            alternative_terminal_poi_id=alternative.id,
            alternative_terminal_name=alternative.display_name,
            current_distance_km=round(current, 2),
            alternative_distance_km=round(alt_distance, 2),
            distance_saved_km=round(saved, 2),
            weekly_frequency=weekly,
            annual_km_saved=round(annual_km, 1),
            annual_cost_saving=round(annual_km * self.config.cost_per_km, 2),
            priority=priority_for(saved, weekly, self.config)
        )
