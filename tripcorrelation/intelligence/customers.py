"""
Customer Assignment Matcher
Links customer-classified POIs to the customer registry by combining how close
a registry entry is with how similar its name is to the POI's name.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from tripcorrelation.config import EngineConfig
from tripcorrelation.exceptions import ConfigurationError, InputDataError, RecordNotFoundError
from tripcorrelation.models import CustomerLocation, DiscoveredPOI, db

from .geo import distance_km, is_valid_coordinate
from .grid import SpatialIndex
from .similarity import RapidFuzzSimilarity, StringSimilarity

logger = logging.getLogger(__name__)

AUTO_METHODS = {
    'spatial_and_name': 'auto_combined',
    'spatial': 'auto_spatial',
    'name': 'auto_name_match',
}


def spatial_score(distance: Optional[float], config: EngineConfig,
                  max_distance_km: Optional[float] = None) -> float:
    if distance is None:
        return config.spatial_score_no_coords
    if max_distance_km is not None and distance > max_distance_km:
        return config.spatial_score_beyond
    for max_km, score in config.spatial_score_steps:
        if distance <= max_km:
            return score
    return config.spatial_score_beyond


def combine_confidence(spatial: float, name_similarity: float, config: EngineConfig) -> float:
    score = config.spatial_weight * spatial + config.name_weight * name_similarity
    return round(min(100.0, max(0.0, score)), 1)


def recommendation_for(confidence: float, config: EngineConfig) -> str:
    for threshold, label in config.recommendation_buckets:
        if confidence >= threshold:
            return label
    return 'low_confidence'


@dataclass
class CustomerMatch:
    poi_id: int
    poi_name: str
    customer_id: int
    customer_name: str
    bp_id: Optional[str]
    distance_km: Optional[float]
    spatial_score: float
    name_similarity: float
    confidence: float
    match_method: str
    recommendation: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class CustomerMatchRun:
    pois_considered: int = 0
    auto_assigned: int = 0
    matches: List[CustomerMatch] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'pois_considered': self.pois_considered,
            'auto_assigned': self.auto_assigned,
            'matches': [m.to_dict() for m in self.matches],
            'errors': self.errors
        }


class CustomerMatcher:
    def __init__(self, config: Optional[EngineConfig] = None,
                 similarity: Optional[StringSimilarity] = None):
        self.config = config or EngineConfig.from_env()
        self.similarity = similarity or RapidFuzzSimilarity()

    def _targets(self, poi_id: Optional[int]) -> List[DiscoveredPOI]:
        if poi_id is not None:
            poi = db.session.get(DiscoveredPOI, poi_id)
            if poi is None:
                raise RecordNotFoundError('poi', poi_id)
            if poi.classification_status != 'classified' or poi.poi_type != 'customer':
                raise ConfigurationError(f"POI {poi_id} is not a classified customer location")
            return [poi]

        return DiscoveredPOI.query.filter(
            DiscoveredPOI.classification_status == 'classified',
            DiscoveredPOI.poi_type == 'customer',
            DiscoveredPOI.matched_customer_id.is_(None)
        ).order_by(DiscoveredPOI.id).all()

    def _load_registry(self, run: CustomerMatchRun):
        customers = CustomerLocation.query.filter_by(active=True).order_by(CustomerLocation.id).all()
        index = SpatialIndex(self.config.grid_cell_m)
        located = set()

        for customer in customers:
            if customer.latitude is None and customer.longitude is None:
                continue
            if not is_valid_coordinate(customer.latitude, customer.longitude):
                run.errors.append(InputDataError('customer', customer.id, "invalid coordinates").to_dict())
                continue
            index.insert(customer.id, customer.latitude, customer.longitude)
            located.add(customer.id)

        return customers, index, located

    def match_customers(self, poi_id: Optional[int] = None, max_distance_km: Optional[float] = None,
                        min_name_similarity: Optional[float] = None, auto_assign: bool = False,
                        actor_id: str = 'system', top_n: Optional[int] = None) -> CustomerMatchRun:
        max_distance_km = self.config.customer_search_radius_km if max_distance_km is None else max_distance_km
        min_name_similarity = self.config.min_name_similarity if min_name_similarity is None else min_name_similarity
        top_n = self.config.customer_top_n if top_n is None else top_n

        if max_distance_km <= 0:
            raise ConfigurationError(f"max_distance_km must be positive, got {max_distance_km}")
        if not 0 <= min_name_similarity <= 100:
            raise ConfigurationError(f"min_name_similarity must be within [0, 100], got {min_name_similarity}")
        if top_n < 1:
            raise ConfigurationError(f"top_n must be at least 1, got {top_n}")

        targets = self._targets(poi_id)
        run = CustomerMatchRun(pois_considered=len(targets))
        if not targets:
            return run

        customers, index, located = self._load_registry(run)

        for poi in targets:
            matches = self._match_poi(poi, customers, index, located, max_distance_km, min_name_similarity)
            matches = matches[:top_n]
            run.matches.extend(matches)

            if auto_assign and matches and poi.matched_customer_id is None:
                top = matches[0]
                if top.confidence >= self.config.auto_assign_threshold:
                    self.assign_customer(poi.id, top.customer_id, actor_id,
                                         method=AUTO_METHODS[top.match_method], confidence=top.confidence)
                    run.auto_assigned += 1

        logger.info("Customer matching: %d POIs, %d candidate matches, %d auto-assigned",
                    run.pois_considered, len(run.matches), run.auto_assigned)
        return run

    def _match_poi(self, poi: DiscoveredPOI, customers: List[CustomerLocation], index: SpatialIndex,
                   located: set, max_distance_km: float, min_name_similarity: float) -> List[CustomerMatch]:
        nearby = dict(index.within(poi.centroid_latitude, poi.centroid_longitude, max_distance_km * 1000))
        poi_name = poi.display_name

        matches = []
        for customer in customers:
            name_score = round(self.similarity.similarity(poi_name, customer.customer_name) * 100, 1)
            is_near = customer.id in nearby
            is_named = name_score >= min_name_similarity
            if not (is_near or is_named):
                continue

            if is_near:
                distance = nearby[customer.id] / 1000
            elif customer.id in located:
                distance = distance_km(poi.centroid_latitude, poi.centroid_longitude,
                                       customer.latitude, customer.longitude)
            else:
                distance = None

            if is_near and is_named:
                method = 'spatial_and_name'
            elif is_near:
                method = 'spatial'
            else:
                method = 'name'

            spatial = spatial_score(distance, self.config, max_distance_km)
            confidence = combine_confidence(spatial, name_score, self.config)
            matches.append(CustomerMatch(
                poi_id=poi.id,
                poi_name=poi_name,
                customer_id=customer.id,
                customer_name=customer.customer_name,
                bp_id=customer.bp_id,
                distance_km=round(distance, 3) if distance is not None else None,
                spatial_score=spatial,
                name_similarity=name_score,
                confidence=confidence,
                match_method=method,
                recommendation=recommendation_for(confidence, self.config)
            ))

        matches.sort(key=lambda m: (
            -m.confidence,
            m.distance_km if m.distance_km is not None else float('inf'),
            m.customer_id
        ))
        return matches

    def assign_customer(self, poi_id: int, customer_id: int, actor_id: Optional[str],
                        method: str = 'manual', confidence: Optional[float] = None) -> DiscoveredPOI:
        if confidence is not None and not 0 <= confidence <= 100:
            raise ConfigurationError(f"confidence must be within [0, 100], got {confidence}")

        poi = db.session.get(DiscoveredPOI, poi_id)
        if poi is None:
            raise RecordNotFoundError('poi', poi_id)
        customer = db.session.get(CustomerLocation, customer_id)
        if customer is None:
            raise RecordNotFoundError('customer', customer_id)

        previous = poi.matched_customer_id
        poi.matched_customer_id = customer.id
        poi.customer_assignment_method = method
        poi.customer_assignment_confidence = confidence
        poi.customer_assigned_at = datetime.utcnow()
        poi.customer_assigned_by = actor_id
        db.session.commit()

        if previous and previous != customer.id:
            logger.info("POI %s reassigned from customer %s to %s (%s)", poi_id, previous, customer.id, method)
        else:
            logger.info("POI %s assigned to customer %s (%s)", poi_id, customer.id, method)
        return poi

    def unassign_customer(self, poi_id: int) -> DiscoveredPOI:
        poi = db.session.get(DiscoveredPOI, poi_id)
        if poi is None:
            raise RecordNotFoundError('poi', poi_id)

        poi.matched_customer_id = None
        poi.customer_assignment_method = None
        poi.customer_assignment_confidence = None
        poi.customer_assigned_at = None
        poi.customer_assigned_by = None
        db.session.commit()

        logger.info("POI %s customer assignment cleared", poi_id)
        return poi
