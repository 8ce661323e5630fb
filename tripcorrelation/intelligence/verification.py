"""
Terminal GPS Verification
Compares each registered terminal position with where trucks actually start and
finish near it, and flags terminals whose registry coordinates have drifted.

Verification is read-only; the registry only changes through
accept_terminal_correction.
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import or_

from tripcorrelation.config import EngineConfig
from tripcorrelation.exceptions import ConfigurationError, InsufficientDataError, RecordNotFoundError
from tripcorrelation.models import DiscoveredPOI, RoutePattern, TerminalLocation, TripHistory, db

from .geo import bounding_box, centroid, distance_m, in_box, is_valid_coordinate

logger = logging.getLogger(__name__)

NO_DATA = 'NO_DATA'
INACCURATE = 'INACCURATE'
CORRECTABLE_STATUSES = ('NEEDS_REVIEW', INACCURATE)


def classify_drift(drift_m: Optional[float], config: EngineConfig) -> Tuple[str, Optional[int]]:
    if drift_m is None:
        return NO_DATA, None
    for max_drift, status, confidence in config.drift_bands:
        if drift_m <= max_drift:
            return status, confidence
    return INACCURATE, config.inaccurate_confidence


@dataclass
class TerminalVerificationResult:
    terminal_id: int
    terminal_name: str
    carrier: Optional[str]
    registered_latitude: Optional[float]
    registered_longitude: Optional[float]
    service_radius_km: float
    status: str
    confidence: Optional[int]
    trip_count: int = 0
    start_point_count: int = 0
    end_point_count: int = 0
    centroid_latitude: Optional[float] = None
    centroid_longitude: Optional[float] = None
    start_centroid: Optional[Tuple[float, float]] = None
    end_centroid: Optional[Tuple[float, float]] = None
    drift_meters: Optional[float] = None
    recommended_latitude: Optional[float] = None
    recommended_longitude: Optional[float] = None
    recommendation: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TerminalCorrection:
    terminal_id: int
    previous_latitude: Optional[float]
    previous_longitude: Optional[float]
    latitude: float
    longitude: float
    moved_meters: Optional[float]
    stale_routes: int
    verified_at: datetime
    updated_by: Optional[str]

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['verified_at'] = self.verified_at.isoformat()
        return data


@dataclass
class _TerminalMatches:
    terminal: TerminalLocation
    radius_m: float
    box: Tuple[float, float, float, float]
    starts: List[Tuple[float, float]] = field(default_factory=list)
    ends: List[Tuple[float, float]] = field(default_factory=list)
    trip_ids: Set[int] = field(default_factory=set)


def _recommendation(status: str, drift_m: Optional[float], recommended: Optional[Tuple[float, float]]) -> str:
    if status == NO_DATA:
        return "No trips observed within the service radius; cannot verify location"
    if status == 'VERIFIED':
        return "Registered coordinates match observed trip activity"
    if status == 'GOOD':
        return f"Minor drift of {drift_m:.0f} m; no action required"
    if status == 'NEEDS_REVIEW':
        return f"Drift of {drift_m:.0f} m; review registered coordinates"
    return (f"Drift of {drift_m:.0f} m; update coordinates to "
            f"({recommended[0]:.6f}, {recommended[1]:.6f})")


class TerminalVerifier:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()

    def _load_terminals(self, terminal_id: Optional[int]) -> List[TerminalLocation]:
        if terminal_id is not None:
            terminal = db.session.get(TerminalLocation, terminal_id)
            if terminal is None:
                raise RecordNotFoundError('terminal', terminal_id)
            return [terminal]
        return TerminalLocation.query.filter_by(active=True).order_by(TerminalLocation.id).all()

    def verify_terminals(self, terminal_id: Optional[int] = None) -> List[TerminalVerificationResult]:
        terminals = self._load_terminals(terminal_id)
        default_km = self.config.default_terminal_radius_km

        tracked = []
        results = {}
        for terminal in terminals:
            radius_km = terminal.effective_radius_km(default_km)
            if not is_valid_coordinate(terminal.latitude, terminal.longitude):
                logger.warning("Terminal %s has no valid registered coordinates", terminal.id)
                results[terminal.id] = TerminalVerificationResult(
                    terminal_id=terminal.id, terminal_name=terminal.terminal_name,
                    carrier=terminal.carrier, registered_latitude=terminal.latitude,
                    registered_longitude=terminal.longitude, service_radius_km=radius_km,
                    status=NO_DATA, confidence=None,
                    recommendation="Registered coordinates are missing or invalid"
                )
                continue
            radius_m = radius_km * 1000
            tracked.append(_TerminalMatches(
                terminal, radius_m, bounding_box(terminal.latitude, terminal.longitude, radius_m)
            ))

        if tracked:
            for batch in TripHistory.iter_batches(self.config.chunk_size):
                for trip in batch:
                    self._match_trip(trip, tracked)

        for matches in tracked:
            results[matches.terminal.id] = self._evaluate(matches)

        ordered = [results[t.id] for t in terminals]
        summary = summarize_verifications(ordered)
        logger.info("Verified %d terminals: %s", len(ordered), summary)
        return ordered

    def _match_trip(self, trip: TripHistory, tracked: List[_TerminalMatches]):
        for kind, lat, lng in (('start', trip.start_latitude, trip.start_longitude),
                               ('end', trip.end_latitude, trip.end_longitude)):
            if not is_valid_coordinate(lat, lng):
                logger.debug("Trip %s skipped for %s: invalid coordinates", trip.id, kind)
                continue
            for matches in tracked:
                if not in_box(lat, lng, matches.box):
                    continue
                t = matches.terminal
                if distance_m(lat, lng, t.latitude, t.longitude) > matches.radius_m:
                    continue
                (matches.starts if kind == 'start' else matches.ends).append((lat, lng))
                matches.trip_ids.add(trip.id)

    def _evaluate(self, matches: _TerminalMatches) -> TerminalVerificationResult:
        t = matches.terminal
        result = TerminalVerificationResult(
            terminal_id=t.id, terminal_name=t.terminal_name, carrier=t.carrier,
            registered_latitude=t.latitude, registered_longitude=t.longitude,
            service_radius_km=matches.radius_m / 1000,
            status=NO_DATA, confidence=None,
            trip_count=len(matches.trip_ids),
            start_point_count=len(matches.starts),
            end_point_count=len(matches.ends)
        )

        try:
            c_lat, c_lng = centroid(matches.starts + matches.ends)
        except InsufficientDataError:
            result.recommendation = _recommendation(NO_DATA, None, None)
            return result

        if matches.starts:
            result.start_centroid = centroid(matches.starts)
        if matches.ends:
            result.end_centroid = centroid(matches.ends)

        drift = distance_m(t.latitude, t.longitude, c_lat, c_lng)
        status, confidence = classify_drift(drift, self.config)

        result.centroid_latitude = c_lat
        result.centroid_longitude = c_lng
        result.drift_meters = round(drift, 2)
        result.status = status
        result.confidence = confidence
        result.recommended_latitude = c_lat
        result.recommended_longitude = c_lng
        result.recommendation = _recommendation(status, drift, (c_lat, c_lng))
        return result

    def accept_terminal_correction(self, terminal_id: int, latitude: float, longitude: float,
                                   actor_id: Optional[str] = None) -> TerminalCorrection:
        if not is_valid_coordinate(latitude, longitude):
            raise ConfigurationError(f"Invalid coordinates: ({latitude}, {longitude})")
        latitude = float(latitude)
        longitude = float(longitude)

        terminal = db.session.get(TerminalLocation, terminal_id)
        if terminal is None:
            raise RecordNotFoundError('terminal', terminal_id)

        previous = (terminal.latitude, terminal.longitude)
        moved = None
        if is_valid_coordinate(*previous):
            moved = round(distance_m(previous[0], previous[1], latitude, longitude), 2)

        now = datetime.utcnow()
        terminal.latitude = latitude
        terminal.longitude = longitude
        terminal.location_verified_at = now
        terminal.location_updated_by = actor_id

        poi_ids = [p.id for p in DiscoveredPOI.query.filter_by(matched_terminal_id=terminal_id).all()]
        stale = 0
        if poi_ids:
            routes = RoutePattern.query.filter(
                or_(RoutePattern.start_poi_id.in_(poi_ids), RoutePattern.end_poi_id.in_(poi_ids))
            ).all()
            for route in routes:
                route.is_stale = True
            stale = len(routes)

        db.session.commit()
        logger.info("Terminal %s moved %s m by %s; %d route patterns marked stale",
                    terminal_id, moved, actor_id or 'unknown', stale)

        return TerminalCorrection(
            terminal_id=terminal_id,
            previous_latitude=previous[0],
            previous_longitude=previous[1],
            latitude=latitude,
            longitude=longitude,
            moved_meters=moved,
            stale_routes=stale,
            verified_at=now,
            updated_by=actor_id
        )


def sort_by_drift(results: List[TerminalVerificationResult]) -> List[TerminalVerificationResult]:
    """Worst drift first; terminals without data go last."""
    return sorted(results, key=lambda r: (r.drift_meters is None, -(r.drift_meters or 0), r.terminal_id))


def needs_correction(result: TerminalVerificationResult) -> bool:
    return result.status in CORRECTABLE_STATUSES and result.recommended_latitude is not None


def summarize_verifications(results: List[TerminalVerificationResult]) -> Dict[str, int]:
    counts = Counter(r.status for r in results)
    return {
        'total': len(results),
        'verified': counts.get('VERIFIED', 0),
        'good': counts.get('GOOD', 0),
        'needs_review': counts.get('NEEDS_REVIEW', 0),
        'inaccurate': counts.get(INACCURATE, 0),
        'no_data': counts.get(NO_DATA, 0),
        'needs_correction': sum(1 for r in results if needs_correction(r))
    }
