import logging
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase

from .exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


db = SQLAlchemy(model_class=Base)


POI_TYPES = ('terminal', 'customer', 'depot', 'rest_area', 'ignore', 'unknown')
CLASSIFICATION_STATUSES = ('unclassified', 'classified', 'ignored')


def atomic_upsert(apply, key, attempts=3):
    """Run apply() and commit as one unit; on a key collision roll back and re-apply."""
    last_error = None

    for attempt in range(attempts):
        try:
            result = apply()
            db.session.commit()
            return result
        except IntegrityError as e:
            db.session.rollback()
            last_error = e
            logger.warning("Upsert conflict on %s (attempt %d/%d)", key, attempt + 1, attempts)

    raise ConcurrencyConflictError(key, attempts, last_error)


class TripHistory(db.Model):
    __tablename__ = 'trip_history'

    id = db.Column(db.Integer, primary_key=True)
    trip_external_id = db.Column(db.String(100), index=True)
    vehicle_registration = db.Column(db.String(50))
    driver_name = db.Column(db.String(120))
    start_time = db.Column(db.DateTime, index=True)
    end_time = db.Column(db.DateTime)
    start_latitude = db.Column(db.Float)
    start_longitude = db.Column(db.Float)
    end_latitude = db.Column(db.Float)
    end_longitude = db.Column(db.Float)
    distance_km = db.Column(db.Float)
    idling_time_hours = db.Column(db.Float)

    @property
    def travel_time_hours(self):
        if not self.start_time or not self.end_time:
            return None
        return (self.end_time - self.start_time).total_seconds() / 3600

    @classmethod
    def iter_batches(cls, chunk_size=1000, since=None, until=None):
        """Yield trips in id order, chunk_size rows at a time (keyset pagination)."""
        last_id = 0
        while True:
            query = cls.query.filter(cls.id > last_id)
            if since is not None:
                query = query.filter(cls.start_time >= since)
            if until is not None:
                query = query.filter(cls.start_time < until)

            batch = query.order_by(cls.id).limit(chunk_size).all()
            if not batch:
                return

            yield batch

            last_id = batch[-1].id
            if len(batch) < chunk_size:
                return

    def __repr__(self):
        return f'<TripHistory {self.id} {self.vehicle_registration}>'


class TerminalLocation(db.Model):
    __tablename__ = 'terminal_locations'

    id = db.Column(db.Integer, primary_key=True)
    terminal_name = db.Column(db.String(150), nullable=False)
    carrier = db.Column(db.String(50))
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    service_radius_km = db.Column(db.Float, nullable=True)
    active = db.Column(db.Boolean, default=True, nullable=False)
    location_verified_at = db.Column(db.DateTime, nullable=True)
    location_updated_by = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def effective_radius_km(self, default_km):
        if self.service_radius_km is None or self.service_radius_km <= 0:
            return default_km
        return self.service_radius_km

    def to_dict(self):
        return {
            'id': self.id,
            'terminal_name': self.terminal_name,
            'carrier': self.carrier,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'service_radius_km': self.service_radius_km,
            'active': self.active,
            'location_verified_at': self.location_verified_at.isoformat() if self.location_verified_at else None,
            'location_updated_by': self.location_updated_by
        }

    def __repr__(self):
        return f'<TerminalLocation {self.terminal_name}>'


class CustomerLocation(db.Model):
    __tablename__ = 'customer_locations'

    id = db.Column(db.Integer, primary_key=True)
    customer_name = db.Column(db.String(200), nullable=False)
    bp_id = db.Column(db.String(50), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    active = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self):
        return f'<CustomerLocation {self.customer_name}>'


class DiscoveredPOI(db.Model):
    __tablename__ = 'discovered_poi'

    id = db.Column(db.Integer, primary_key=True)
    centroid_latitude = db.Column(db.Float, nullable=False)
    centroid_longitude = db.Column(db.Float, nullable=False)
    spatial_key = db.Column(db.String(40), unique=True, nullable=True)
    service_radius_km = db.Column(db.Float, default=1.0, nullable=False)

    trip_count = db.Column(db.Integer, default=0, nullable=False)
    start_point_count = db.Column(db.Integer, default=0, nullable=False)
    end_point_count = db.Column(db.Integer, default=0, nullable=False)
    avg_idle_time_hours = db.Column(db.Float, nullable=True)
    confidence_score = db.Column(db.Float, default=0, nullable=False)
    gps_accuracy_meters = db.Column(db.Float, nullable=True)

    classification_status = db.Column(db.String(20), default='unclassified', nullable=False, index=True)
    poi_type = db.Column(db.String(20), default='unknown', nullable=False, index=True)
    suggested_name = db.Column(db.String(200))
    actual_name = db.Column(db.String(200))
    details = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    matched_terminal_id = db.Column(db.Integer, db.ForeignKey('terminal_locations.id'), nullable=True)
    classified_by = db.Column(db.String(120), nullable=True)
    classified_at = db.Column(db.DateTime, nullable=True)

    matched_customer_id = db.Column(db.Integer, db.ForeignKey('customer_locations.id'), nullable=True)
    customer_assignment_method = db.Column(db.String(30), nullable=True)
    customer_assignment_confidence = db.Column(db.Float, nullable=True)
    customer_assigned_at = db.Column(db.DateTime, nullable=True)
    customer_assigned_by = db.Column(db.String(120), nullable=True)

    first_seen = db.Column(db.DateTime, nullable=True)
    last_seen = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    matched_terminal = db.relationship('TerminalLocation', lazy=True)
    matched_customer = db.relationship('CustomerLocation', lazy=True)

    @property
    def display_name(self):
        return self.actual_name or self.suggested_name or f'POI #{self.id}'

    @property
    def service_radius_m(self):
        return (self.service_radius_km or 0) * 1000

    def to_dict(self):
        return {
            'id': self.id,
            'centroid_latitude': self.centroid_latitude,
            'centroid_longitude': self.centroid_longitude,
            'spatial_key': self.spatial_key,
            'service_radius_km': self.service_radius_km,
            'trip_count': self.trip_count,
            'start_point_count': self.start_point_count,
            'end_point_count': self.end_point_count,
            'avg_idle_time_hours': self.avg_idle_time_hours,
            'confidence_score': self.confidence_score,
            'gps_accuracy_meters': self.gps_accuracy_meters,
            'classification_status': self.classification_status,
            'poi_type': self.poi_type,
            'suggested_name': self.suggested_name,
            'actual_name': self.actual_name,
            'details': self.details,
            'notes': self.notes,
            'matched_terminal_id': self.matched_terminal_id,
            'matched_customer_id': self.matched_customer_id,
            'customer_assignment_method': self.customer_assignment_method,
            'customer_assignment_confidence': self.customer_assignment_confidence,
            'customer_assigned_at': self.customer_assigned_at.isoformat() if self.customer_assigned_at else None,
            'customer_assigned_by': self.customer_assigned_by,
            'classified_by': self.classified_by,
            'classified_at': self.classified_at.isoformat() if self.classified_at else None,
            'first_seen': self.first_seen.isoformat() if self.first_seen else None,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None
        }

    def __repr__(self):
        return f'<DiscoveredPOI {self.id} {self.poi_type} {self.display_name}>'


class RoutePattern(db.Model):
    __tablename__ = 'route_patterns'

    id = db.Column(db.Integer, primary_key=True)
    route_hash = db.Column(db.String(32), unique=True, nullable=False)
    start_poi_id = db.Column(db.Integer, db.ForeignKey('discovered_poi.id'), nullable=False, index=True)
    end_poi_id = db.Column(db.Integer, db.ForeignKey('discovered_poi.id'), nullable=False, index=True)
    start_location = db.Column(db.String(200))
    end_location = db.Column(db.String(200))

    route_type = db.Column(db.String(30), default='unknown', nullable=False)
    data_quality_tier = db.Column(db.String(20), default='bronze', nullable=False)

    trip_count = db.Column(db.Integer, default=0, nullable=False)
    average_travel_time_hours = db.Column(db.Float)
    best_time_hours = db.Column(db.Float)
    worst_time_hours = db.Column(db.Float)
    time_variability = db.Column(db.Float)
    efficiency_rating = db.Column(db.Float)
    average_distance_km = db.Column(db.Float)
    min_distance_km = db.Column(db.Float)
    max_distance_km = db.Column(db.Float)
    straight_line_distance_km = db.Column(db.Float)
    route_deviation_ratio = db.Column(db.Float, nullable=True)
    avg_gps_accuracy_meters = db.Column(db.Float, nullable=True)
    start_poi_confidence = db.Column(db.Float)
    end_poi_confidence = db.Column(db.Float)

    most_common_vehicle = db.Column(db.String(50))
    most_common_driver = db.Column(db.String(120))
    first_trip_date = db.Column(db.DateTime)
    last_trip_date = db.Column(db.DateTime)
    trips_per_week = db.Column(db.Float)

    has_return_route = db.Column(db.Boolean, default=False, nullable=False)
    is_stale = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    start_poi = db.relationship('DiscoveredPOI', foreign_keys=[start_poi_id], lazy=True)
    end_poi = db.relationship('DiscoveredPOI', foreign_keys=[end_poi_id], lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'route_hash': self.route_hash,
            'start_poi_id': self.start_poi_id,
            'end_poi_id': self.end_poi_id,
            'start_location': self.start_location,
            'end_location': self.end_location,
            'route_type': self.route_type,
            'data_quality_tier': self.data_quality_tier,
            'trip_count': self.trip_count,
            'average_travel_time_hours': self.average_travel_time_hours,
            'best_time_hours': self.best_time_hours,
            'worst_time_hours': self.worst_time_hours,
            'time_variability': self.time_variability,
            'efficiency_rating': self.efficiency_rating,
            'average_distance_km': self.average_distance_km,
            'straight_line_distance_km': self.straight_line_distance_km,
            'route_deviation_ratio': self.route_deviation_ratio,
            'avg_gps_accuracy_meters': self.avg_gps_accuracy_meters,
            'most_common_vehicle': self.most_common_vehicle,
            'most_common_driver': self.most_common_driver,
            'trips_per_week': self.trips_per_week,
            'has_return_route': self.has_return_route,
            'is_stale': self.is_stale
        }

    def __repr__(self):
        return f'<RoutePattern {self.start_location} -> {self.end_location} ({self.trip_count})>'
