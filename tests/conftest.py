"""
Shared fixtures: a Flask app bound to in-memory SQLite and record factories.
"""

import math
from datetime import datetime, timedelta

import pytest

from tripcorrelation.config import EngineConfig
from tripcorrelation.main import create_app
from tripcorrelation.models import CustomerLocation, DiscoveredPOI, TerminalLocation, TripHistory, db

PERTH_TERMINAL = (-31.9811, 115.9723)
ROCKINGHAM_CUSTOMER = (-32.2, 115.7)
BASE_TIME = datetime(2025, 3, 3, 6, 0)


def offset(point, north_m=0.0, east_m=0.0):
    """Shift a (lat, lng) point by metres north and east."""
    lat, lng = point
    return (lat + north_m / 111320.0,
            lng + east_m / (111320.0 * math.cos(math.radians(lat))))


def scatter(center, count, max_radius_m):
    """Deterministic points spread evenly inside a circle of max_radius_m."""
    points = []
    for i in range(count):
        angle = math.radians(i * 137.508)
        r = max_radius_m * math.sqrt((i + 0.5) / count)
        points.append(offset(center, r * math.cos(angle), r * math.sin(angle)))
    return points


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def app(config):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'ENGINE_CONFIG': config
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_trip(app):
    counter = {'n': 0}

    def _make(start, end, hours=2.0, distance_km=35.0, start_time=None,
              vehicle='1ABC123', driver='Driver A', idle_hours=0.5, commit=True):
        counter['n'] += 1
        start_time = start_time or BASE_TIME + timedelta(hours=3 * counter['n'])
        trip = TripHistory(
            trip_external_id=f"T{counter['n']:05d}",
            vehicle_registration=vehicle,
            driver_name=driver,
            start_time=start_time,
            end_time=start_time + timedelta(hours=hours),
            start_latitude=start[0] if start else None,
            start_longitude=start[1] if start else None,
            end_latitude=end[0] if end else None,
            end_longitude=end[1] if end else None,
            distance_km=distance_km,
            idling_time_hours=idle_hours
        )
        db.session.add(trip)
        if commit:
            db.session.commit()
        return trip

    return _make


@pytest.fixture
def make_terminal(app):
    def _make(name, point, radius_km=None, carrier='Shell', active=True):
        terminal = TerminalLocation(
            terminal_name=name,
            carrier=carrier,
            latitude=point[0],
            longitude=point[1],
            service_radius_km=radius_km,
            active=active
        )
        db.session.add(terminal)
        db.session.commit()
        return terminal

    return _make


@pytest.fixture
def make_customer(app):
    def _make(name, point=None, bp_id=None, active=True):
        customer = CustomerLocation(
            customer_name=name,
            bp_id=bp_id,
            latitude=point[0] if point else None,
            longitude=point[1] if point else None,
            active=active
        )
        db.session.add(customer)
        db.session.commit()
        return customer

    return _make


@pytest.fixture
def make_poi(app):
    def _make(point, poi_type='unknown', name=None, status=None, radius_km=1.0,
              confidence=85.0, accuracy=40.0, starts=10, ends=10, terminal_id=None):
        if status is None:
            status = 'unclassified' if poi_type == 'unknown' else 'classified'
        poi = DiscoveredPOI(
            centroid_latitude=point[0],
            centroid_longitude=point[1],
            service_radius_km=radius_km,
            trip_count=starts + ends,
            start_point_count=starts,
            end_point_count=ends,
            confidence_score=confidence,
            gps_accuracy_meters=accuracy,
            classification_status=status,
            poi_type=poi_type,
            actual_name=name,
            matched_terminal_id=terminal_id
        )
        db.session.add(poi)
        db.session.commit()
        return poi

    return _make
