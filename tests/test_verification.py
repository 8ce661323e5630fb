"""
Test suite for Terminal GPS Verification
File: tests/test_verification.py
"""

import pytest

from tripcorrelation.config import EngineConfig
from tripcorrelation.exceptions import ConfigurationError, RecordNotFoundError
from tripcorrelation.intelligence.geo import centroid
from tripcorrelation.intelligence.verification import (
    TerminalVerificationResult, TerminalVerifier, classify_drift, needs_correction,
    sort_by_drift, summarize_verifications
)
from tripcorrelation.models import RoutePattern, TerminalLocation, db

from conftest import PERTH_TERMINAL, ROCKINGHAM_CUSTOMER, offset, scatter


class TestClassifyDrift:
    """Drift bands have inclusive upper bounds."""

    def setup_method(self):
        self.config = EngineConfig()

    @pytest.mark.parametrize("drift,expected", [
        (0.0, ('VERIFIED', 95)),
        (50.0, ('VERIFIED', 95)),
        (50.01, ('GOOD', 85)),
        (100.0, ('GOOD', 85)),
        (100.01, ('NEEDS_REVIEW', 70)),
        (500.0, ('NEEDS_REVIEW', 70)),
        (500.01, ('INACCURATE', 25)),
        (12000.0, ('INACCURATE', 25)),
    ])
    def test_boundaries(self, drift, expected):
        assert classify_drift(drift, self.config) == expected

    def test_no_data(self):
        assert classify_drift(None, self.config) == ('NO_DATA', None)

    def test_custom_bands(self):
        config = self.config.with_overrides(drift_bands=((20.0, 'VERIFIED', 99),))
        assert classify_drift(20.0, config) == ('VERIFIED', 99)
        assert classify_drift(20.5, config) == ('INACCURATE', 25)


class TestTerminalVerifier:

    @pytest.fixture(autouse=True)
    def _verifier(self, app, config):
        self.verifier = TerminalVerifier(config)

    def _trips_around(self, make_trip, center, count=50, spread=100):
        starts = scatter(center, count, spread)
        for start in starts:
            make_trip(start, ROCKINGHAM_CUSTOMER, commit=False)
        db.session.commit()
        return starts

    def test_no_trips_is_no_data(self, make_terminal):
        terminal = make_terminal('Empty Terminal', PERTH_TERMINAL)
        result, = self.verifier.verify_terminals(terminal.id)

        assert result.status == 'NO_DATA'
        assert result.confidence is None
        assert result.trip_count == 0
        assert result.recommended_latitude is None

    def test_scenario_b_inaccurate_terminal(self, make_trip, make_terminal):
        starts = self._trips_around(make_trip, PERTH_TERMINAL)
        terminal = make_terminal('Kewdale', offset(PERTH_TERMINAL, 1300, 0))

        result, = self.verifier.verify_terminals(terminal.id)
        expected = centroid(starts)

        assert result.status == 'INACCURATE'
        assert result.confidence == 25
        assert result.trip_count == 50
        assert 1250 < result.drift_meters < 1350
        assert result.recommended_latitude == pytest.approx(expected[0])
        assert result.recommended_longitude == pytest.approx(expected[1])
        assert needs_correction(result)

    def test_correction_then_verify_is_verified(self, make_trip, make_terminal):
        self._trips_around(make_trip, PERTH_TERMINAL)
        terminal = make_terminal('Kewdale', offset(PERTH_TERMINAL, 1300, 0))
        before, = self.verifier.verify_terminals(terminal.id)

        correction = self.verifier.accept_terminal_correction(
            terminal.id, before.recommended_latitude, before.recommended_longitude, actor_id='ops'
        )
        after, = self.verifier.verify_terminals(terminal.id)

        assert 1250 < correction.moved_meters < 1350
        assert after.drift_meters < 1
        assert after.status == 'VERIFIED'
        assert after.trip_count == before.trip_count

        stored = db.session.get(TerminalLocation, terminal.id)
        assert stored.location_updated_by == 'ops'
        assert stored.location_verified_at is not None

    def test_verify_never_writes(self, make_trip, make_terminal):
        self._trips_around(make_trip, PERTH_TERMINAL)
        registered = offset(PERTH_TERMINAL, 1300, 0)
        terminal = make_terminal('Kewdale', registered)
        self.verifier.verify_terminals()

        stored = db.session.get(TerminalLocation, terminal.id)
        assert (stored.latitude, stored.longitude) == registered

    def test_correction_marks_routes_stale(self, make_poi, make_terminal):
        terminal = make_terminal('Kewdale', PERTH_TERMINAL)
        depot = make_poi(PERTH_TERMINAL, poi_type='terminal', name='Kewdale', terminal_id=terminal.id)
        site = make_poi(ROCKINGHAM_CUSTOMER, poi_type='customer', name='Rockingham')
        other = make_poi(offset(ROCKINGHAM_CUSTOMER, 8000, 0), poi_type='customer', name='Baldivis')
        db.session.add_all([
            RoutePattern(route_hash='a' * 32, start_poi_id=depot.id, end_poi_id=site.id),
            RoutePattern(route_hash='b' * 32, start_poi_id=site.id, end_poi_id=other.id),
        ])
        db.session.commit()

        correction = self.verifier.accept_terminal_correction(terminal.id, *offset(PERTH_TERMINAL, 30, 0))

        assert correction.stale_routes == 1
        assert RoutePattern.query.filter_by(route_hash='a' * 32).one().is_stale
        assert not RoutePattern.query.filter_by(route_hash='b' * 32).one().is_stale

    def test_correction_validates_first(self, make_terminal):
        terminal = make_terminal('Kewdale', PERTH_TERMINAL)
        with pytest.raises(ConfigurationError):
            self.verifier.accept_terminal_correction(terminal.id, 95.0, 115.0)
        assert db.session.get(TerminalLocation, terminal.id).latitude == PERTH_TERMINAL[0]

    def test_unknown_terminal(self):
        with pytest.raises(RecordNotFoundError):
            self.verifier.verify_terminals(404)
        with pytest.raises(RecordNotFoundError):
            self.verifier.accept_terminal_correction(404, *PERTH_TERMINAL)

    def test_trip_counted_once_when_both_ends_match(self, make_trip, make_terminal):
        terminal = make_terminal('Kewdale', PERTH_TERMINAL)
        for point in scatter(PERTH_TERMINAL, 5, 100):
            make_trip(point, offset(point, 200, 0))

        result, = self.verifier.verify_terminals(terminal.id)
        assert result.trip_count == 5
        assert result.start_point_count == 5
        assert result.end_point_count == 5
        assert result.start_centroid is not None and result.end_centroid is not None

    def test_service_radius_limits_matches(self, make_trip, make_terminal):
        terminal = make_terminal('Kewdale', PERTH_TERMINAL, radius_km=0.5)
        make_trip(offset(PERTH_TERMINAL, 400, 0), ROCKINGHAM_CUSTOMER)
        make_trip(offset(PERTH_TERMINAL, 1500, 0), ROCKINGHAM_CUSTOMER)

        result, = self.verifier.verify_terminals(terminal.id)
        assert result.trip_count == 1

    def test_inactive_terminals_skipped_in_full_run(self, make_terminal):
        make_terminal('Kewdale', PERTH_TERMINAL)
        make_terminal('Closed', ROCKINGHAM_CUSTOMER, active=False)
        results = self.verifier.verify_terminals()
        assert [r.terminal_name for r in results] == ['Kewdale']

    def test_invalid_trip_rows_ignored(self, make_trip, make_terminal):
        terminal = make_terminal('Kewdale', PERTH_TERMINAL)
        make_trip(None, None)
        make_trip(PERTH_TERMINAL, ROCKINGHAM_CUSTOMER)
        result, = self.verifier.verify_terminals(terminal.id)
        assert result.trip_count == 1
        assert result.status == 'VERIFIED'


class TestResultHelpers:

    def setup_method(self):
        def result(terminal_id, status, drift):
            has_centroid = drift is not None
            return TerminalVerificationResult(
                terminal_id=terminal_id, terminal_name=f'T{terminal_id}', carrier=None,
                registered_latitude=-31.98, registered_longitude=115.97, service_radius_km=2.0,
                status=status, confidence=None, drift_meters=drift,
                recommended_latitude=-31.98 if has_centroid else None,
                recommended_longitude=115.97 if has_centroid else None
            )

        self.results = [
            result(1, 'VERIFIED', 10.0),
            result(2, 'NO_DATA', None),
            result(3, 'INACCURATE', 900.0),
            result(4, 'NEEDS_REVIEW', 300.0),
        ]

    def test_sort_worst_first_no_data_last(self):
        assert [r.terminal_id for r in sort_by_drift(self.results)] == [3, 4, 1, 2]

    def test_needs_correction(self):
        assert [r.terminal_id for r in self.results if needs_correction(r)] == [3, 4]

    def test_summary(self):
        summary = summarize_verifications(self.results)
        assert summary['total'] == 4
        assert summary['verified'] == 1
        assert summary['inaccurate'] == 1
        assert summary['no_data'] == 1
        assert summary['needs_correction'] == 2
