import os
import json
import logging
import secrets

import click
from flask import Blueprint, Flask, current_app, jsonify, request

from .config import EngineConfig, get_database_url
from .exceptions import ConfigurationError, RecordNotFoundError
from .forms import (
    AssignCustomerForm, ClassifyPOIForm, DiscoverForm, IgnorePOIForm, ListPOIsForm,
    MatchCustomersForm, OptimizationQueryForm, TerminalCorrectionForm
)
from .intelligence.customers import CustomerMatcher
from .intelligence.discovery import POIDiscoveryEngine, suggest_poi_type
from .intelligence.routes import RoutePatternConsolidator
from .intelligence.verification import (
    TerminalVerifier, needs_correction, sort_by_drift, summarize_verifications
)
from .models import db

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def engine_config():
    return current_app.config['ENGINE_CONFIG']


def form_errors(form):
    return jsonify(success=False, error='Invalid request', errors=form.errors), 400


@api.errorhandler(ConfigurationError)
def handle_configuration_error(e):
    return jsonify(success=False, error=str(e)), 400


@api.errorhandler(RecordNotFoundError)
def handle_not_found(e):
    return jsonify(success=False, error=str(e)), 404


@api.route('/pois/discover', methods=['POST'])
def discover_pois():
    form = DiscoverForm()
    if not form.validate():
        return form_errors(form)

    result = POIDiscoveryEngine(engine_config()).discover_pois(
        min_cluster_trips=form.min_cluster_trips.data,
        merge_radius_meters=form.merge_radius_meters.data,
        dry_run=form.dry_run.data,
        since=form.since.data,
        until=form.until.data
    )
    return jsonify(success=True, result=result.to_dict())


@api.route('/pois')
def list_pois():
    form = ListPOIsForm(formdata=request.args)
    if not form.validate():
        return form_errors(form)

    pois = POIDiscoveryEngine(engine_config()).list_pois(
        status=form.status.data or None,
        poi_type=form.poi_type.data or None,
        min_trip_count=form.min_trip_count.data,
        min_confidence=form.min_confidence.data
    )
    items = []
    for poi in pois:
        data = poi.to_dict()
        data['suggested_type'] = suggest_poi_type(poi)
        items.append(data)
    return jsonify(success=True, count=len(items), pois=items)


@api.route('/pois/summary')
def poi_summary():
    return jsonify(success=True, summary=POIDiscoveryEngine(engine_config()).discovery_summary())


@api.route('/pois/<int:poi_id>/classify', methods=['POST'])
def classify_poi(poi_id):
    form = ClassifyPOIForm()
    if not form.validate():
        return form_errors(form)

    payload = request.get_json(silent=True) or {}
    poi = POIDiscoveryEngine(engine_config()).classify_poi(
        poi_id,
        form.poi_type.data,
        form.name.data,
        details=payload.get('details'),
        service_radius_km=form.service_radius_km.data,
        notes=form.notes.data or None,
        actor_id=form.actor_id.data or None
    )
    return jsonify(success=True, poi=poi.to_dict())


@api.route('/pois/<int:poi_id>/ignore', methods=['POST'])
def ignore_poi(poi_id):
    form = IgnorePOIForm()
    if not form.validate():
        return form_errors(form)

    poi = POIDiscoveryEngine(engine_config()).ignore_poi(
        poi_id, reason=form.reason.data or None, actor_id=form.actor_id.data or None
    )
    return jsonify(success=True, poi=poi.to_dict())


@api.route('/terminals/verification')
def verify_terminals():
    terminal_id = request.args.get('terminal_id', type=int)
    results = sort_by_drift(TerminalVerifier(engine_config()).verify_terminals(terminal_id))
    return jsonify(
        success=True,
        summary=summarize_verifications(results),
        results=[dict(r.to_dict(), needs_correction=needs_correction(r)) for r in results]
    )


@api.route('/terminals/<int:terminal_id>/correction', methods=['POST'])
def correct_terminal(terminal_id):
    form = TerminalCorrectionForm()
    if not form.validate():
        return form_errors(form)

    correction = TerminalVerifier(engine_config()).accept_terminal_correction(
        terminal_id, form.latitude.data, form.longitude.data, actor_id=form.actor_id.data or None
    )
    return jsonify(success=True, correction=correction.to_dict())


@api.route('/routes/generate', methods=['POST'])
def generate_routes():
    result = RoutePatternConsolidator(engine_config()).generate_route_patterns()
    return jsonify(success=True, result=result.to_dict())


@api.route('/routes/optimizations')
def route_optimizations():
    form = OptimizationQueryForm(formdata=request.args)
    if not form.validate():
        return form_errors(form)

    opportunities = RoutePatternConsolidator(engine_config()).find_optimization_opportunities(
        min_priority=form.min_priority.data or None
    )
    return jsonify(
        success=True,
        count=len(opportunities),
        total_annual_saving=round(sum(o.annual_cost_saving for o in opportunities), 2),
        opportunities=[o.to_dict() for o in opportunities]
    )


@api.route('/customers/match', methods=['POST'])
def match_customers():
    form = MatchCustomersForm()
    if not form.validate():
        return form_errors(form)

    run = CustomerMatcher(engine_config()).match_customers(
        poi_id=form.poi_id.data,
        max_distance_km=form.max_distance_km.data,
        min_name_similarity=form.min_name_similarity.data,
        auto_assign=form.auto_assign.data,
        actor_id=form.actor_id.data or 'system',
        top_n=form.top_n.data
    )
    return jsonify(success=True, result=run.to_dict())


@api.route('/pois/<int:poi_id>/customer', methods=['POST'])
def assign_customer(poi_id):
    form = AssignCustomerForm()
    if not form.validate():
        return form_errors(form)

    poi = CustomerMatcher(engine_config()).assign_customer(
        poi_id, form.customer_id.data, form.actor_id.data or None,
        method=form.method.data or 'manual', confidence=form.confidence.data
    )
    return jsonify(success=True, poi=poi.to_dict())


@api.route('/pois/<int:poi_id>/customer', methods=['DELETE'])
def unassign_customer(poi_id):
    poi = CustomerMatcher(engine_config()).unassign_customer(poi_id)
    return jsonify(success=True, poi=poi.to_dict())


def echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def register_commands(app):
    @app.cli.command('discover-pois')
    @click.option('--min-trips', type=int, default=None, help='Minimum endpoints per cluster.')
    @click.option('--radius', type=float, default=None, help='Merge radius in metres.')
    @click.option('--dry-run', is_flag=True, help='Report without writing.')
    def discover_pois_command(min_trips, radius, dry_run):
        result = POIDiscoveryEngine(app.config['ENGINE_CONFIG']).discover_pois(
            min_cluster_trips=min_trips, merge_radius_meters=radius, dry_run=dry_run
        )
        echo_json(result.to_dict())

    @app.cli.command('verify-terminals')
    @click.option('--terminal-id', type=int, default=None)
    def verify_terminals_command(terminal_id):
        results = sort_by_drift(TerminalVerifier(app.config['ENGINE_CONFIG']).verify_terminals(terminal_id))
        echo_json({'summary': summarize_verifications(results), 'results': [r.to_dict() for r in results]})

    @app.cli.command('generate-routes')
    def generate_routes_command():
        result = RoutePatternConsolidator(app.config['ENGINE_CONFIG']).generate_route_patterns()
        echo_json(result.to_dict())

    @app.cli.command('match-customers')
    @click.option('--poi-id', type=int, default=None)
    @click.option('--auto-assign', is_flag=True, help='Assign top candidates at or above the threshold.')
    @click.option('--actor', default='system')
    def match_customers_command(poi_id, auto_assign, actor):
        run = CustomerMatcher(app.config['ENGINE_CONFIG']).match_customers(
            poi_id=poi_id, auto_assign=auto_assign, actor_id=actor
        )
        echo_json(run.to_dict())


def create_app(test_config=None):
    app = Flask(__name__)

    flask_secret = os.environ.get("FLASK_SECRET_KEY")
    if not flask_secret:
        flask_secret = secrets.token_hex(32)
        logger.warning("FLASK_SECRET_KEY not set. Using generated key for this session.")
    app.secret_key = flask_secret

    database_url = get_database_url()
    if not database_url:
        logger.error("DATABASE_URL is not set; using a local SQLite database.")
        database_url = 'sqlite:///tripcorrelation.db'
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["WTF_CSRF_ENABLED"] = False

    if test_config:
        app.config.update(test_config)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith('postgresql'):
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {
            "pool_recycle": 300,
            "pool_pre_ping": True,
            "connect_args": {"connect_timeout": 10}
        })

    if 'ENGINE_CONFIG' not in app.config:
        app.config['ENGINE_CONFIG'] = EngineConfig.from_env()
    else:
        app.config['ENGINE_CONFIG'].validate()

    db.init_app(app)
    app.register_blueprint(api)
    register_commands(app)

    with app.app_context():
        db.create_all()

    return app
