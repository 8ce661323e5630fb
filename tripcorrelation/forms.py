from flask_wtf import FlaskForm
from wtforms import BooleanField, DateTimeField, FloatField, IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import InputRequired, Length, NumberRange, Optional

from .models import CLASSIFICATION_STATUSES, POI_TYPES


class APIForm(FlaskForm):
    class Meta:
        csrf = False


class DiscoverForm(APIForm):
    min_cluster_trips = IntegerField('Minimum Trips', validators=[Optional(), NumberRange(min=1)])
    merge_radius_meters = FloatField('Merge Radius (m)', validators=[Optional(), NumberRange(min=1)])
    dry_run = BooleanField('Dry Run')
    since = DateTimeField('Since', format='%Y-%m-%dT%H:%M:%S', validators=[Optional()])
    until = DateTimeField('Until', format='%Y-%m-%dT%H:%M:%S', validators=[Optional()])


class ListPOIsForm(APIForm):
    status = SelectField('Status', choices=[('', 'Any')] + [(s, s) for s in CLASSIFICATION_STATUSES],
                         default='', validators=[Optional()])
    poi_type = SelectField('Type', choices=[('', 'Any')] + [(t, t) for t in POI_TYPES],
                           default='', validators=[Optional()])
    min_trip_count = IntegerField('Minimum Trips', validators=[Optional(), NumberRange(min=0)])
    min_confidence = FloatField('Minimum Confidence', validators=[Optional(), NumberRange(min=0, max=100)])


class ClassifyPOIForm(APIForm):
    poi_type = SelectField('Type', choices=[(t, t) for t in POI_TYPES if t != 'unknown'],
                           validators=[InputRequired()])
    name = StringField('Name', validators=[Optional(), Length(max=200)])
    service_radius_km = FloatField('Service Radius (km)', validators=[Optional(), NumberRange(min=0.1, max=500)])
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=2000)])
    actor_id = StringField('Classified By', validators=[Optional(), Length(max=120)])


class IgnorePOIForm(APIForm):
    reason = TextAreaField('Reason', validators=[Optional(), Length(max=2000)])
    actor_id = StringField('Ignored By', validators=[Optional(), Length(max=120)])


class TerminalCorrectionForm(APIForm):
    latitude = FloatField('Latitude', validators=[InputRequired(), NumberRange(min=-90, max=90)])
    longitude = FloatField('Longitude', validators=[InputRequired(), NumberRange(min=-180, max=180)])
    actor_id = StringField('Updated By', validators=[Optional(), Length(max=120)])


class MatchCustomersForm(APIForm):
    poi_id = IntegerField('POI', validators=[Optional()])
    max_distance_km = FloatField('Max Distance (km)', validators=[Optional(), NumberRange(min=0.01)])
    min_name_similarity = FloatField('Min Name Similarity', validators=[Optional(), NumberRange(min=0, max=100)])
    auto_assign = BooleanField('Auto Assign')
    actor_id = StringField('Actor', default='system', validators=[Optional(), Length(max=120)])
    top_n = IntegerField('Top N', validators=[Optional(), NumberRange(min=1, max=100)])


class AssignCustomerForm(APIForm):
    customer_id = IntegerField('Customer', validators=[InputRequired()])
    actor_id = StringField('Assigned By', validators=[Optional(), Length(max=120)])
    method = StringField('Method', default='manual', validators=[Optional(), Length(max=30)])
    confidence = FloatField('Confidence', validators=[Optional(), NumberRange(min=0, max=100)])


class OptimizationQueryForm(APIForm):
    min_priority = StringField('Minimum Priority', validators=[Optional(), Length(max=20)])
