"""
Error taxonomy for the trip correlation engine.

Per-record problems (InputDataError, AmbiguousMatchError) are collected into run
summaries and never abort a batch. ConfigurationError is raised before any write.
"""

from typing import Any, Dict, Optional


class TripCorrelationError(Exception):
    pass


class InputDataError(TripCorrelationError):
    def __init__(self, record_type: str, record_id: Any, reason: str):
        self.record_type = record_type
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"{record_type} {record_id}: {reason}")

    def to_dict(self) -> Dict:
        return {
            'type': 'input_data',
            'record_type': self.record_type,
            'record_id': self.record_id,
            'reason': self.reason
        }


class InsufficientDataError(TripCorrelationError):
    pass


class AmbiguousMatchError(TripCorrelationError):
    def __init__(self, record_type: str, record_id: Any, candidates: list, chosen: Any):
        self.record_type = record_type
        self.record_id = record_id
        self.candidates = list(candidates)
        self.chosen = chosen
        super().__init__(
            f"{record_type} {record_id}: tie between {self.candidates}, resolved to {chosen}"
        )

    def to_dict(self) -> Dict:
        return {
            'type': 'ambiguous_match',
            'record_type': self.record_type,
            'record_id': self.record_id,
            'candidates': self.candidates,
            'chosen': self.chosen
        }


class ConcurrencyConflictError(TripCorrelationError):
    def __init__(self, key: str, attempts: int, cause: Optional[Exception] = None):
        self.key = key
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Upsert conflict on {key} after {attempts} attempts")


class ConfigurationError(TripCorrelationError):
    pass


class RecordNotFoundError(TripCorrelationError):
    def __init__(self, record_type: str, record_id: Any):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(f"{record_type} {record_id} not found")
