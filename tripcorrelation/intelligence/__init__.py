from .customers import CustomerMatcher
from .discovery import POIDiscoveryEngine
from .routes import RoutePatternConsolidator
from .verification import TerminalVerifier

__all__ = ['CustomerMatcher', 'POIDiscoveryEngine', 'RoutePatternConsolidator', 'TerminalVerifier']
