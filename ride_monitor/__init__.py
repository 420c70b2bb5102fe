# ride_monitor/__init__.py
"""
ride_monitor
============
On-device risk detection and confidence scoring for two-wheeler riders.

Public API
----------
RideMonitor         — main entry point; lives in ride_monitor.pipeline and is
                      imported from there (it pulls in ride_response)
RideSummary         — dataclass returned by RideMonitor.end_ride()

Individual components (use directly only if you need fine-grained control):
GeoMotionSampler    — raw location / motion / orientation → Samples
RiskEventDetector   — rule engine raising typed RiskEvents
FatigueEstimator    — fatigue / panic scores and spoken nudges
ConfidenceScorer    — 0..100 confidence and the action it maps to
LocationMemoryStore — per-cell false / true alarm memory with remote sync
EventStore          — durable ride / risk / emergency audit trail
WeatherFeed         — Open-Meteo conditions with a local cache

Typical usage
-------------
    from ride_monitor import Settings, VirtualClock
    from ride_monitor.pipeline import RideMonitor

    monitor = RideMonitor(Settings.from_env(), background=False)
    monitor.start_ride()
    monitor.on_location(12.9716, 77.5946)
    monitor.process_pending()
    summary = monitor.end_ride()
"""

from .clock             import SystemClock, TimerHandle, VirtualClock
from .config            import Settings, VibrationPattern
from .sampler           import UNKNOWN, GeoMotionSampler, Position, Reading, Sample
from .risk_detector     import RiskEvent, RiskEventDetector, RiskType, Severity
from .fatigue_estimator import FatigueEstimator, FatigueLevel, Nudge
from .confidence_scorer import Action, ConfidenceScorer, ScoredRiskEvent, ScoringContext
from .location_memory   import LocationMemory, LocationMemoryStore, SensorSnapshot
from .event_logger      import EventStore
from .remote            import RemoteStore, RemoteSyncError, SyncWorker
from .weather           import WeatherData, WeatherFeed, WeatherRisk, assess_weather_risk

__all__ = [
    'SystemClock',
    'TimerHandle',
    'VirtualClock',
    'Settings',
    'VibrationPattern',
    'UNKNOWN',
    'GeoMotionSampler',
    'Position',
    'Reading',
    'Sample',
    'RiskEvent',
    'RiskEventDetector',
    'RiskType',
    'Severity',
    'FatigueEstimator',
    'FatigueLevel',
    'Nudge',
    'Action',
    'ConfidenceScorer',
    'ScoredRiskEvent',
    'ScoringContext',
    'LocationMemory',
    'LocationMemoryStore',
    'SensorSnapshot',
    'EventStore',
    'RemoteStore',
    'RemoteSyncError',
    'SyncWorker',
    'WeatherData',
    'WeatherFeed',
    'WeatherRisk',
    'assess_weather_risk',
]

__version__ = '0.1.0'
