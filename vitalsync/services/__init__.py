"""
Engine services.

This package contains the reading classifier, risk scorer, subscription
cache, alert lifecycle manager, event fan-out router and connection
supervisor. `DashboardSession` (in `vitalsync.services.dashboard`) wires them
to the network adapters.
"""

from .alert_lifecycle import AlertIntentSink, AlertLifecycleManager
from .cache import DELETED, CacheEntry, SubscriptionCache
from .classifier import classify, classify_series
from .connection import ConnectionState, ConnectionSupervisor, PushEvent, PushTransport
from .event_router import PUSH_ROUTES, EventRouter, PullResult, PullSource
from .result import Result
from .risk_scorer import RiskScorer

__all__ = [
    "AlertIntentSink",
    "AlertLifecycleManager",
    "CacheEntry",
    "ConnectionState",
    "ConnectionSupervisor",
    "DELETED",
    "EventRouter",
    "PUSH_ROUTES",
    "PullResult",
    "PullSource",
    "PushEvent",
    "PushTransport",
    "Result",
    "RiskScorer",
    "SubscriptionCache",
    "classify",
    "classify_series",
]
