"""Order-to-quiz-session attribution and analytics rollup.

Attribution Matcher -> Analytics Aggregator, driven per shop by the
Sync Orchestrator. State between passes lives in SQLite:
- order_attributions (upsert by order)
- analytics_summaries (increment-only)
- processed_facts + sync_watermarks
"""
from .aggregator import AnalyticsAggregator
from .exceptions import (
    InconsistentAttribution,
    InvalidWindow,
    QuizSyncError,
    SyncInProgressError,
    UpstreamUnavailable,
)
from .matcher import (
    AttributionMatcher,
    AttributionSnapshot,
    CustomerTieBreak,
    MatchPolicy,
    ProximityFallback,
    match_orders,
)
from .orchestrator import SyncOrchestrator

__all__ = [
    "AnalyticsAggregator",
    "AttributionMatcher",
    "AttributionSnapshot",
    "CustomerTieBreak",
    "MatchPolicy",
    "ProximityFallback",
    "SyncOrchestrator",
    "match_orders",
    "QuizSyncError",
    "InvalidWindow",
    "UpstreamUnavailable",
    "InconsistentAttribution",
    "SyncInProgressError",
]
