"""Monitoring infrastructure for the progression engine"""
from talentika_progression.monitoring.prometheus_metrics import (
    metrics,
    record_conflict,
    record_http_response,
    record_xp_awarded,
    record_xp_spent,
    track_database_query,
    track_operation,
)

__all__ = [
    "metrics",
    "record_conflict",
    "record_http_response",
    "record_xp_awarded",
    "record_xp_spent",
    "track_database_query",
    "track_operation",
]
