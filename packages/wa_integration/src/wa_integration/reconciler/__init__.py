"""
Connection Reconciler

Tracks each account's connection lifecycle against the gateway by polling
and by webhook.
"""

from wa_integration.reconciler.service import ConnectionReconciler, ConnectionResult, PollReport
from wa_integration.reconciler.state import (
    ORPHAN_STRIKE_LIMIT,
    MergeOutcome,
    MergeResult,
    Observation,
    ObservationSource,
    apply_observation,
    observation_from_webhook,
)

__all__ = [
    "ConnectionReconciler",
    "ConnectionResult",
    "PollReport",
    "ORPHAN_STRIKE_LIMIT",
    "MergeOutcome",
    "MergeResult",
    "Observation",
    "ObservationSource",
    "apply_observation",
    "observation_from_webhook",
]
