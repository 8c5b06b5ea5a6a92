"""
Reconciliation engine.

Desired-state compilation, diff & apply, the rolling-upgrade state machine,
persisted state and status aggregation, tied together by ClusterReconciler.
"""

from shazamq_operator.engine.api import GuardedPlatform, always_leader
from shazamq_operator.engine.apply import ApplyEngine, ApplyResult
from shazamq_operator.engine.compiler import compile_cluster, possible_refs
from shazamq_operator.engine.objects import DesiredObject, OwnedObjectSet, content_hash
from shazamq_operator.engine.reconciler import ClusterReconciler, ReconcileResult
from shazamq_operator.engine.rollout import RolloutController, RolloutOutcome, RolloutState
from shazamq_operator.engine.state import PersistentState, StateStore
from shazamq_operator.engine.status import PassReport, StatusReporter

__all__ = [
    "ApplyEngine",
    "ApplyResult",
    "ClusterReconciler",
    "DesiredObject",
    "GuardedPlatform",
    "OwnedObjectSet",
    "PassReport",
    "PersistentState",
    "ReconcileResult",
    "RolloutController",
    "RolloutOutcome",
    "RolloutState",
    "StateStore",
    "StatusReporter",
    "always_leader",
    "compile_cluster",
    "content_hash",
    "possible_refs",
]
