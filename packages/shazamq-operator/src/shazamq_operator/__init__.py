"""
Shazamq Operator

Reconciliation engine and runtime for ShazamqCluster custom resources.
This package provides:

- Cluster model: the ShazamqCluster resource and its validation
- Engine: desired-state compiler, diff & apply, rolling upgrades, status
- Mirror and tiered-storage controllers
- Runtime: watches, scheduler, leader election, process manager
- CLI infrastructure: Typer-based command structure
"""

__version__ = "0.1.0"

from shazamq_operator.cluster.model import ClusterResource, ClusterSpec, Phase
from shazamq_operator.config import OperatorSettings
from shazamq_operator.engine.reconciler import ClusterReconciler, ReconcileResult

__all__ = [
    "__version__",
    "ClusterReconciler",
    "ClusterResource",
    "ClusterSpec",
    "OperatorSettings",
    "Phase",
    "ReconcileResult",
]
