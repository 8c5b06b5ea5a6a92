"""Long-running operator runtime: watches, scheduler, leadership, manager."""

from shazamq_operator.runtime.leader import LeaderElector
from shazamq_operator.runtime.manager import OperatorManager, serve
from shazamq_operator.runtime.scheduler import Scheduler
from shazamq_operator.runtime.watch import ReconcileRequest, WatchSource, request_for

__all__ = [
    "LeaderElector",
    "OperatorManager",
    "ReconcileRequest",
    "Scheduler",
    "WatchSource",
    "request_for",
    "serve",
]
