"""
Periodic reconciliation of source and destination.

Usage:
    from pgmirror.reconciliation import ReconciliationEngine, ReconciliationScheduler

    engine = ReconciliationEngine(registry, applier)
    report = engine.run_pass()
"""

from pgmirror.reconciliation.differ import IdentifierDiffer
from pgmirror.reconciliation.engine import PassReport, ReconciliationEngine, ReconciliationReport
from pgmirror.reconciliation.scheduler import ReconciliationScheduler

__all__ = [
    "IdentifierDiffer",
    "PassReport",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationScheduler",
]

__version__ = "1.0.0"
