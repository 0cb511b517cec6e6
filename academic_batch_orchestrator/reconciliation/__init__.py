"""
Cross-store consistency reconciliation.

Provides the invariants enforced between the enrollment, defense and account
stores, the role synchronization and orphan artifact passes, and the reconciler
tasklet running them with per-pass failure isolation.
"""

from .invariants import Invariant, UserEnrollmentInvariant, EnrollmentDefenseInvariant
from .reconciler import (
    ANOMALY_EVENT,
    PassResult,
    ReconciliationPass,
    InvariantPass,
    ConsistencyReconciler
)
from .role_sync import RoleSynchronizer
from .orphan_artifacts import OrphanArtifactScanner, is_referenced, normalize_reference

__all__ = [
    "Invariant",
    "UserEnrollmentInvariant",
    "EnrollmentDefenseInvariant",
    "ANOMALY_EVENT",
    "PassResult",
    "ReconciliationPass",
    "InvariantPass",
    "ConsistencyReconciler",
    "RoleSynchronizer",
    "OrphanArtifactScanner",
    "is_referenced",
    "normalize_reference"
]
