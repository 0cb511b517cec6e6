"""
Execution context keys shared by the steps of one job.

In the consistency job the reconciliation step writes the counters and the
anomaly report step reads them back. In the monthly report job each collection
step writes one statistics section for the notification step.
"""

from .execution import ContextKey


TOTAL_ANOMALIES = ContextKey("total_anomalies", int, 0)
AUTO_CORRECTED = ContextKey("auto_corrected", int, 0)
MANUAL_INTERVENTION = ContextKey("manual_intervention_required", int, 0)
ANOMALIES = ContextKey("anomalies", list, [])
FAILED_PASSES = ContextKey("failed_passes", list, [])
NOTIFICATIONS_FAILED = ContextKey("anomaly_notifications_failed", int, 0)
NOTIFICATIONS_REDELIVERED = ContextKey("anomaly_notifications_redelivered", int, 0)

USER_ENROLLMENT_ANOMALIES = ContextKey("user_enrollment_anomalies", int, 0)
USER_ENROLLMENT_CORRECTED = ContextKey("user_enrollment_corrected", int, 0)
ENROLLMENT_DEFENSE_ANOMALIES = ContextKey("enrollment_defense_anomalies", int, 0)
ENROLLMENT_DEFENSE_CORRECTED = ContextKey("enrollment_defense_corrected", int, 0)

ROLES_ADDED = ContextKey("roles_added", int, 0)
ROLES_REMOVED = ContextKey("roles_removed", int, 0)
ROLE_TRANSITIONS = ContextKey("role_transitions", int, 0)

ORPHANED_DOCUMENTS = ContextKey("orphaned_documents", int, 0)
ORPHANED_FILES = ContextKey("orphaned_files", list, [])

NOTIFICATION_RETRY_SUCCESS = ContextKey("notification_retry_success", int, 0)
NOTIFICATION_RETRY_FAILURE = ContextKey("notification_retry_failure", int, 0)

ANOMALY_REPORT_PATH = ContextKey("anomaly_report_path", str, None)

ENROLLMENT_STATS = ContextKey("enrollment_stats", dict, None)
DEFENSE_STATS = ContextKey("defense_stats", dict, None)
NOTIFICATION_STATS = ContextKey("notification_stats", dict, None)
USER_STATS = ContextKey("user_stats", dict, None)


def invariant_keys(invariant: str):
    """(found, corrected) counter keys of an invariant."""
    return {
        "user-enrollment": (USER_ENROLLMENT_ANOMALIES, USER_ENROLLMENT_CORRECTED),
        "enrollment-defense": (ENROLLMENT_DEFENSE_ANOMALIES, ENROLLMENT_DEFENSE_CORRECTED),
    }.get(invariant, (
        ContextKey(f"{invariant}_anomalies", int, 0),
        ContextKey(f"{invariant}_corrected", int, 0),
    ))
