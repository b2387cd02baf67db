"""
Closed enumerations shared by the ORM models, the engine and the API schemas.
All enums inherit from str so they persist and serialize as their plain values.
"""

from enum import Enum


class UserRole(str, Enum):
    """Global role on User, also reused for per-venue membership roles."""
    SUPER_ADMIN = "super_admin"
    VENUE_ADMIN = "venue_admin"
    STAFF = "staff"


class Capability(str, Enum):
    """Named permissions granted by a resolved role."""
    READ = "read"
    WRITE = "write"
    MANAGE_GOALS = "manage_goals"


class GoalPeriod(str, Enum):
    YEAR = "year"
    QUARTER = "quarter"
    EVENT = "event"


class GoalStatus(str, Enum):
    ON_TARGET = "on_target"
    OFF_TARGET = "off_target"


class ReportStatus(str, Enum):
    """Report lifecycle: draft -> complete | error. Both outcomes are terminal."""
    DRAFT = "draft"
    COMPLETE = "complete"
    ERROR = "error"


class Direction(str, Enum):
    """Which way a metric should move for its goal to be met."""
    REDUCTION = "reduction"
    INCREASE = "increase"


class AuditAction(str, Enum):
    METRIC_UPSERT = "metric_upsert"
    GOAL_SET = "goal_set"
    REPORT_GENERATE = "report_generate"
    REPORT_ATTACH_ARTIFACT = "report_attach_artifact"
    METRIC_TYPE_DEACTIVATE = "metric_type_deactivate"
    MEMBERSHIP_GRANT = "membership_grant"
    USER_DEACTIVATE = "user_deactivate"
    ACCESS_DENIED = "access_denied"
