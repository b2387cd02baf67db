"""
Defines SQLAlchemy ORM models for the event sustainability reporting engine.
Models: User, Venue, VenueMembership, Event, MetricType, MetricObservation, Goal, Report, AuditEntry
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, JSON, Numeric,
    String, Text, UniqueConstraint, event, inspect,
)
from sqlalchemy.orm import relationship, validates

from src.reporting.database import Base
from src.reporting.engine.errors import ImmutableRecordError, ValidationError
from src.reporting.models.enums import ReportStatus, UserRole


def utcnow():
    """Naive UTC timestamp; all stored datetimes are UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# PUBLIC_INTERFACE
class User(Base):
    """A platform user. Identity is owned by the auth provider; the engine only reads it."""
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False, default='')
    full_name = Column(String(255), nullable=False, default='')
    role = Column(String(50), nullable=False, default=UserRole.VENUE_ADMIN.value)  # super_admin, venue_admin, staff
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    memberships = relationship("VenueMembership", back_populates="user", cascade="all, delete-orphan")

    @validates("role")
    def _validate_role(self, key, value):
        return UserRole(value).value

# PUBLIC_INTERFACE
class Venue(Base):
    """An organizational unit owning events and goals."""
    __tablename__ = 'venues'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    address = Column(Text, nullable=True)
    city = Column(String(120), nullable=True)
    state = Column(String(120), nullable=True)
    country = Column(String(120), nullable=True)
    postal_code = Column(String(50), nullable=True)
    phone = Column(String(60), nullable=True)
    website = Column(String(255), nullable=True)
    venue_contact_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    contact = relationship("User", foreign_keys=[venue_contact_id])
    memberships = relationship("VenueMembership", back_populates="venue", cascade="all, delete-orphan")
    events = relationship("Event", back_populates="venue", cascade="all, delete-orphan")
    goals = relationship("Goal", back_populates="venue", cascade="all, delete-orphan")

# PUBLIC_INTERFACE
class VenueMembership(Base):
    """Per-venue role of a user. The composite key allows one row per (user, venue)."""
    __tablename__ = 'users_venues'
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)
    venue_id = Column(Integer, ForeignKey('venues.id', ondelete='CASCADE'), primary_key=True)
    role = Column(String(50), nullable=False, default=UserRole.VENUE_ADMIN.value)

    user = relationship("User", back_populates="memberships")
    venue = relationship("Venue", back_populates="memberships")

    @validates("role")
    def _validate_role(self, key, value):
        return UserRole(value).value

# PUBLIC_INTERFACE
class Event(Base):
    """An event hosted at exactly one venue."""
    __tablename__ = 'events'
    id = Column(Integer, primary_key=True, index=True)
    venue_id = Column(Integer, ForeignKey('venues.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    event_type = Column(String(120), nullable=True)  # e.g. Conference, Wedding, Expo
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    expected_attendees = Column(Integer, nullable=True)
    actual_attendees = Column(Integer, nullable=True)
    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    venue = relationship("Venue", back_populates="events")
    observations = relationship("MetricObservation", back_populates="event", cascade="all, delete-orphan")
    reports = relationship("Report", back_populates="event", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('start_date IS NULL OR end_date IS NULL OR start_date <= end_date', name='ck_event_date_range'),
        CheckConstraint('actual_attendees IS NULL OR actual_attendees >= 0', name='ck_event_actual_attendees'),
        CheckConstraint('expected_attendees IS NULL OR expected_attendees >= 0', name='ck_event_expected_attendees'),
    )

    @validates("start_date", "end_date")
    def _validate_dates(self, key, value):
        start = value if key == "start_date" else self.start_date
        end = value if key == "end_date" else self.end_date
        if start is not None and end is not None and start > end:
            raise ValidationError("Event start_date must not be after end_date",
                                  details={"start_date": str(start), "end_date": str(end)})
        return value

    @validates("actual_attendees", "expected_attendees")
    def _validate_attendees(self, key, value):
        if value is not None and value < 0:
            raise ValidationError(f"{key} must be non-negative", details={key: value})
        return value

    def date_range(self):
        """(first_day, last_day) with a missing bound falling back to the other one."""
        start = self.start_date or self.end_date
        end = self.end_date or self.start_date
        return start, end

# PUBLIC_INTERFACE
class MetricType(Base):
    """Catalog entry for a tracked sustainability metric (e.g. electricity in kWh)."""
    __tablename__ = 'sustainability_metric_types'
    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(120), nullable=False, unique=True, index=True)
    name = Column(String(120), nullable=False)
    category = Column(String(120), nullable=False)  # e.g. Energy, Water, Waste, Transportation
    unit = Column(String(50), nullable=False)  # e.g. kWh, kg, liters
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    observations = relationship("MetricObservation", back_populates="metric_type")

# PUBLIC_INTERFACE
class MetricObservation(Base):
    """The recorded value of one metric type for one event."""
    __tablename__ = 'event_sustainability_metrics'
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='CASCADE'), nullable=False, index=True)
    metric_type_id = Column(Integer, ForeignKey('sustainability_metric_types.id'), nullable=False)
    value = Column(Numeric(16, 4, asdecimal=False), nullable=False)
    collected_at = Column(DateTime, default=utcnow, nullable=False)
    notes = Column(Text, nullable=True)

    event = relationship("Event", back_populates="observations")
    metric_type = relationship("MetricType", back_populates="observations")

    __table_args__ = (
        UniqueConstraint('event_id', 'metric_type_id', name='uq_event_metric_type'),
        CheckConstraint('value >= 0', name='ck_observation_value_non_negative'),
    )

# PUBLIC_INTERFACE
class Goal(Base):
    """Venue-level target for a metric type over a period (year, quarter or event)."""
    __tablename__ = 'sustainability_goals'
    id = Column(Integer, primary_key=True, index=True)
    venue_id = Column(Integer, ForeignKey('venues.id', ondelete='CASCADE'), nullable=False, index=True)
    metric_type_id = Column(Integer, ForeignKey('sustainability_metric_types.id'), nullable=False)
    target_value = Column(Numeric(16, 4, asdecimal=False), nullable=False)
    period = Column(String(20), nullable=False, default='year')
    notes = Column(Text, nullable=True)

    venue = relationship("Venue", back_populates="goals")
    metric_type = relationship("MetricType")

    __table_args__ = (
        UniqueConstraint('venue_id', 'metric_type_id', 'period', name='uq_goal_venue_metric_period'),
    )

# PUBLIC_INTERFACE
class Report(Base):
    """A generated sustainability report. Finalized reports are never modified."""
    __tablename__ = 'reports'
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='CASCADE'), nullable=False, index=True)
    generated_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    generated_at = Column(DateTime, default=utcnow)
    summary = Column(JSON, nullable=True)
    report_url = Column(String(255), nullable=True)  # S3/file link for PDF etc.
    status = Column(String(50), nullable=False, default=ReportStatus.DRAFT.value)  # draft, complete, error

    event = relationship("Event", back_populates="reports")

# PUBLIC_INTERFACE
class AuditEntry(Base):
    """Append-only audit record, hash-chained to its predecessor."""
    __tablename__ = 'audit_log'
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    action = Column(String(120), nullable=False, index=True)
    target_table = Column(String(255), nullable=True)
    target_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    previous_hash = Column(String(64), nullable=True)
    entry_hash = Column(String(64), nullable=False)


_FINAL_REPORT_STATUSES = {ReportStatus.COMPLETE.value, ReportStatus.ERROR.value}


@event.listens_for(Report, "before_update")
def _guard_finalized_report(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.status.history
    previous_status = status_history.deleted[0] if status_history.deleted else target.status
    if previous_status not in _FINAL_REPORT_STATUSES:
        return
    changed = {attr.key for attr in mapper.column_attrs if state.attrs[attr.key].history.has_changes()}
    url_history = state.attrs.report_url.history
    url_backfill = (
        changed == {"report_url"}
        and previous_status == ReportStatus.COMPLETE.value
        and not any(url_history.deleted)
    )
    if changed and not url_backfill:
        raise ImmutableRecordError(
            "Finalized reports cannot be modified",
            details={"report_id": target.id, "status": previous_status, "fields": sorted(changed)},
        )


@event.listens_for(AuditEntry, "before_update")
def _guard_audit_update(mapper, connection, target):
    raise ImmutableRecordError("Audit entries are append-only", details={"audit_id": target.id})


@event.listens_for(AuditEntry, "before_delete")
def _guard_audit_delete(mapper, connection, target):
    raise ImmutableRecordError("Audit entries are append-only", details={"audit_id": target.id})
