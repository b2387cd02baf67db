"""
Metric Ingestion Service.

Upserts exactly one observation per (event, metric type). A repeated call replaces
the stored value and notes (last write wins), so retries with the same payload are
idempotent. Every call is audited, including calls that leave the value unchanged.
"""

from typing import Optional, Union

from sqlalchemy.orm import Session

from src.reporting.engine.audit import AuditRecorder
from src.reporting.engine.errors import NotFoundError, ValidationError
from src.reporting.engine.registry import MetricTypeRegistry, validate_value
from src.reporting.logging_config import get_logger
from src.reporting.models.enums import AuditAction
from src.reporting.models.orm_models import Event, MetricObservation, utcnow

logger = get_logger(__name__)


def get_event(session: Session, event_id: int) -> Event:
    event = session.get(Event, event_id) if event_id is not None else None
    if event is None:
        raise NotFoundError("Event not found", details={"event_id": event_id})
    return event


class MetricIngestionService:
    """Validates and upserts metric observations inside the caller's transaction."""

    def __init__(self, session: Session, registry: Optional[MetricTypeRegistry] = None,
                 audit: Optional[AuditRecorder] = None):
        self.session = session
        self.audit = audit or AuditRecorder(session)
        self.registry = registry or MetricTypeRegistry(session, self.audit)

    def upsert(
        self,
        event_id: int,
        metric_type_id: Union[int, str],
        value,
        notes: Optional[str] = None,
        acting_user_id: Optional[int] = None,
    ) -> MetricObservation:
        """
        Insert or replace the observation for (event, metric type).

        Raises:
            NotFoundError: unknown event or metric type.
            ValidationError: bad value, or a new row for an inactive metric type.
        """
        event = get_event(self.session, event_id)
        metric_type = self.registry.resolve(metric_type_id)
        number = validate_value(metric_type, value)

        observation = (
            self.session.query(MetricObservation)
            .filter(
                MetricObservation.event_id == event.id,
                MetricObservation.metric_type_id == metric_type.id,
            )
            .first()
        )
        if observation is None and not self.registry.is_active(metric_type):
            raise ValidationError(
                "Metric type is inactive; only existing observations may be updated",
                details={"event_id": event.id, "metric_type": metric_type.code},
            )

        previous = None
        if observation is None:
            observation = MetricObservation(
                event_id=event.id,
                metric_type_id=metric_type.id,
                value=number,
                notes=notes,
                collected_at=utcnow(),
            )
            self.session.add(observation)
        else:
            previous = {"value": observation.value, "notes": observation.notes}
            observation.value = number
            observation.notes = notes
            observation.collected_at = utcnow()

        # Surfaces a concurrent insert of the same pair as IntegrityError before auditing
        self.session.flush()

        self.audit.record(
            acting_user_id,
            AuditAction.METRIC_UPSERT,
            MetricObservation.__tablename__,
            observation.id,
            {
                "event_id": event.id,
                "metric_type_id": metric_type.id,
                "metric_type": metric_type.code,
                "previous": previous,
                "new": {"value": number, "notes": notes},
            },
        )
        logger.info("metric_upserted", observation_id=observation.id, event_id=event.id,
                    metric_type=metric_type.code, created=previous is None)
        return observation
