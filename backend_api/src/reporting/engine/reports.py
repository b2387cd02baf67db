"""
Report Compiler.

Joins an event's observations with the venue's per-event goal evaluation and
stores the result as a new, immutable Report row. Reports are history: every
generate call adds a row and none is ever upserted.

Report lifecycle:
    draft -> complete   summary assembled
    draft -> error      no consistent summary possible (empty active catalog,
                        non-finite stored value)
Both outcomes are terminal.
"""

import math
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.reporting.engine.access import AccessPolicyGuard
from src.reporting.engine.artifacts import ArtifactStore
from src.reporting.engine.audit import AuditRecorder
from src.reporting.engine.errors import DependencyError, NoMetricsError
from src.reporting.engine.goals import GoalEvaluator
from src.reporting.engine.ingestion import get_event
from src.reporting.engine.registry import MetricTypeRegistry
from src.reporting.logging_config import get_logger
from src.reporting.models.enums import AuditAction, Capability, GoalPeriod, GoalStatus, ReportStatus
from src.reporting.models.orm_models import Event, MetricObservation, MetricType, Report, utcnow

logger = get_logger(__name__)


class SummaryError(Exception):
    """Compilation could not produce a consistent summary."""


class ReportCompiler:
    """Top-level orchestrator composing registry, evaluator, guard and audit."""

    def __init__(self, session: Session, guard: Optional[AccessPolicyGuard] = None,
                 audit: Optional[AuditRecorder] = None):
        self.session = session
        self.audit = audit or AuditRecorder(session)
        self.guard = guard or AccessPolicyGuard(session)
        self.registry = MetricTypeRegistry(session, self.audit)
        self.evaluator = GoalEvaluator(session)

    def generate(self, event_id: int, requesting_user_id: Optional[int]) -> Report:
        """
        Compile and persist a new report for the event.

        Raises:
            NotFoundError: unknown event.
            ForbiddenError: requesting user may not write at the event's venue.
            NoMetricsError: the event has no observations; nothing is persisted.
        """
        event = get_event(self.session, event_id)
        self.guard.authorize(requesting_user_id, event.venue_id, Capability.WRITE)

        observations = (
            self.session.query(MetricObservation, MetricType)
            .join(MetricType, MetricObservation.metric_type_id == MetricType.id)
            .filter(MetricObservation.event_id == event.id)
            .order_by(MetricType.id)
            .all()
        )
        if not observations:
            raise NoMetricsError("Event has no metric observations", details={"event_id": event.id})

        report = Report(
            event_id=event.id,
            generated_by=requesting_user_id,
            generated_at=utcnow(),
            status=ReportStatus.DRAFT.value,
        )
        self.session.add(report)
        self.session.flush()

        try:
            report.summary = self._assemble(event, observations, report.generated_at)
            report.status = ReportStatus.COMPLETE.value
        except SummaryError as exc:
            report.summary = {"event": self._event_block(event), "error": str(exc)}
            report.status = ReportStatus.ERROR.value
            logger.warning("report_compilation_failed", report_id=report.id, event_id=event.id, reason=str(exc))
        self.session.flush()

        self.audit.record(
            requesting_user_id,
            AuditAction.REPORT_GENERATE,
            Report.__tablename__,
            report.id,
            {"event_id": event.id, "status": report.status, "observations": len(observations)},
        )
        logger.info("report_generated", report_id=report.id, event_id=event.id, status=report.status)
        return report

    @staticmethod
    def _event_block(event: Event) -> Dict[str, Any]:
        return {
            "id": event.id,
            "name": event.name,
            "venue_id": event.venue_id,
            "start_date": event.start_date.isoformat() if event.start_date else None,
            "end_date": event.end_date.isoformat() if event.end_date else None,
            "actual_attendees": event.actual_attendees,
        }

    def _assemble(self, event: Event, observations, as_of) -> Dict[str, Any]:
        if self.registry.count_active() == 0:
            raise SummaryError("No active metric types are configured")

        evaluations = {
            evaluation.metric_type_id: evaluation
            for evaluation in self.evaluator.evaluate(event.venue_id, GoalPeriod.EVENT, as_of)
            if evaluation.event_id == event.id
        }

        metrics: List[Dict[str, Any]] = []
        totals = {"on_target": 0, "off_target": 0, "without_goal": 0}
        for observation, metric_type in observations:
            value = float(observation.value)
            if not math.isfinite(value):
                raise SummaryError(f"Observation {observation.id} has a non-finite value")
            evaluation = evaluations.get(metric_type.id)
            goal = None
            if evaluation is None:
                totals["without_goal"] += 1
            else:
                goal = {
                    "target_value": evaluation.target_value,
                    "variance": evaluation.variance,
                    "status": evaluation.status.value,
                }
                totals["on_target" if evaluation.status is GoalStatus.ON_TARGET else "off_target"] += 1
            metrics.append({
                "metric_type_id": metric_type.id,
                "code": metric_type.code,
                "name": metric_type.name,
                "category": metric_type.category,
                "unit": metric_type.unit,
                "active": bool(metric_type.is_active),
                "value": value,
                "notes": observation.notes,
                "collected_at": observation.collected_at.isoformat(),
                "goal": goal,
            })

        return {"event": self._event_block(event), "metrics": metrics, "totals": totals}

    def attach_artifact(self, report_id: int, store: ArtifactStore) -> Optional[str]:
        """
        Hand a complete report to the artifact store and write back its URL.
        Runs after the report is committed; a store failure is logged and leaves the report as is.
        """
        report = self.session.get(Report, report_id)
        if report is None or report.status != ReportStatus.COMPLETE.value or report.report_url:
            return None
        try:
            url = store.store(report.id, report.summary or {})
        except Exception as exc:
            error = DependencyError("Artifact storage failed", details={"report_id": report.id, "error": str(exc)})
            logger.error("artifact_store_failed", **error.to_dict())
            return None
        report.report_url = url
        self.session.flush()
        self.audit.record(
            None,
            AuditAction.REPORT_ATTACH_ARTIFACT,
            Report.__tablename__,
            report.id,
            {"previous": {"report_url": None}, "new": {"report_url": url}},
        )
        logger.info("report_artifact_attached", report_id=report.id, report_url=url)
        return url
