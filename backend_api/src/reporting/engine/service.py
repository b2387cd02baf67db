"""
Boundary operations of the reporting engine.

Each operation is one unit of work: access check, domain component, audit entry
and commit, all in a single transaction. Denied calls leave only a minimal
access_denied audit record, written in a transaction of its own because the
denied operation's transaction is rolled back.
"""

from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from src.reporting import config
from src.reporting.database import run_in_transaction, session_scope
from src.reporting.engine.access import AccessPolicyGuard, record_denial
from src.reporting.engine.artifacts import ArtifactStore, LocalArtifactStore
from src.reporting.engine.audit import AuditRecorder, ChainVerification
from src.reporting.engine.errors import EngineError, ForbiddenError, NotFoundError
from src.reporting.engine.goals import GoalEvaluation, GoalEvaluator, GoalService
from src.reporting.engine.ingestion import MetricIngestionService, get_event
from src.reporting.engine.registry import MetricTypeRegistry
from src.reporting.engine.reports import ReportCompiler
from src.reporting.logging_config import get_logger
from src.reporting.models.enums import Capability, ReportStatus
from src.reporting.models.orm_models import Report, Venue

logger = get_logger(__name__)

# Snapshot isolation for report compilation on PostgreSQL
REPORT_ISOLATION_LEVEL = "REPEATABLE READ"


def default_artifact_store() -> Optional[ArtifactStore]:
    if config.REPORT_ARTIFACT_DIR:
        return LocalArtifactStore(config.REPORT_ARTIFACT_DIR)
    return None


class ReportingEngine:
    """Facade over the engine components; one instance can serve many concurrent requests."""

    def __init__(self, session_factory=None, artifact_store: Optional[ArtifactStore] = None,
                 conflict_retries: Optional[int] = None):
        self.session_factory = session_factory
        self.artifact_store = artifact_store
        self.conflict_retries = conflict_retries

    def _run(self, work, isolation_level=None, lock_audit=False):
        try:
            return run_in_transaction(work, self.session_factory, self.conflict_retries, isolation_level, lock_audit)
        except ForbiddenError as exc:
            self._record_denial(exc)
            raise

    def _record_denial(self, error: ForbiddenError) -> None:
        try:
            with session_scope(self.session_factory) as session:
                record_denial(session, error)
        except (EngineError, SQLAlchemyError) as exc:
            logger.error("access_denial_not_recorded", error=str(exc), **error.details)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ingest_metric(self, event_id: int, metric_type_code, value, notes: Optional[str],
                      acting_user_id: Optional[int]) -> int:
        """Upsert the observation for (event, metric type); returns its id."""
        def work(session):
            event = get_event(session, event_id)
            AccessPolicyGuard(session).authorize(acting_user_id, event.venue_id, Capability.WRITE)
            observation = MetricIngestionService(session).upsert(
                event.id, metric_type_code, value, notes, acting_user_id
            )
            return observation.id

        return self._run(work)

    def set_goal(self, venue_id: int, metric_type_code, target_value, period,
                 acting_user_id: Optional[int], notes: Optional[str] = None) -> int:
        """Upsert the goal for (venue, metric type, period); returns its id."""
        def work(session):
            if session.get(Venue, venue_id) is None:
                raise NotFoundError("Venue not found", details={"venue_id": venue_id})
            AccessPolicyGuard(session).authorize(acting_user_id, venue_id, Capability.MANAGE_GOALS)
            goal = GoalService(session).set_goal(
                venue_id, metric_type_code, target_value, period, notes, acting_user_id
            )
            return goal.id

        return self._run(work)

    def generate_report(self, event_id: int, acting_user_id: Optional[int]) -> int:
        """Compile a new report for the event; returns its id."""
        def work(session):
            report = ReportCompiler(session).generate(event_id, acting_user_id)
            return report.id, report.status

        # The snapshot must start after the audit chain lock is held
        report_id, status = self._run(work, isolation_level=REPORT_ISOLATION_LEVEL, lock_audit=True)
        if status == ReportStatus.COMPLETE.value and self.artifact_store is not None:
            self._attach_artifact(report_id)
        return report_id

    def _attach_artifact(self, report_id: int) -> None:
        try:
            with session_scope(self.session_factory) as session:
                ReportCompiler(session).attach_artifact(report_id, self.artifact_store)
        except (EngineError, SQLAlchemyError) as exc:
            # The report is already committed as complete
            logger.error("artifact_attach_failed", report_id=report_id, error=str(exc))

    def deactivate_metric_type(self, metric_type_code, acting_user_id: Optional[int]) -> int:
        def work(session):
            AccessPolicyGuard(session).require_global_role(acting_user_id)
            return MetricTypeRegistry(session).deactivate(metric_type_code, acting_user_id).id

        return self._run(work)

    def grant_membership(self, user_id: int, venue_id: int, role, acting_user_id: Optional[int]) -> None:
        def work(session):
            AccessPolicyGuard(session).grant_membership(user_id, venue_id, role, acting_user_id)

        self._run(work)

    def deactivate_user(self, user_id: int, acting_user_id: Optional[int]) -> None:
        def work(session):
            AccessPolicyGuard(session).deactivate_user(user_id, acting_user_id)

        self._run(work)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_venue_goal_status(self, venue_id: int, period, as_of=None,
                              acting_user_id: Optional[int] = None) -> List[GoalEvaluation]:
        """
        Evaluate the venue's goals for a period as of a timestamp.
        The access check applies only when an acting user is supplied.
        """
        def work(session):
            if acting_user_id is not None:
                if session.get(Venue, venue_id) is None:
                    raise NotFoundError("Venue not found", details={"venue_id": venue_id})
                AccessPolicyGuard(session).authorize(acting_user_id, venue_id, Capability.READ)
            return GoalEvaluator(session).evaluate(venue_id, period, as_of)

        return self._run(work)

    def get_report(self, report_id: int, acting_user_id: Optional[int]) -> Report:
        def work(session):
            report = session.get(Report, report_id)
            if report is None:
                raise NotFoundError("Report not found", details={"report_id": report_id})
            AccessPolicyGuard(session).authorize(acting_user_id, report.event.venue_id, Capability.READ)
            return report

        return self._run(work)

    def verify_audit_chain(self, acting_user_id: Optional[int] = None) -> ChainVerification:
        def work(session):
            if acting_user_id is not None:
                AccessPolicyGuard(session).require_global_role(acting_user_id)
            return AuditRecorder(session).verify_chain()

        return self._run(work)
