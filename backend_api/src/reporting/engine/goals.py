"""
Goal Evaluator and goal configuration.

Evaluation is a pure read of stored state as of a timestamp: only observations
collected at or before as_of count, and nothing is written, so repeated or
concurrent calls with the same arguments return the same rows.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from src.reporting.engine.audit import AuditRecorder
from src.reporting.engine.errors import NotFoundError, ValidationError
from src.reporting.engine.registry import MetricTypeRegistry, direction_for, validate_value
from src.reporting.logging_config import get_logger
from src.reporting.models.enums import AuditAction, Direction, GoalPeriod, GoalStatus
from src.reporting.models.orm_models import Event, Goal, MetricObservation, MetricType, Venue, utcnow

logger = get_logger(__name__)

# NUMERIC(16,4) precision of stored values
VALUE_PRECISION = 4


@dataclass(frozen=True)
class GoalEvaluation:
    """One goal compared against its aggregated observations."""
    metric_type_id: int
    metric_type_code: str
    metric_type_name: str
    unit: str
    period: str
    event_id: Optional[int]
    aggregate_value: float
    target_value: float
    variance: float
    status: GoalStatus


def parse_period(period) -> GoalPeriod:
    try:
        return GoalPeriod(getattr(period, "value", period))
    except ValueError:
        raise ValidationError("Unknown goal period",
                              details={"period": period, "allowed": [p.value for p in GoalPeriod]}) from None


def normalize_as_of(as_of: Union[datetime, date, None]) -> datetime:
    """Naive UTC datetime; a bare date means the end of that day."""
    if as_of is None:
        return utcnow()
    if isinstance(as_of, datetime):
        if as_of.tzinfo is not None:
            return as_of.astimezone(timezone.utc).replace(tzinfo=None)
        return as_of
    if isinstance(as_of, date):
        return datetime.combine(as_of, time.max)
    raise ValidationError("as_of must be a datetime or date", details={"as_of": repr(as_of)})


def period_bounds(period: GoalPeriod, as_of: datetime) -> Tuple[date, date]:
    """Calendar year or quarter containing as_of."""
    day = as_of.date()
    if period is GoalPeriod.YEAR:
        return date(day.year, 1, 1), date(day.year, 12, 31)
    if period is GoalPeriod.QUARTER:
        first_month = 3 * ((day.month - 1) // 3) + 1
        start = date(day.year, first_month, 1)
        if first_month == 10:
            end = date(day.year, 12, 31)
        else:
            end = date(day.year, first_month + 3, 1) - timedelta(days=1)
        return start, end
    raise ValueError(f"{period} has no calendar bounds")


def event_intersects(event: Event, start: date, end: date) -> bool:
    first, last = event.date_range()
    if first is None:
        return False
    return first <= end and last >= start


def goal_status(metric_type: MetricType, aggregate: float, target: float) -> GoalStatus:
    if direction_for(metric_type) is Direction.INCREASE:
        met = aggregate >= target
    else:
        met = aggregate <= target
    return GoalStatus.ON_TARGET if met else GoalStatus.OFF_TARGET


def _evaluation(goal: Goal, metric_type: MetricType, event_id: Optional[int], aggregate: float) -> GoalEvaluation:
    aggregate = round(aggregate, VALUE_PRECISION)
    target = round(float(goal.target_value), VALUE_PRECISION)
    return GoalEvaluation(
        metric_type_id=metric_type.id,
        metric_type_code=metric_type.code,
        metric_type_name=metric_type.name,
        unit=metric_type.unit,
        period=goal.period,
        event_id=event_id,
        aggregate_value=aggregate,
        target_value=target,
        variance=round(aggregate - target, VALUE_PRECISION),
        status=goal_status(metric_type, aggregate, target),
    )


class GoalEvaluator:
    """Compares a venue's observations against its goals for one period."""

    def __init__(self, session: Session):
        self.session = session

    def evaluate(self, venue_id: int, period, as_of=None) -> List[GoalEvaluation]:
        """
        Evaluate every goal of the venue for the given period.

        For period 'event' there is one row per event with an observation of the goal's
        metric type. For 'year' and 'quarter' the observations of all events intersecting
        the calendar period around as_of are summed per metric type. Metric types without
        a goal, and goals without qualifying observations, produce no row.

        Raises:
            ValidationError: unknown period or malformed as_of.
            NotFoundError: unknown venue.
        """
        goal_period = parse_period(period)
        cutoff = normalize_as_of(as_of)
        if self.session.get(Venue, venue_id) is None:
            raise NotFoundError("Venue not found", details={"venue_id": venue_id})

        goals = (
            self.session.query(Goal, MetricType)
            .join(MetricType, Goal.metric_type_id == MetricType.id)
            .filter(Goal.venue_id == venue_id, Goal.period == goal_period.value)
            .order_by(Goal.metric_type_id)
            .all()
        )
        if not goals:
            return []

        rows = (
            self.session.query(MetricObservation, Event)
            .join(Event, MetricObservation.event_id == Event.id)
            .filter(
                Event.venue_id == venue_id,
                MetricObservation.metric_type_id.in_([goal.metric_type_id for goal, _ in goals]),
                MetricObservation.collected_at <= cutoff,
            )
            .order_by(MetricObservation.metric_type_id, Event.id)
            .all()
        )

        by_type: Dict[int, List[Tuple[MetricObservation, Event]]] = {}
        for observation, event in rows:
            by_type.setdefault(observation.metric_type_id, []).append((observation, event))

        results: List[GoalEvaluation] = []
        if goal_period is GoalPeriod.EVENT:
            for goal, metric_type in goals:
                for observation, event in by_type.get(metric_type.id, []):
                    results.append(_evaluation(goal, metric_type, event.id, float(observation.value)))
        else:
            start, end = period_bounds(goal_period, cutoff)
            for goal, metric_type in goals:
                qualifying = [
                    float(observation.value)
                    for observation, event in by_type.get(metric_type.id, [])
                    if event_intersects(event, start, end)
                ]
                if qualifying:
                    results.append(_evaluation(goal, metric_type, None, sum(qualifying)))

        logger.debug("goals_evaluated", venue_id=venue_id, period=goal_period.value,
                     as_of=cutoff.isoformat(), rows=len(results))
        return results


class GoalService:
    """Creates or updates venue goals. Authorization is the caller's job."""

    def __init__(self, session: Session, registry: Optional[MetricTypeRegistry] = None,
                 audit: Optional[AuditRecorder] = None):
        self.session = session
        self.audit = audit or AuditRecorder(session)
        self.registry = registry or MetricTypeRegistry(session, self.audit)

    def set_goal(self, venue_id: int, metric_type_code, target_value, period,
                 notes: Optional[str] = None, acting_user_id: Optional[int] = None) -> Goal:
        """
        Upsert the goal for (venue, metric type, period).

        Raises:
            ValidationError: bad period or target, or a new goal on an inactive metric type.
            NotFoundError: unknown venue or metric type.
        """
        goal_period = parse_period(period)
        if self.session.get(Venue, venue_id) is None:
            raise NotFoundError("Venue not found", details={"venue_id": venue_id})
        metric_type = self.registry.resolve(metric_type_code)
        target = validate_value(metric_type, target_value, field="target_value")

        goal = (
            self.session.query(Goal)
            .filter(
                Goal.venue_id == venue_id,
                Goal.metric_type_id == metric_type.id,
                Goal.period == goal_period.value,
            )
            .first()
        )
        if goal is None and not self.registry.is_active(metric_type):
            raise ValidationError("Metric type is inactive; new goals are not accepted",
                                  details={"venue_id": venue_id, "metric_type": metric_type.code})

        previous = None
        if goal is None:
            goal = Goal(venue_id=venue_id, metric_type_id=metric_type.id, target_value=target,
                        period=goal_period.value, notes=notes)
            self.session.add(goal)
        else:
            previous = {"target_value": float(goal.target_value), "notes": goal.notes}
            goal.target_value = target
            goal.notes = notes
        self.session.flush()

        self.audit.record(
            acting_user_id,
            AuditAction.GOAL_SET,
            Goal.__tablename__,
            goal.id,
            {
                "venue_id": venue_id,
                "metric_type": metric_type.code,
                "period": goal_period.value,
                "previous": previous,
                "new": {"target_value": target, "notes": notes},
            },
        )
        logger.info("goal_set", goal_id=goal.id, venue_id=venue_id, metric_type=metric_type.code,
                    period=goal_period.value, created=previous is None)
        return goal
