"""
Metric Type Registry.

Resolves canonical metric type identifiers, and owns the per-category rule table
that decides which way a metric should move and which values are admissible.
"""

import math
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Context, Decimal
from numbers import Real
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from src.reporting.engine.audit import AuditRecorder
from src.reporting.engine.errors import NotFoundError, ValidationError
from src.reporting.logging_config import get_logger
from src.reporting.models.enums import AuditAction, Direction
from src.reporting.models.orm_models import MetricType

logger = get_logger(__name__)


@dataclass(frozen=True)
class CategoryRule:
    direction: Direction
    minimum: float = 0.0
    maximum: Optional[float] = None


CATEGORY_RULES = {
    "energy": CategoryRule(Direction.REDUCTION),
    "water": CategoryRule(Direction.REDUCTION),
    "waste": CategoryRule(Direction.REDUCTION),
    "transportation": CategoryRule(Direction.REDUCTION),
}

DEFAULT_RULE = CategoryRule(Direction.REDUCTION)

PERCENT_UNITS = {"%", "percent", "pct"}

# Observation and goal values are NUMERIC(16, 4) columns
STORED_VALUE_QUANTUM = Decimal("0.0001")
STORED_VALUE_MAX = Decimal("999999999999.9999")
# Wide enough to quantize any finite float before the range check
_QUANTIZE_CONTEXT = Context(prec=400)

# Recycling and diversion metrics sit in reduction categories but should grow
_INCREASE_NAME_PATTERN = re.compile(r"recycl|divert|diversion|compost", re.IGNORECASE)


def slugify_metric_code(name: str) -> str:
    """'CO2 Emissions' -> 'co2_emissions'."""
    return re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")


def rule_for(metric_type: MetricType) -> CategoryRule:
    """Resolve direction and bounds for a metric type."""
    base = CATEGORY_RULES.get((metric_type.category or "").strip().lower(), DEFAULT_RULE)
    direction = base.direction
    if _INCREASE_NAME_PATTERN.search(metric_type.name or ""):
        direction = Direction.INCREASE
    maximum = base.maximum
    if (metric_type.unit or "").strip().lower() in PERCENT_UNITS:
        maximum = 100.0
    return CategoryRule(direction=direction, minimum=base.minimum, maximum=maximum)


def direction_for(metric_type: MetricType) -> Direction:
    return rule_for(metric_type).direction


def validate_value(metric_type: MetricType, value, field: str = "value") -> float:
    """
    Check a submitted value against the metric type's bounds.

    Returns:
        The value as a float, rounded to the stored four decimal places.

    Raises:
        ValidationError: non-numeric, non-finite, negative, out of category bounds or too large to store.
    """
    if isinstance(value, bool) or not isinstance(value, (Real, Decimal)):
        raise ValidationError(f"{field} must be a number", details={field: repr(value)})
    try:
        number = float(value)
    except (OverflowError, ValueError):
        raise ValidationError(f"{field} is not a representable number", details={field: repr(value)}) from None
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be finite", details={field: repr(value)})
    # Round the way the column stores it, so audit entries match the stored row
    stored = Decimal(repr(number)).quantize(STORED_VALUE_QUANTUM, rounding=ROUND_HALF_UP, context=_QUANTIZE_CONTEXT)
    if abs(stored) > STORED_VALUE_MAX:
        raise ValidationError(
            f"{field} exceeds the storable maximum",
            details={field: repr(value), "maximum": str(STORED_VALUE_MAX)},
        )
    number = float(stored) or 0.0
    rule = rule_for(metric_type)
    if number < rule.minimum:
        raise ValidationError(
            f"{field} must be at least {rule.minimum:g}",
            details={field: number, "metric_type": metric_type.code, "minimum": rule.minimum},
        )
    if rule.maximum is not None and number > rule.maximum:
        raise ValidationError(
            f"{field} must be at most {rule.maximum:g}",
            details={field: number, "metric_type": metric_type.code, "maximum": rule.maximum},
        )
    return number


class MetricTypeRegistry:
    """Read access to the metric catalog plus the audited deactivate action."""

    def __init__(self, session: Session, audit: Optional[AuditRecorder] = None):
        self.session = session
        self.audit = audit or AuditRecorder(session)

    def resolve(self, identifier: Union[int, str]) -> MetricType:
        """Look up a metric type by integer id, numeric string or canonical code."""
        query = self.session.query(MetricType)
        metric_type = None
        if isinstance(identifier, bool):
            metric_type = None
        elif isinstance(identifier, int):
            metric_type = query.filter(MetricType.id == identifier).first()
        elif isinstance(identifier, str) and identifier.strip():
            key = identifier.strip()
            if key.isdigit():
                metric_type = query.filter(MetricType.id == int(key)).first()
            if metric_type is None:
                metric_type = query.filter(MetricType.code == key.lower()).first()
        if metric_type is None:
            raise NotFoundError("Metric type not found", details={"metric_type": identifier})
        return metric_type

    @staticmethod
    def is_active(metric_type: MetricType) -> bool:
        return bool(metric_type.is_active)

    def list_active(self) -> List[MetricType]:
        return (
            self.session.query(MetricType)
            .filter(MetricType.is_active.is_(True))
            .order_by(MetricType.id)
            .all()
        )

    def count_active(self) -> int:
        return self.session.query(MetricType).filter(MetricType.is_active.is_(True)).count()

    def deactivate(self, identifier: Union[int, str], acting_user_id: Optional[int]) -> MetricType:
        """
        Retire a metric type from new ingestion.
        Existing observations and reports are left untouched. Repeated calls are audited too.
        """
        metric_type = self.resolve(identifier)
        previous = bool(metric_type.is_active)
        metric_type.is_active = False
        self.session.flush()
        self.audit.record(
            acting_user_id,
            AuditAction.METRIC_TYPE_DEACTIVATE,
            MetricType.__tablename__,
            metric_type.id,
            {"code": metric_type.code, "previous": {"is_active": previous}, "new": {"is_active": False}},
        )
        logger.info("metric_type_deactivated", metric_type=metric_type.code, was_active=previous)
        return metric_type
