"""
Pydantic models for request and response validation on the boundary routes.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.reporting.models.enums import GoalPeriod, GoalStatus, UserRole

# -------- METRIC OBSERVATION SCHEMA --------
# PUBLIC_INTERFACE
class MetricObservationCreate(BaseModel):
    metric_type_code: str = Field(..., description="Canonical metric type code or numeric id, e.g. 'electricity_consumption'")
    value: float = Field(..., description="Observed value in the metric type's unit")
    notes: Optional[str] = Field(None, description="Free-text notes about the observation")

# PUBLIC_INTERFACE
class ObservationCreated(BaseModel):
    observation_id: int

# -------- GOAL SCHEMA --------
# PUBLIC_INTERFACE
class GoalCreate(BaseModel):
    metric_type_code: str = Field(..., description="Canonical metric type code or numeric id")
    target_value: float = Field(..., description="Target in the metric type's unit")
    period: GoalPeriod = Field(GoalPeriod.YEAR, description="Goal period: year, quarter or event")
    notes: Optional[str] = None

# PUBLIC_INTERFACE
class GoalCreated(BaseModel):
    goal_id: int

# PUBLIC_INTERFACE
class GoalEvaluationRead(BaseModel):
    metric_type_id: int
    metric_type_code: str
    metric_type_name: str
    unit: str
    period: GoalPeriod
    event_id: Optional[int]
    aggregate_value: float
    target_value: float
    variance: float
    status: GoalStatus

    model_config = ConfigDict(from_attributes=True)

# -------- METRIC TYPE SCHEMA --------
# PUBLIC_INTERFACE
class MetricTypeRead(BaseModel):
    id: int
    code: str
    name: str
    category: str
    unit: str
    description: Optional[str]
    is_active: bool

    model_config = ConfigDict(from_attributes=True)

# --------- REPORT SCHEMA ---------
# PUBLIC_INTERFACE
class ReportCreated(BaseModel):
    report_id: int

# PUBLIC_INTERFACE
class ReportRead(BaseModel):
    id: int
    event_id: int
    generated_by: Optional[int]
    generated_at: datetime
    summary: Optional[Dict[str, Any]]
    report_url: Optional[str]
    status: str

    model_config = ConfigDict(from_attributes=True)

# --------- ADMINISTRATION SCHEMA ---------
# PUBLIC_INTERFACE
class MembershipGrant(BaseModel):
    user_id: int
    role: UserRole

# PUBLIC_INTERFACE
class AuditChainRead(BaseModel):
    valid: bool
    entries_checked: int
    first_invalid_id: Optional[int] = None
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

# PUBLIC_INTERFACE
class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

# PUBLIC_INTERFACE
class OkResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None

