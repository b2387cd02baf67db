"""
FastAPI boundary for the Event Sustainability Reporting Engine

Features:
- Metric ingestion (one observation per event and metric type)
- Venue goal configuration and goal status evaluation
- Immutable report generation and retrieval
- Metric catalog administration and audit chain verification

Authentication is external: callers present a bearer JWT whose `sub` claim is the acting user id.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from src.reporting import config
from src.reporting.database import get_db
from src.reporting.engine.errors import EngineError
from src.reporting.engine.registry import MetricTypeRegistry
from src.reporting.engine.service import ReportingEngine, default_artifact_store
from src.reporting.logging_config import configure_logging, get_logger
from src.reporting.models.enums import GoalPeriod
from src.reporting.models.pydantic_schemas import (
    AuditChainRead, ErrorResponse, GoalCreate, GoalCreated, GoalEvaluationRead, MembershipGrant,
    MetricObservationCreate, MetricTypeRead, ObservationCreated, OkResponse, ReportCreated, ReportRead,
)

configure_logging()
logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

# FastAPI app config
app = FastAPI(
    title="Event Sustainability Reporting Engine",
    description="Ingests per-event sustainability metrics, evaluates venue goals and compiles immutable reports.",
    version="1.0.0",
    openapi_tags=[
        {"name": "Metrics", "description": "Metric catalog and per-event metric ingestion."},
        {"name": "Goals", "description": "Venue goals and goal status evaluation."},
        {"name": "Reports", "description": "Generate and fetch event sustainability reports."},
        {"name": "Administration", "description": "Memberships, user deactivation and audit verification."},
    ]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine_service = ReportingEngine(artifact_store=default_artifact_store())

# PUBLIC_INTERFACE
def get_engine() -> ReportingEngine:
    """Engine facade dependency; overridden in tests."""
    return _engine_service


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Render engine errors as {error, message, details} with a matching status code."""
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, **exc.to_dict())
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# --- Auth utils ---

# PUBLIC_INTERFACE
def get_current_user_id(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> int:
    """Validate the bearer JWT and return the acting user id. Active status is checked by the engine."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials", headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(credentials.credentials, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        return int(subject)
    except (JWTError, ValueError):
        raise credentials_exception

# --- Health Check ---
@app.get("/", tags=["Health"])
def health_check():
    """Basic health check endpoint."""
    return {"message": "Healthy"}

# ---------- Metric catalog and ingestion ----------

@app.get("/metric-types/", response_model=List[MetricTypeRead], tags=["Metrics"], summary="List active metric types")
def list_metric_types(db: Session = Depends(get_db)):
    """
    List the metric types currently accepted for new observations.
    """
    return MetricTypeRegistry(db).list_active()

@app.post("/metric-types/{code}/deactivate", response_model=OkResponse, tags=["Metrics"], summary="Deactivate metric type")
def deactivate_metric_type(code: str, user_id: int = Depends(get_current_user_id), engine: ReportingEngine = Depends(get_engine)):
    """
    Retire a metric type from new ingestion (super_admin only). Existing observations and reports are kept.
    """
    engine.deactivate_metric_type(code, user_id)
    return OkResponse(message="Metric type deactivated.")

@app.post("/events/{event_id}/metrics", response_model=ObservationCreated, tags=["Metrics"], summary="Submit event metric")
def ingest_metric(event_id: int, payload: MetricObservationCreate, user_id: int = Depends(get_current_user_id),
                  engine: ReportingEngine = Depends(get_engine)):
    """
    Record the value of a metric for an event. Submitting again replaces the stored value.
    """
    observation_id = engine.ingest_metric(event_id, payload.metric_type_code, payload.value, payload.notes, user_id)
    return ObservationCreated(observation_id=observation_id)

# ---------- Goals ----------

@app.post("/venues/{venue_id}/goals", response_model=GoalCreated, tags=["Goals"], summary="Set venue goal")
def set_goal(venue_id: int, payload: GoalCreate, user_id: int = Depends(get_current_user_id),
             engine: ReportingEngine = Depends(get_engine)):
    """
    Create or update the venue's target for a metric type and period (venue_admin or super_admin).
    """
    goal_id = engine.set_goal(venue_id, payload.metric_type_code, payload.target_value, payload.period, user_id,
                              notes=payload.notes)
    return GoalCreated(goal_id=goal_id)

@app.get("/venues/{venue_id}/goal-status", response_model=List[GoalEvaluationRead], tags=["Goals"], summary="Venue goal status")
def get_venue_goal_status(venue_id: int, period: GoalPeriod = Query(GoalPeriod.YEAR), as_of: Optional[datetime] = None,
                          user_id: int = Depends(get_current_user_id), engine: ReportingEngine = Depends(get_engine)):
    """
    Compare the venue's aggregated observations with its goals for the period containing `as_of` (default now).
    """
    return engine.get_venue_goal_status(venue_id, period, as_of, acting_user_id=user_id)

# ---------- Reports ----------

@app.post("/events/{event_id}/reports", response_model=ReportCreated, tags=["Reports"], summary="Generate report")
def generate_report(event_id: int, user_id: int = Depends(get_current_user_id), engine: ReportingEngine = Depends(get_engine)):
    """
    Compile a new sustainability report for an event. Every call creates a new report.
    """
    return ReportCreated(report_id=engine.generate_report(event_id, user_id))

@app.get("/reports/{report_id}", response_model=ReportRead, tags=["Reports"], summary="Fetch individual report")
def get_report(report_id: int, user_id: int = Depends(get_current_user_id), engine: ReportingEngine = Depends(get_engine)):
    """
    Retrieve a single report by ID.
    """
    return engine.get_report(report_id, user_id)

# ---------- Administration ----------

@app.put("/venues/{venue_id}/members", response_model=OkResponse, tags=["Administration"], summary="Grant venue role")
def grant_membership(venue_id: int, payload: MembershipGrant, user_id: int = Depends(get_current_user_id),
                     engine: ReportingEngine = Depends(get_engine)):
    """
    Give a user a role at a venue, replacing any previous role there (super_admin only).
    """
    engine.grant_membership(payload.user_id, venue_id, payload.role, user_id)
    return OkResponse(message="Membership updated.")

@app.post("/users/{target_user_id}/deactivate", response_model=OkResponse, tags=["Administration"], summary="Deactivate user")
def deactivate_user(target_user_id: int, user_id: int = Depends(get_current_user_id), engine: ReportingEngine = Depends(get_engine)):
    """
    Deactivate a user (super_admin only). Users are never deleted.
    """
    engine.deactivate_user(target_user_id, user_id)
    return OkResponse(message="User deactivated.")

@app.get("/audit/verify", response_model=AuditChainRead, tags=["Administration"], summary="Verify audit chain",
         responses={403: {"model": ErrorResponse}})
def verify_audit_chain(user_id: int = Depends(get_current_user_id), engine: ReportingEngine = Depends(get_engine)):
    """
    Recompute the audit hash chain and report the first tampered entry, if any (super_admin only).
    """
    return engine.verify_audit_chain(user_id)
