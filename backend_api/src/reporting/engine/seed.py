"""
Schema bootstrap and seed data: the metric catalog plus one sample venue with an event,
its observations and per-event goals. Loading is idempotent.

Usage: python -m src.reporting.engine.seed
"""

from datetime import date

from sqlalchemy.orm import Session

from src.reporting.database import Base, engine, session_scope
from src.reporting.engine.registry import slugify_metric_code
from src.reporting.logging_config import configure_logging, get_logger
from src.reporting.models.enums import GoalPeriod, UserRole
from src.reporting.models.orm_models import (
    Event, Goal, MetricObservation, MetricType, User, Venue, VenueMembership,
)

logger = get_logger(__name__)

# (name, category, unit, description)
METRIC_CATALOG = [
    ("Electricity Consumption", "Energy", "kWh", "Total electricity used"),
    ("Water Usage", "Water", "Liters", "Water consumed during event"),
    ("Waste Generated", "Waste", "Kg", "Total waste produced"),
    ("Recycled Waste", "Waste", "Kg", "Amount of waste recycled"),
    ("CO2 Emissions", "Transportation", "KgCO2", "Estimated carbon footprint"),
]

# Placeholder hash; credentials are managed by the auth provider
SAMPLE_PASSWORD_HASH = "$2b$12$abcdefghijklmnopqrstuv"


def init_db(bind=None):
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=bind or engine)


def seed_catalog(session: Session):
    """Insert missing catalog entries; returns {code: MetricType}."""
    catalog = {}
    for name, category, unit, description in METRIC_CATALOG:
        code = slugify_metric_code(name)
        metric_type = session.query(MetricType).filter(MetricType.code == code).first()
        if metric_type is None:
            metric_type = MetricType(code=code, name=name, category=category, unit=unit, description=description)
            session.add(metric_type)
        catalog[code] = metric_type
    session.flush()
    return catalog


def _get_or_create_user(session: Session, email, full_name, role):
    user = session.query(User).filter(User.email == email).first()
    if user is None:
        user = User(email=email, password_hash=SAMPLE_PASSWORD_HASH, full_name=full_name, role=role)
        session.add(user)
        session.flush()
    return user


def seed_sample_data(session: Session):
    """Sample venue, users, event, observations and goals. Returns the venue."""
    catalog = seed_catalog(session)
    admin = _get_or_create_user(session, "admin@samplevenue.com", "Venue Admin", UserRole.SUPER_ADMIN.value)
    staff = _get_or_create_user(session, "staff@samplevenue.com", "Venue Staff", UserRole.VENUE_ADMIN.value)

    venue = session.query(Venue).filter(Venue.name == "Green Conference Center").first()
    if venue is not None:
        return venue

    venue = Venue(
        name="Green Conference Center",
        address="123 Leafy Rd",
        city="Greenville",
        country="USA",
        phone="+15551212345",
        website="https://greenvenue.com",
        venue_contact_id=admin.id,
    )
    session.add(venue)
    session.flush()
    session.add_all([
        VenueMembership(user_id=admin.id, venue_id=venue.id, role=UserRole.SUPER_ADMIN.value),
        VenueMembership(user_id=staff.id, venue_id=venue.id, role=UserRole.VENUE_ADMIN.value),
    ])

    event = Event(
        venue_id=venue.id,
        name="Eco Awareness Summit",
        description="Annual sustainability summit for corporate clients",
        event_type="Conference",
        start_date=date(2023, 9, 10),
        end_date=date(2023, 9, 12),
        expected_attendees=300,
        created_by=admin.id,
    )
    session.add(event)
    session.flush()

    observations = [
        ("electricity_consumption", 1800, "Total electricity for summit"),
        ("water_usage", 20000, "Liters of water used"),
        ("waste_generated", 800, "Total waste generated"),
        ("recycled_waste", 500, "Of which, 500kg was recycled"),
        ("co2_emissions", 1200, "Estimated transportation emissions"),
    ]
    for code, value, notes in observations:
        session.add(MetricObservation(event_id=event.id, metric_type_id=catalog[code].id, value=value, notes=notes))

    session.add_all([
        Goal(venue_id=venue.id, metric_type_id=catalog["electricity_consumption"].id, target_value=1500,
             period=GoalPeriod.EVENT.value, notes="Target consumption per event kWh"),
        Goal(venue_id=venue.id, metric_type_id=catalog["waste_generated"].id, target_value=600,
             period=GoalPeriod.EVENT.value, notes="Target waste generated per event"),
    ])
    session.flush()
    logger.info("sample_data_seeded", venue_id=venue.id, event_id=event.id)
    return venue


if __name__ == "__main__":
    configure_logging()
    init_db()
    with session_scope() as session:
        seed_sample_data(session)
