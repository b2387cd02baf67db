"""
Configures the SQLAlchemy database engine and sessions for the reporting engine.
Every mutating engine operation runs as one unit of work: a session whose transaction
commits on success and rolls back on any error.
"""

from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, declarative_base, scoped_session
from sqlalchemy.pool import StaticPool

from src.reporting import config
from src.reporting.engine.errors import ConflictError
from src.reporting.logging_config import get_logger

logger = get_logger(__name__)

DATABASE_URL = config.get_database_url()

# Base class for models, used throughout the ORM
Base = declarative_base()


# PUBLIC_INTERFACE
def build_engine(url):
    """
    Create an engine for the given URL.
    In-memory SQLite shares a single connection so every session sees the same database.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, future=True, **kwargs)
    return create_engine(url, echo=False, future=True, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)

# Independent sessions for engine units of work
SessionFactory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

# Session factory (thread-local) for the HTTP layer
SessionLocal = scoped_session(SessionFactory)

# PUBLIC_INTERFACE
def get_db():
    """
    Yields a database session for FastAPI dependency injection.
    Cleans up after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# PUBLIC_INTERFACE
def lock_audit_log(session):
    """
    Serialize audit chain writers until the transaction ends (PostgreSQL only).
    LOCK TABLE does not fix a REPEATABLE READ snapshot, so a transaction that takes
    it before its first read sees every chain entry committed ahead of it.
    SQLite serializes writers with its database lock.
    """
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text("LOCK TABLE audit_log IN SHARE ROW EXCLUSIVE MODE"))

# PUBLIC_INTERFACE
@contextmanager
def session_scope(session_factory=None, isolation_level=None, lock_audit=False):
    """
    Provide a transactional scope around a series of operations.
    isolation_level is applied on PostgreSQL only; SQLite transactions are already serializable.
    lock_audit takes the audit chain lock before the work issues any read.
    """
    session = (session_factory or SessionFactory)()
    try:
        if isolation_level and session.get_bind().dialect.name == "postgresql":
            session.connection(execution_options={"isolation_level": isolation_level})
        if lock_audit:
            lock_audit_log(session)
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

# PUBLIC_INTERFACE
def run_in_transaction(work, session_factory=None, retries=None, isolation_level=None, lock_audit=False):
    """
    Run work(session) in its own transaction and return its result.
    A uniqueness violation rolls the attempt back and reruns work against fresh data;
    ConflictError is raised once the attempts are used up.
    """
    attempts = retries if retries is not None else config.ENGINE_CONFLICT_RETRIES
    attempts = max(attempts, 1)
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            with session_scope(session_factory, isolation_level, lock_audit) as session:
                return work(session)
        except IntegrityError as exc:
            last_error = exc
            logger.warning("conflict_retry", attempt=attempt, max_attempts=attempts, error=str(exc.orig))
    raise ConflictError(
        "Concurrent write conflict; refetch and retry",
        details={"attempts": attempts, "error": str(last_error.orig) if last_error else None},
    )
