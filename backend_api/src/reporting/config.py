"""
Runtime configuration for the sustainability reporting engine.
All values come from environment variables (optionally a local .env file) so the
same code runs against PostgreSQL in deployment and SQLite in tests.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# PUBLIC_INTERFACE
def get_database_url():
    """
    Return the SQLAlchemy database URL.
    DATABASE_URL wins when set; otherwise the URL is composed from the POSTGRES_* variables.
    """
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    user = os.getenv("POSTGRES_USER")
    password = os.getenv("POSTGRES_PASSWORD")
    host = os.getenv("POSTGRES_URL")
    port = os.getenv("POSTGRES_PORT")
    db = os.getenv("POSTGRES_DB")

    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db}"

# Bearer tokens are issued by the external auth provider; the engine only decodes them.
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")  # json | console

# Attempts for a unit of work that loses a uniqueness race
ENGINE_CONFLICT_RETRIES = int(os.getenv("ENGINE_CONFLICT_RETRIES", "3"))

# Directory for report artifacts; unset disables the artifact step
REPORT_ARTIFACT_DIR = os.getenv("REPORT_ARTIFACT_DIR") or None

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
