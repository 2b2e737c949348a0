"""Runtime configuration read from environment variables."""
import os

# Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./formflow.db")

# Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

UPLOAD_DIR = os.getenv("FORMFLOW_UPLOAD_DIR", "./uploads")
MAX_UPLOAD_BYTES = int(os.getenv("FORMFLOW_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
MAX_UPLOAD_FILES = int(os.getenv("FORMFLOW_MAX_UPLOAD_FILES", "5"))

LOG_LEVEL = os.getenv("FORMFLOW_LOG_LEVEL", "INFO")

# Comma-separated list of allowed browser origins
CORS_ORIGINS = [o.strip() for o in os.getenv("FORMFLOW_CORS_ORIGINS", "*").split(",") if o.strip()]
