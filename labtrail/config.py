"""
Centralised configuration constants, read from the environment.
"""
import os

from dotenv import load_dotenv

load_dotenv()

# Database: PostgreSQL in production (DATABASE_URL), SQLite locally
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./labtrail.db")

# Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Bearer tokens (issued elsewhere, verified here)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_EXPIRY_HOURS = int(os.getenv("TOKEN_EXPIRY_HOURS", "24"))

# Audit trail
AUDIT_WORKERS = int(os.getenv("AUDIT_WORKERS", "4"))
AUDIT_RECENT_DEFAULT = 100
AUDIT_RECENT_MAX = 1000

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
