
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./signify.db")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ACCESS_TOKEN_MAX_AGE = int(os.getenv("ACCESS_TOKEN_MAX_AGE", str(7 * 24 * 3600)))
WEB_BASE_URL = os.getenv("WEB_BASE_URL", "http://localhost:3000")
DEFAULT_EXPIRES_IN_DAYS = int(os.getenv("DEFAULT_EXPIRES_IN_DAYS", "30"))
MAX_EXPIRES_IN_DAYS = int(os.getenv("MAX_EXPIRES_IN_DAYS", "365"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
TOKEN_ISSUE_ATTEMPTS = int(os.getenv("TOKEN_ISSUE_ATTEMPTS", "5"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
