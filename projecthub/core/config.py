import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# DEV default secret. Override with PROJECTHUB_SECRET_KEY in production.
SECRET_KEY = os.getenv("PROJECTHUB_SECRET_KEY", "change-me-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE = timedelta(minutes=60)

DATABASE_URL = os.getenv("PROJECTHUB_DATABASE_URL", f"sqlite:///{BASE_DIR}/projecthub.db")

# Database reconnect policy (seconds)
DB_RETRY_MAX_ATTEMPTS = 5
DB_RETRY_INITIAL_DELAY = 2.0
DB_RETRY_MAX_DELAY = 30.0
DB_RETRY_BACKOFF_FACTOR = 2.0

# Task defaults
DEFAULT_MAX_POINTS = 100
DEFAULT_MAX_ATTEMPTS = 1
MAX_ATTEMPTS_LIMIT = 10
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB
MAX_FILES_PER_SUBMISSION = 10
VALID_FILE_TYPES = ("pdf", "doc", "docx", "txt", "jpg", "jpeg", "png", "gif", "zip", "rar")

# Text limits
MAX_COMMENT_LENGTH = 2000
MAX_FEEDBACK_LENGTH = 5000

# Teams
DEFAULT_TEAM_SIZE = 6
MIN_TEAM_SIZE = 2
MAX_TEAM_SIZE = 10

# Local file store for submission uploads
UPLOAD_DIR = Path(os.getenv("PROJECTHUB_UPLOAD_DIR", str(BASE_DIR / "uploads" / "submissions")))
