import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Defaults are for local dev; deployments override through env vars.
DATABASE_URL = os.getenv("GRADEIMPORT_DATABASE_URL", f"sqlite:///{BASE_DIR}/gradeimport.db")
UPLOAD_DIR = Path(os.getenv("GRADEIMPORT_UPLOAD_DIR", str(BASE_DIR / "uploads")))
LOG_LEVEL = os.getenv("GRADEIMPORT_LOG_LEVEL", "INFO")

# Draft retention: unconfirmed drafts expire after this window
DRAFT_RETENTION = timedelta(hours=int(os.getenv("GRADEIMPORT_DRAFT_RETENTION_HOURS", "24")))
MAX_UPLOAD_BYTES = 5 * 1024 * 1024

# Confirm policy
CONFIRM_TIMEOUT_SECONDS = 120.0
CONFIRM_LEASE_GRACE = timedelta(seconds=30)  # lease outlives the timeout by this much
CONFIRM_CHUNK_SIZE = 100  # accepted rows per write transaction

# Grade scale
GRADE_MIN = 0.0
GRADE_MAX = 100.0
