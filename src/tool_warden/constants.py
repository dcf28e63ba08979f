"""Shared constants for Tool Warden."""

from pathlib import Path


HOME_DIR = Path.home() / ".warden"
LOG_DIR = HOME_DIR / "logs"
DB_DIR = HOME_DIR / "db"
DB_FILE = DB_DIR / "warden.db"
AUDIT_DIR = HOME_DIR / "audit"
LOG_FILE_NAME = "warden.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_MAX_BYTES = 5_000_000
LOG_BACKUP_COUNT = 5
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 9890

SYSTEM_ACTOR = "system"
DEFAULT_APPROVER_ROLE = "user"

MAX_CONCURRENT_EXECUTIONS = 5
DEFAULT_STEP_TIMEOUT = 300.0
SWEEP_INTERVAL = 60.0
RETENTION_HOURS = 24
MAX_ESCALATION_LEVELS = 3
REACT_MAX_STEPS = 10
OBSERVATION_LIMIT = 500
