import os

from dotenv import load_dotenv

load_dotenv()

# Remote diagnostics service
ANALYSIS_API_URL = os.getenv("ANALYSIS_API_URL", "")
ANALYSIS_API_TOKEN = os.getenv("ANALYSIS_API_TOKEN", "")

# Demo/Debug mode (explicit, or implied when no remote service is configured)
DUMMY_MODE = os.getenv("DUMMY_MODE", "false").lower() in ("1", "true", "yes", "on") or not ANALYSIS_API_URL

# Timeouts (seconds)
SUBMIT_TIMEOUT_SECONDS = float(os.getenv("SUBMIT_TIMEOUT_SECONDS", "180"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

# Polling policy
POLL_MAX_ATTEMPTS = int(os.getenv("POLL_MAX_ATTEMPTS", "30"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))
POLL_ERROR_INTERVAL_SECONDS = float(os.getenv("POLL_ERROR_INTERVAL_SECONDS", "3"))

# Draft autosave
DRAFT_DEBOUNCE_SECONDS = float(os.getenv("DRAFT_DEBOUNCE_SECONDS", "2"))

# Local cache
DRAFT_TTL_SECONDS = int(os.getenv("DRAFT_TTL_SECONDS", str(60 * 60)))
ANALYSIS_TTL_SECONDS = int(os.getenv("ANALYSIS_TTL_SECONDS", str(24 * 60 * 60)))
CACHE_PATH = os.getenv("CACHE_PATH", "caseflow_cache.db")
CACHE_MAX_BYTES = int(os.getenv("CACHE_MAX_BYTES", str(5 * 1024 * 1024)))

# History
HISTORY_PAGE_LIMIT = int(os.getenv("HISTORY_PAGE_LIMIT", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
