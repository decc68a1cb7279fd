"""Constants and configuration for the cycle buddy matching engine."""

from pathlib import Path

# ── Paths ──────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = DATA_DIR / "cyclebuddy.db"

# ── SQLite ─────────────────────────────────────────────────────────────
SQLITE_BUSY_TIMEOUT_S = 5.0  # how long a writer waits for the lock before a conflict

# ── Geometry ───────────────────────────────────────────────────────────
EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE = 111_000  # rough, used only for bounding-box pre-filters
PREFILTER_MARGIN_FACTOR = 1.5

# ── Matching ───────────────────────────────────────────────────────────
MIN_RADIUS_M = 1
MAX_RADIUS_M = 2000

# ── BuddyRequest lifecycle ─────────────────────────────────────────────
VALID_REVIEW_SCORES = (-1, 1)

# Auto-generated reasons used when a deletion cancels open BuddyRequests
REASON_EXPERIENCED_ROUTE_DELETED = "The experienced cyclist deleted the route this request was for"
REASON_INEXPERIENCED_ROUTE_DELETED = "The requester deleted the journey this request was for"
REASON_EXPERIENCED_USER_DELETED = "The experienced cyclist deleted their account"
REASON_OWNER_DELETED = "The requester deleted their account"
