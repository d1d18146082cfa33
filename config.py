from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/fleet.db")

# Undo window: one value drives both the revert buffer lifetime and the
# countdown shown to the actor.
UNDO_WINDOW_SECONDS: int = int(os.getenv("UNDO_WINDOW_SECONDS", "300"))
UNDO_SWEEP_SECONDS: int = int(os.getenv("UNDO_SWEEP_SECONDS", "30"))  # 0 = lazy expiry only

# Reassignment commits
COMMIT_MAX_ATTEMPTS: int = int(os.getenv("COMMIT_MAX_ATTEMPTS", "3"))
MIN_REASON_LENGTH: int = int(os.getenv("MIN_REASON_LENGTH", "10"))
LOAD_WARNING_RATIO: float = float(os.getenv("LOAD_WARNING_RATIO", "0.9"))

# Post-commit side effects (audit + notifications)
SIDE_EFFECT_MAX_ATTEMPTS: int = int(os.getenv("SIDE_EFFECT_MAX_ATTEMPTS", "5"))
SIDE_EFFECT_RETRY_SECONDS: int = int(os.getenv("SIDE_EFFECT_RETRY_SECONDS", "15"))

# Notification dispatcher; leave the URL empty to log notifications only
NOTIFICATION_WEBHOOK_URL: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
NOTIFICATION_API_KEY: str = os.getenv("NOTIFICATION_API_KEY", "")  # sent as Bearer token
NOTIFICATION_TIMEOUT_SECONDS: float = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")
CORS_ORIGINS: list[str] = [
    origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
]
