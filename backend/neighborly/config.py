import os
from dotenv import load_dotenv

# Load .env at repo root
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", ".env"))


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./neighborly.db")
DB_TIMEOUT_SECONDS = float(os.getenv("NEIGHBORLY_DB_TIMEOUT", "5"))
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "http://localhost:8081")
LOG_LEVEL = os.getenv("NEIGHBORLY_LOG_LEVEL", "INFO")
OTP_TTL_MINUTES = int(os.getenv("NEIGHBORLY_OTP_TTL_MINUTES", "15"))
OTP_MAX_ATTEMPTS = int(os.getenv("NEIGHBORLY_OTP_MAX_ATTEMPTS", "5"))
OTP_RESEND_COOLDOWN_SECONDS = int(os.getenv("NEIGHBORLY_OTP_RESEND_COOLDOWN_SECONDS", "60"))
SEED_DEMO = _flag("NEIGHBORLY_SEED_DEMO", True)
