import os

from dotenv import load_dotenv


load_dotenv()


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


# -----------------------------
# Server
# -----------------------------

LISTEN_HOST = os.getenv("LISTEN_HOST", "127.0.0.1")
LISTEN_PORT = int(os.getenv("PORT") or os.getenv("LISTEN_PORT", "3000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
MOCK_MODE = _env_flag("MOCK_MODE")
SERVICE_NAME = "Tissue AI Backend"
SERVICE_VERSION = "3.1.0"

# -----------------------------
# Coin ledger
# -----------------------------

LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory").strip().lower() or "memory"
COIN_DB_PATH = os.getenv("COIN_DB_PATH", "./data/coins.sqlite3")
FIREBASE_URL = os.getenv("FIREBASE_URL", "").rstrip("/")
STARTING_COINS = int(os.getenv("STARTING_COINS", "100"))

# -----------------------------
# Upstream vendors
# -----------------------------

UPSTREAM_TIMEOUT_SECONDS = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
# Schema-constrained generation tries the small model first, then the larger one.
PRIMARY_MODEL = os.getenv("PRIMARY_MODEL", "gpt-5-nano")
FALLBACK_MODEL = os.getenv("FALLBACK_MODEL", "gpt-5-mini")
PAID_MODEL = os.getenv("PAID_MODEL", "gpt-5-nano")

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
OPENROUTER_REFERER = os.getenv("OPENROUTER_REFERER", "https://github.com/tissue-ai")
OPENROUTER_TITLE = os.getenv("OPENROUTER_TITLE", "Tissue AI Plugin")
FREE_MODEL = os.getenv("FREE_MODEL", "z-ai/glm-4-32b")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
).rstrip("/")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp")

# -----------------------------
# Rate limiting (per user id)
# -----------------------------

RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "20"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
