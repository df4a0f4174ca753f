"""Environment-driven settings. ``.env`` is loaded by ``chat_api.main`` before import."""
import os


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# --- LLM providers (fixed order: openai, then deepseek) ---
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY", "").strip()
DEEPSEEK_MODEL = os.getenv("DEEPSEEK_MODEL", "deepseek-chat")
DEEPSEEK_API_BASE = os.getenv("DEEPSEEK_API_BASE", "https://api.deepseek.com")

# --- Per-stage LLM timeouts (seconds) ---
COORDINATOR_TIMEOUT_S = max(0.5, float(os.getenv("COORDINATOR_TIMEOUT_S", "8")))
QUERY_TIMEOUT_S = max(1.0, float(os.getenv("QUERY_STAGE_TIMEOUT_S", "12")))
ANALYST_TIMEOUT_S = max(0.5, float(os.getenv("ANALYST_TIMEOUT_S", "8")))
FORMATTER_TIMEOUT_S = max(0.5, float(os.getenv("FORMATTER_TIMEOUT_S", "10")))

# --- Data store ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data.db")
DB_QUERY_TIMEOUT_S = max(1, int(os.getenv("DB_QUERY_TIMEOUT_S", "30")))
DB_MAX_ROWS = max(10, int(os.getenv("DB_MAX_ROWS", "1000")))
ENABLE_RAW_READ = _flag("ENABLE_RAW_READ", "true")
INCLUDE_TABLES = [t.strip() for t in os.getenv("INCLUDE_TABLES", "").split(",") if t.strip()] or None

# --- Sessions ---
SESSION_TTL_S = max(60.0, float(os.getenv("SESSION_TTL_HOURS", "24")) * 3600.0)
SESSION_SWEEP_INTERVAL_S = max(1.0, float(os.getenv("SESSION_SWEEP_INTERVAL_S", "3600")))
SESSION_MAX_MESSAGES = max(10, int(os.getenv("SESSION_MAX_MESSAGES", "1000")))

# --- HTTP ---
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]
