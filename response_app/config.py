import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# =========================
# Helpers
# =========================

def _getenv_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except Exception:
        return default

def _getenv_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except Exception:
        return default

def _getenv_opt_int(key: str) -> Optional[int]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# =========================
# Settings
# =========================

class Settings(BaseModel):
    db_path: str = "response.sqlite"
    cache_backend: str = "memory"  # memory | sqlite
    cache_db_path: str = "response_cache.sqlite"
    cache_ttl_secs: int = 3600
    provider_timeout_secs: float = 10.0
    provider_latency_scale: float = 1.0
    social_rate_limit_chance: float = 0.2
    social_random_seed: Optional[int] = None
    ws_max_pending: int = Field(default=100, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            db_path=os.getenv("RESPONSE_DB_PATH", "response.sqlite"),
            cache_backend=os.getenv("CACHE_BACKEND", "memory").strip().lower(),
            cache_db_path=os.getenv("CACHE_DB_PATH", "response_cache.sqlite"),
            cache_ttl_secs=_getenv_int("CACHE_TTL_SECS", 3600),
            provider_timeout_secs=_getenv_float("PROVIDER_TIMEOUT_SECS", 10.0),
            provider_latency_scale=_getenv_float("PROVIDER_LATENCY_SCALE", 1.0),
            social_rate_limit_chance=_getenv_float("SOCIAL_RATE_LIMIT_CHANCE", 0.2),
            social_random_seed=_getenv_opt_int("SOCIAL_RANDOM_SEED"),
            ws_max_pending=_getenv_int("WS_MAX_PENDING", 100),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

def configure_logging(level: str = "INFO") -> None:
    """Install the console handler once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
