"""
Runtime configuration read from the environment (and an optional .env file).
"""
import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


class Settings(BaseModel):
    model_dir: str = os.path.join(BASE_DIR, "models", "plant-disease")
    groq_api_key: str = ""
    groq_api_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "llama-3.3-70b-versatile"
    groq_vision_model: str = "llama-3.2-90b-vision-preview"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3"
    remote_timeout_seconds: float = 30.0
    refine_enabled: bool = True
    libretranslate_url: str = "http://localhost:5555"
    upload_dir: str = os.path.join(BASE_DIR, "uploads")
    max_upload_bytes: int = 10 * 1024 * 1024
    history_db_path: str = os.path.join(BASE_DIR, "data.db")
    jwt_secret: str = "please_change_this_secret"
    jwt_algorithm: str = "HS256"

    model_config = {"protected_namespaces": ()}


def load_settings() -> Settings:
    """Build settings from the current environment; unset values keep defaults."""
    defaults = Settings()
    return Settings(
        model_dir=os.getenv("MODEL_DIR") or defaults.model_dir,
        groq_api_key=os.getenv("GROQ_API_KEY", "").strip(),
        groq_api_url=os.getenv("GROQ_API_URL") or defaults.groq_api_url,
        groq_model=os.getenv("GROQ_MODEL") or defaults.groq_model,
        groq_vision_model=os.getenv("GROQ_VISION_MODEL") or defaults.groq_vision_model,
        ollama_base_url=os.getenv("OLLAMA_BASE_URL") or defaults.ollama_base_url,
        ollama_model=os.getenv("OLLAMA_MODEL") or defaults.ollama_model,
        remote_timeout_seconds=_env_float("REMOTE_TIMEOUT_SECONDS", defaults.remote_timeout_seconds),
        refine_enabled=_env_bool("REFINE_ENABLED", defaults.refine_enabled),
        libretranslate_url=os.getenv("LIBRETRANSLATE_URL") or defaults.libretranslate_url,
        upload_dir=os.getenv("UPLOAD_DIR") or defaults.upload_dir,
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", defaults.max_upload_bytes),
        history_db_path=os.getenv("HISTORY_DB_PATH") or defaults.history_db_path,
        jwt_secret=os.getenv("JWT_SECRET") or defaults.jwt_secret,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def reset_settings() -> None:
    """Drop the cached settings (tests change the environment between cases)."""
    get_settings.cache_clear()
