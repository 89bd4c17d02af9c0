"""Runtime settings, read from THREATSTUDIO_* environment variables."""
import json
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

ENV_PREFIX = "THREATSTUDIO_"
DEFAULT_MODEL_ID = "us.anthropic.claude-sonnet-4-20250514-v1:0"


class Settings(BaseModel):
    inference_url: str = "http://localhost:8000/generate"
    default_model_id: str = DEFAULT_MODEL_ID
    host: str = "127.0.0.1"
    port: int = 8500
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    # Provider credentials forwarded with inference requests
    ollama_config: Optional[Dict[str, Any]] = None
    azure_config: Optional[Dict[str, Any]] = None


def _read_env(name: str) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name.upper())
    if value is None or value == "":
        return None
    return value


def load_settings() -> Settings:
    """Build Settings from the environment. Unset variables keep defaults.

    List and dict fields are given as JSON, e.g.
    THREATSTUDIO_CORS_ORIGINS='["http://localhost:3000"]'.
    """
    raw: Dict[str, Any] = {}
    for name in Settings.model_fields:
        value = _read_env(name)
        if value is None:
            continue
        if name in ("cors_origins", "ollama_config", "azure_config"):
            raw[name] = json.loads(value)
        else:
            raw[name] = value
    return Settings(**raw)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
