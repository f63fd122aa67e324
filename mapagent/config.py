import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "MAPAGENT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

_INT_FIELDS = ("port", "max_iterations")
_FLOAT_FIELDS = ("llm_timeout_s", "map_api_timeout_s", "conversation_ttl_s")
_BOOL_FIELDS = ("single_tool_per_turn", "stop_stream_on_tool_call", "report_malformed_tool_calls")


class AppSettings(BaseModel):
    # Local model (Ollama chat API)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "qwen3:8b"
    llm_timeout_s: float = 60.0

    # Map backend consumed by the tools
    map_api_base_url: str = "http://localhost:3000"
    map_api_key: Optional[str] = None
    map_api_timeout_s: float = 30.0
    search_language: str = "zh-CN"
    search_country: str = "JP"

    # Tool-calling loop
    max_iterations: int = Field(default=10, ge=1)
    single_tool_per_turn: bool = True
    stop_stream_on_tool_call: bool = True
    report_malformed_tool_calls: bool = False

    # Conversation storage
    conversation_backend: Literal["memory", "sqlite"] = "memory"
    database_path: str = "conversations.db"
    conversation_ttl_s: float = 24 * 60 * 60

    host: str = "0.0.0.0"
    port: int = 3001

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("map_api_key"):
            data["map_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_base_url": os.getenv("OLLAMA_API_URL"),
        "ollama_model": os.getenv("OLLAMA_MODEL"),
        "llm_timeout_s": os.getenv("LLM_TIMEOUT_S"),
        "map_api_base_url": os.getenv("MAPANNAI_API_URL"),
        "map_api_key": os.getenv("MAPANNAI_API_KEY"),
        "map_api_timeout_s": os.getenv("MAP_API_TIMEOUT_S"),
        "search_language": os.getenv("SEARCH_LANGUAGE"),
        "search_country": os.getenv("SEARCH_COUNTRY"),
        "max_iterations": os.getenv("MAX_ITERATIONS"),
        "single_tool_per_turn": os.getenv("SINGLE_TOOL_PER_TURN"),
        "stop_stream_on_tool_call": os.getenv("STOP_STREAM_ON_TOOL_CALL"),
        "report_malformed_tool_calls": os.getenv("REPORT_MALFORMED_TOOL_CALLS"),
        "conversation_backend": os.getenv("CONVERSATION_BACKEND"),
        "database_path": os.getenv("DATABASE_PATH"),
        "conversation_ttl_s": os.getenv("CONVERSATION_TTL_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("AI_MIDDLEWARE_PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in _BOOL_FIELDS:
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets left blank in config.json still come from the environment.
    if not merged.get("map_api_key") and env_data.get("map_api_key"):
        merged["map_api_key"] = env_data["map_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
