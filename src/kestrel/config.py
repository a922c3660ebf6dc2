from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Kestrel"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8787
    log_level: str = "INFO"
    cors_origins: str = "http://127.0.0.1:8787"

    database_url: str = "sqlite:///./data/kestrel.db"
    data_dir: Path = Path("./data")
    feed_dir: Path = Path("./data/feeds")
    sqlite_busy_timeout_sec: int = 30

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_ranker: str = "gpt-5-mini"
    openai_model_analyst: str = "gpt-5-mini"
    openai_timeout_sec: int = 60

    local_llm_enabled: bool = True
    local_llm_base_url: str = "http://localhost:11434/v1"
    local_llm_api_key: str = "local"
    local_llm_model: str = "qwen2.5:14b-instruct"
    local_llm_timeout_sec: int = 90

    llm_router_default: str = "local"
    llm_router_rank_provider: str = "local"
    llm_router_rejection_provider: str = "local"
    llm_router_mapping_provider: str = "local"

    default_profile: str = "core"
    candidate_profile_summary: str = ""
    min_fit_score: float = 70.0
    fetch_missing_descriptions: bool = True
    fetch_timeout_sec: int = 30
    lead_max_profiles: int = 50
    job_feed_path: Path = Path("./data/feeds/jobs.json")
    lead_feed_path: Path = Path("./data/feeds/leads.json")

    learning_queue_enabled: bool = True
    orchestrator_join_timeout_sec: int = 30

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("min_fit_score")
    @classmethod
    def validate_min_fit_score(cls, value: float) -> float:
        if value < 0 or value > 100:
            raise ValueError("min_fit_score must be between 0 and 100")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
