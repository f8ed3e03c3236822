from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: str
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 8000

    llm_timeout_sec: int = 60
    llm_max_attempts: int = 3
    retry_backoff_base: float = 2.0

    stream_timeout_sec: int = 120
    stream_max_retries: int = 3
    stream_retry_delay_sec: float = 2.0

    diagnostic_prefix_chars: int = 1000
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
