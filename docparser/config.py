# docparser/config.py
from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Tuple, Type

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


class ServerSettings(BaseModel):
    port: int = 9091
    max_upload_bytes: int = 10 * 1024 * 1024  # 10 MiB


class DatabaseSettings(BaseModel):
    dialect: str = "sqlite"  # sqlite | mysql | postgres
    dsn: str = "./local.db"
    log_mode: bool = False
    pool_size: int = 5
    max_overflow: int = 10

    def async_url(self) -> str:
        """
        Build the SQLAlchemy async URL for the configured dialect.
        Accepts either a bare path / "user:pwd@host:port/db" or a full URL.
        """
        dsn = self.dsn.strip()
        dialect = self.dialect.lower()

        if dialect == "sqlite":
            if dsn.startswith("sqlite"):
                return dsn
            return f"sqlite+aiosqlite:///{dsn}"

        if dialect == "mysql":
            driver = "mysql+asyncmy"
        elif dialect in ("postgres", "postgresql"):
            driver = "postgresql+asyncpg"
        else:
            raise ValueError(f"Unsupported database dialect: {self.dialect}")

        if "://" in dsn:
            return f"{driver}://{dsn.split('://', 1)[1]}"
        return f"{driver}://{dsn}"


class RedisSettings(BaseModel):
    address: str = ""  # empty -> in-process TTL cache
    password: str = ""
    db: int = 0


class ProviderSettings(BaseModel):
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    timeout: float = 30.0          # seconds, per call
    retry_count: int = 3
    retry_wait_time: float = 1.0   # initial backoff (s)
    retry_max_interval: float = 10.0


class LLMSettings(BaseModel):
    default_provider: str = "openrouter"
    analysis_model: str = "openai/gpt-4o-mini"
    vision_model: str = "qwen/qwen2.5-vl-32b-instruct:free"
    temperature: float = 0.0
    openrouter: ProviderSettings = Field(default_factory=ProviderSettings)
    openai: ProviderSettings = Field(
        default_factory=lambda: ProviderSettings(base_url="https://api.openai.com/v1")
    )


class OCRSettings(BaseModel):
    api_key: str = ""
    model: str = "qwen/qwen2.5-vl-32b-instruct:free"
    fallback_models: List[str] = Field(
        default_factory=lambda: [
            "qwen/qwen2.5-vl-72b-instruct:free",
            "meta-llama/llama-3.2-11b-vision-instruct:free",
        ]
    )
    min_confidence: float = 0.1
    cache_ttl_seconds: int = 24 * 3600
    concurrency: int = 4
    timeout: float = 30.0


class StorageSettings(BaseModel):
    backend: str = "local"  # local | s3
    local_dir: str = "./uploads"
    s3_bucket: str = ""
    s3_prefix: str = "docparser/uploads/"
    region: str = "us-east-1"


class PipelineSettings(BaseModel):
    max_pages: int = 10
    rasterizer_binary: str = "pdftoppm"
    text_probe_bytes: int = 512
    retention_days: int = 365
    retention_sweep_minutes: int = 60
    run_retention_sweep: bool = False
    repository_timeout: float = 5.0


class KnowledgeSettings(BaseModel):
    cache_ttl_seconds: int = 24 * 3600
    max_chars: int = 8 * 1024


class LoggerSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseSettings):
    environment: str = "development"
    service_name: str = "smart-docparser"

    server: ServerSettings = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    ocr: OCRSettings = Field(default_factory=OCRSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    knowledge: KnowledgeSettings = Field(default_factory=KnowledgeSettings)
    logger: LoggerSettings = Field(default_factory=LoggerSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        yaml_file=os.getenv("DOCPARSER_CONFIG", "config.yaml"),
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # init > env > .env > yaml
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


def apply_env_overrides(settings: Settings) -> Settings:
    """OPENROUTER_API_KEY / QWEN_API_KEY win over anything read from files."""
    openrouter_key = os.getenv("OPENROUTER_API_KEY")
    qwen_key = os.getenv("QWEN_API_KEY")

    if openrouter_key:
        settings.llm.openrouter.api_key = openrouter_key
        if not qwen_key:
            settings.ocr.api_key = openrouter_key
    if qwen_key:
        settings.ocr.api_key = qwen_key
    return settings


@lru_cache
def get_settings() -> Settings:
    return apply_env_overrides(Settings())
