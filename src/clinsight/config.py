"""
Clinsight Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLINSIGHT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_json: bool = True
    log_redact_fields: list[str] = Field(
        default_factory=lambda: ["clinical_narrative", "patient_history"]
    )

    # In-memory backends instead of Postgres/Redis/Kafka
    mock_mode: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 1
    api_reload: bool = False


class PostgresSettings(BaseSettings):
    """PostgreSQL (with pgvector) settings."""

    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5432
    user: str = "clinsight"
    password: SecretStr = Field(default=SecretStr("clinsight_dev_password"))
    database: str = "clinsight"
    min_pool_size: int = 2
    max_pool_size: int = 10

    records_table: str = "clinical_records"
    vectors_table: str = "clinical_vectors"

    @property
    def connection_url(self) -> str:
        """Get the PostgreSQL connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class RedisSettings(BaseSettings):
    """Redis cache settings."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        extra="ignore",
    )

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: SecretStr | None = None
    key_prefix: str = "clinsight:search"

    @property
    def connection_url(self) -> str:
        """Get the Redis connection URL."""
        if self.password:
            pwd = self.password.get_secret_value()
            return f"redis://:{pwd}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka event streaming settings."""

    model_config = SettingsConfigDict(
        env_prefix="KAFKA_",
        env_file=".env",
        extra="ignore",
    )

    enabled: bool = False
    bootstrap_servers: str = "localhost:9092"
    client_id: str = "clinsight-api"
    consumer_group: str = "clinsight-analytics-engine"

    # Topic names
    analytics_events_topic: str = "clinical-analytics-events"


class VectorSettings(BaseSettings):
    """Vector store and similarity search settings."""

    model_config = SettingsConfigDict(
        env_prefix="VECTOR_",
        env_file=".env",
        extra="ignore",
    )

    backend: Literal["memory", "pgvector"] = "memory"
    dimensions: int = 1536
    namespace: str = "clinical"

    default_top_k: int = 20
    default_similarity_threshold: float = 0.8
    max_top_k: int = 200

    # Result / query-embedding cache
    cache_size: int = 1024
    cache_ttl_seconds: int = 300

    # Fan-in bounds
    search_concurrency: int = 8
    max_pending_searches: int = 64
    search_timeout_seconds: float = 5.0


class EmbeddingSettings(BaseSettings):
    """Embedding provider settings."""

    model_config = SettingsConfigDict(
        env_prefix="EMBEDDING_",
        env_file=".env",
        extra="ignore",
    )

    provider: Literal["hashing", "openai"] = "hashing"
    model: str = "text-embedding-3-small"
    api_key: SecretStr | None = None
    batch_size: int = 64


class AnalyticsSettings(BaseSettings):
    """Risk assessment and decision support tuning."""

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_",
        env_file=".env",
        extra="ignore",
    )

    risk_similar_cases: int = 50
    risk_similarity_threshold: float = 0.8
    base_risk_weight: float = 0.7

    decision_support_cases: int = 20
    decision_support_threshold: float = 0.8
    guideline_top_k: int = 10
    guideline_threshold: float = 0.75


class AuthSettings(BaseSettings):
    """Authentication settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    jwt_secret_key: SecretStr = Field(default=SecretStr("jwt-secret-change-me"))
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 30

    # Development only: requests without a bearer token act as this user
    dev_auto_auth: bool = False


class Settings:
    """
    Aggregated settings container.

    Usage:
        from clinsight.config import get_settings
        settings = get_settings()
        print(settings.app.api_port)
        print(settings.postgres.connection_url)
    """

    def __init__(self):
        self.app = AppSettings()
        self.postgres = PostgresSettings()
        self.redis = RedisSettings()
        self.kafka = KafkaSettings()
        self.vector = VectorSettings()
        self.embedding = EmbeddingSettings()
        self.analytics = AnalyticsSettings()
        self.auth = AuthSettings()

    @property
    def is_development(self) -> bool:
        return self.app.env == "development"

    @property
    def is_production(self) -> bool:
        return self.app.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()
