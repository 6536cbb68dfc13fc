# ABOUTME: Application configuration and settings
# ABOUTME: Loads typed per-component settings from environment variables using pydantic-settings

from functools import lru_cache
from typing import Dict, List, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthConfig(BaseModel):
    """Authentication settings."""
    enabled: bool = True
    method: Literal["apikey", "basic", "jwt"] = "jwt"
    api_keys: List[str] = Field(default_factory=list)
    api_key_role: str = "readonly"
    basic_users: Dict[str, str] = Field(default_factory=dict)
    user_roles: Dict[str, str] = Field(default_factory=dict)
    use_database_auth: bool = True
    jwt_secret: str = "change-this-secret-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration: int = 3600
    jwt_issuer: str = ""
    jwt_audience: str = ""


def _default_roles() -> Dict[str, Dict[str, List[str]]]:
    return {
        "admin": {"*": ["list", "read", "create", "update", "delete"]},
        "editor": {"*": ["list", "read", "create", "update"]},
        "readonly": {"*": ["list", "read"]},
    }


class RbacConfig(BaseModel):
    """Role -> table (or "*") -> allowed actions."""
    roles: Dict[str, Dict[str, List[str]]] = Field(default_factory=_default_roles)


class RateLimitConfig(BaseModel):
    """Sliding-window rate limiting settings."""
    enabled: bool = True
    max_requests: int = Field(default=100, ge=1)
    window_seconds: int = Field(default=60, ge=1)
    storage_dir: str = "./storage/rate_limits"


class CacheConfig(BaseModel):
    """Response cache settings."""
    enabled: bool = True
    driver: Literal["file", "memory", "redis"] = "file"
    ttl: int = Field(default=300, ge=1)
    per_table: Dict[str, int] = Field(default_factory=dict)
    exclude_tables: List[str] = Field(default_factory=lambda: [
        "sessions",
        "user_sessions",
        "api_logs",
        "request_logs",
        "audit_logs",
        "rate_limits",
        "queue_jobs",
        "failed_jobs",
    ])
    vary_by: List[Literal["api_key", "user_id"]] = Field(default_factory=lambda: ["api_key"])
    file_path: str = "./storage/cache"
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "tablegate:"


class LoggingConfig(BaseModel):
    """Audit log and console logging settings."""
    enabled: bool = True
    log_dir: str = "./storage/logs"
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_headers: bool = False
    log_body: bool = True
    max_body_length: int = 1000
    sensitive_keys: List[str] = Field(default_factory=lambda: [
        "password", "token", "secret", "api_key", "api-key", "apikey", "authorization", "cookie",
    ])
    rotation_size: int = 10 * 1024 * 1024  # bytes, 0 disables rotation
    max_files: int = 30  # 0 disables cleanup
    json_console: bool = False


class MonitoringThresholds(BaseModel):
    error_rate: float = 5.0  # percent
    response_time: float = 1000.0  # milliseconds
    auth_failures: int = 10  # per minute


class MonitoringConfig(BaseModel):
    """Metrics, alerting and health scoring settings."""
    enabled: bool = True
    metrics_dir: str = "./storage/metrics"
    alerts_dir: str = "./storage/alerts"
    retention_days: int = 30
    thresholds: MonitoringThresholds = Field(default_factory=MonitoringThresholds)


class CorsConfig(BaseModel):
    enabled: bool = True
    allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    allow_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    allow_headers: List[str] = Field(default_factory=lambda: ["Content-Type", "Authorization", "X-API-Key", "X-Requested-With"])
    allow_credentials: bool = False
    max_age: int = 86400


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__", extra="ignore")

    environment: str = "development"
    database_url: str = "sqlite:///./data/tablegate.db"
    expose_error_details: bool = True
    hidden_tables: List[str] = Field(default_factory=lambda: ["api_users"])

    auth: AuthConfig = Field(default_factory=AuthConfig)
    rbac: RbacConfig = Field(default_factory=RbacConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)


@lru_cache
def get_settings() -> Settings:
    """Returns cached settings instance."""
    return Settings()
