from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHOPCACHE_", env_file=".env", extra="ignore", populate_by_name=True
    )

    app_name: str = "shopcache"
    env: str = "dev"

    # Sender tag on broadcast events; unset gives every bus its own random id
    instance_id: str | None = None

    # KeyValueCache
    default_ttl: float = Field(default=30 * 60, validation_alias="CACHE_DEFAULT_TTL")
    schema_version: str = Field(default="1.0.0", validation_alias="CACHE_SCHEMA_VERSION")
    default_backend: str = Field(default="durable", validation_alias="CACHE_DEFAULT_BACKEND")
    sweep_on_startup: bool = Field(default=True, validation_alias="CACHE_SWEEP_ON_STARTUP")

    # Durable storage: "file" (per-origin directory) or "redis"
    durable_backend: str = Field(default="file", validation_alias="CACHE_DURABLE_BACKEND")
    storage_root: str = Field(
        default="/var/lib/shopcache/storage", validation_alias="CACHE_STORAGE_ROOT"
    )
    storage_origin: str = Field(default="localhost", validation_alias="CACHE_STORAGE_ORIGIN")
    storage_quota_bytes: int = Field(
        default=5 * 1024 * 1024, validation_alias="CACHE_STORAGE_QUOTA"
    )  # 5MB, same order as browser origin storage
    session_quota_bytes: int = Field(
        default=5 * 1024 * 1024, validation_alias="CACHE_SESSION_QUOTA"
    )
    session_id: str = Field(
        default_factory=lambda: uuid4().hex, validation_alias="CACHE_SESSION_ID"
    )

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    redis_namespace: str = Field(default="shopcache", validation_alias="REDIS_NAMESPACE")

    # Invalidation transports: "memory" or "redis"
    transport_backend: str = Field(default="redis", validation_alias="TRANSPORT_BACKEND")
    broadcast_topic: str = Field(
        default="shopcache:cache_invalidation", validation_alias="BROADCAST_TOPIC"
    )
    change_stream_prefix: str = Field(
        default="shopcache:changes", validation_alias="CHANGE_STREAM_PREFIX"
    )
    change_stream_block_ms: int = Field(default=1000, validation_alias="CHANGE_STREAM_BLOCK_MS")

    # ImageCache
    image_max_bytes: int = Field(
        default=10 * 1024 * 1024, validation_alias="IMAGE_MAX_BYTES"
    )  # 10MB per image
    image_medium_chunk_size: int = Field(default=3, validation_alias="IMAGE_MEDIUM_CHUNK_SIZE")
    image_low_priority_delay: float = Field(
        default=0.1, validation_alias="IMAGE_LOW_PRIORITY_DELAY"
    )
    image_fetch_timeout: float = Field(default=30.0, validation_alias="IMAGE_FETCH_TIMEOUT")
    image_default_encoding: str = Field(default="binary", validation_alias="IMAGE_ENCODING")

    # Observability
    enable_metrics: bool = Field(default=True, validation_alias="ENABLE_METRICS")
    log_level: str = "INFO"
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")


settings = Settings()
