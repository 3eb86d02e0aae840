from __future__ import annotations

import os
from typing import Any, Dict, Literal, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


SYNCHRONOUS_MODE = "synchronous"
STANDALONE_POLL_MODE = "standalone-poll"


class RenderingConfig(BaseModel):
    # Admission ceiling for in-flight renders (one Cloud Run style slot by default)
    max_concurrent_renders: int = 1
    render_timeout_seconds: int = 600
    # Captured stdout/stderr is truncated to this many bytes per stream
    max_output_bytes: int = 10 * 1024 * 1024
    command: str = "yarn movie"
    working_dir: str = "/app/mulmocast-cli"
    caption_flag: str = "-c"
    credit_image_url: str = "https://showgeki2-git-main-tobe-tokyo.vercel.app/TSS_credit.png"
    fallback_image_url: str = "https://placehold.co/1920x1080/ffffff/ffffff/png"
    moderation_max_retries: int = 5


class PublishConfig(BaseModel):
    # Independent from the render ceiling: callers over this limit wait, they are not rejected
    max_concurrent_uploads: int = 1
    wait_interval_seconds: float = 1.0
    max_retries: int = 3
    base_backoff_seconds: float = 2.0
    request_timeout_seconds: float = 60.0


class WorkerConfig(BaseModel):
    mode: Literal["synchronous", "standalone-poll"] = SYNCHRONOUS_MODE
    poll_interval_seconds: float = 5.0

    @property
    def standalone(self) -> bool:
        return self.mode == STANDALONE_POLL_MODE


class MinioConfig(BaseModel):
    endpoint: str = "minio:9000"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    bucket_videos: str = "videos"
    secure: bool = False
    # Host used when building public URLs (output bucket is public-read)
    public_endpoint: str = "localhost:9000"


class RedisConfig(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    # Allow setting a full URL directly (takes precedence over individual fields)
    full_url: str = ""

    @property
    def url(self) -> str:
        if self.full_url:
            return self.full_url
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class StorageConfig(BaseModel):
    temp_storage_path: str = "./temp_storage"
    # "redis" in production; "memory" keeps job records in-process (local dev only)
    record_store: str = "redis"


class AlertsConfig(BaseModel):
    slack_webhook_url: str = ""
    timeout_seconds: float = 10.0


class AppConfig(BaseModel):
    app_name: str = "Scene Render Worker"
    environment: str = "production"
    log_level: str = "info"
    # "console" or "json"
    log_format: str = "console"
    host: str = "0.0.0.0"
    port: int = 8080


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
        env_nested_delimiter="__",
    )

    rendering: RenderingConfig = Field(default_factory=RenderingConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    minio: MinioConfig = Field(default_factory=MinioConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[Any, ...]:
        """
        Support BOTH:
        - New nested env vars (e.g., RENDERING__RENDER_TIMEOUT_SECONDS) via env_nested_delimiter
        - Existing flat env vars (e.g., WATCH_MODE, SLACK_WEBHOOK_URL) via a legacy mapping source

        Priority: init > env > dotenv > legacy > secrets
        """

        def legacy_flat_env_source() -> Dict[str, Any]:
            env: Dict[str, str] = {}
            try:
                from dotenv import dotenv_values  # local import to avoid hard dependency at import-time

                env_file = cls.model_config.get("env_file", ".env")
                if env_file:
                    file_vals = {k: (v or "") for k, v in dotenv_values(env_file).items()}
                    env.update({k: v for k, v in file_vals.items() if k})
            except Exception:
                # If dotenv parsing fails, fall back to environment only.
                pass

            # Environment variables override .env values
            env.update({k: v for k, v in os.environ.items()})

            def get(var: str, default: str = "") -> str:
                v = env.get(var)
                return default if v is None else v

            def get_bool(var: str) -> Any:
                """
                Parse a boolean-like env var value.
                Returns None if missing or unparseable (caller should ignore).
                """
                if env.get(var) is None:
                    return None
                raw = get(var).strip().lower()
                if raw in ("true", "1", "yes", "y", "on"):
                    return True
                if raw in ("false", "0", "no", "n", "off"):
                    return False
                return None

            def get_int(var: str) -> Any:
                if env.get(var) is None:
                    return None
                try:
                    return int(get(var).strip())
                except Exception:
                    return None

            def get_float(var: str) -> Any:
                if env.get(var) is None:
                    return None
                try:
                    return float(get(var).strip())
                except Exception:
                    return None

            out: Dict[str, Any] = {}

            def set_path(path: Tuple[str, ...], value: Any) -> None:
                d: Dict[str, Any] = out
                for key in path[:-1]:
                    d = d.setdefault(key, {})
                d[path[-1]] = value

            int_vars = {
                "MAX_CONCURRENT_REQUESTS": ("rendering", "max_concurrent_renders"),
                "RENDER_TIMEOUT_SECONDS": ("rendering", "render_timeout_seconds"),
                "CONCURRENT_UPLOAD_LIMIT": ("publish", "max_concurrent_uploads"),
                "UPLOAD_MAX_RETRIES": ("publish", "max_retries"),
                "PORT": ("app", "port"),
            }
            for var, path in int_vars.items():
                v = get_int(var)
                if v is not None:
                    set_path(path, v)

            float_vars = {
                "UPLOAD_BASE_RETRY_DELAY_SECONDS": ("publish", "base_backoff_seconds"),
                "UPLOAD_TIMEOUT_SECONDS": ("publish", "request_timeout_seconds"),
                "POLLING_INTERVAL_SECONDS": ("worker", "poll_interval_seconds"),
            }
            for var, path in float_vars.items():
                v = get_float(var)
                if v is not None:
                    set_path(path, v)

            # Worker mode (WATCH_MODE=true selects the standalone poller)
            watch_mode = get_bool("WATCH_MODE")
            if watch_mode is not None:
                set_path(("worker", "mode"), STANDALONE_POLL_MODE if watch_mode else SYNCHRONOUS_MODE)

            # Renderer (legacy vars)
            if env.get("RENDERER_COMMAND") is not None:
                set_path(("rendering", "command"), get("RENDERER_COMMAND"))
            if env.get("RENDERER_WORKING_DIR") is not None:
                set_path(("rendering", "working_dir"), get("RENDERER_WORKING_DIR"))

            # MinIO (legacy vars)
            if env.get("MINIO_ENDPOINT") is not None:
                set_path(("minio", "endpoint"), get("MINIO_ENDPOINT"))
            if env.get("MINIO_ACCESS_KEY") is not None:
                set_path(("minio", "access_key"), get("MINIO_ACCESS_KEY"))
            if env.get("MINIO_SECRET_KEY") is not None:
                set_path(("minio", "secret_key"), get("MINIO_SECRET_KEY"))
            if env.get("MINIO_BUCKET_VIDEOS") is not None:
                set_path(("minio", "bucket_videos"), get("MINIO_BUCKET_VIDEOS"))
            if env.get("MINIO_PUBLIC_ENDPOINT") is not None:
                set_path(("minio", "public_endpoint"), get("MINIO_PUBLIC_ENDPOINT"))
            secure = get_bool("MINIO_SECURE")
            if secure is not None:
                set_path(("minio", "secure"), secure)

            # Redis (legacy vars)
            # Support full REDIS_URL (takes precedence)
            if env.get("REDIS_URL") is not None:
                set_path(("redis", "full_url"), get("REDIS_URL"))
            if env.get("REDIS_HOST") is not None:
                set_path(("redis", "host"), get("REDIS_HOST"))
            if env.get("REDIS_PORT") is not None:
                set_path(("redis", "port"), get("REDIS_PORT"))
            if env.get("REDIS_PASSWORD") is not None:
                set_path(("redis", "password"), get("REDIS_PASSWORD"))

            # Storage / alerts / app (legacy vars)
            if env.get("TEMP_STORAGE_PATH") is not None:
                set_path(("storage", "temp_storage_path"), get("TEMP_STORAGE_PATH"))
            if env.get("SLACK_WEBHOOK_URL") is not None:
                set_path(("alerts", "slack_webhook_url"), get("SLACK_WEBHOOK_URL"))
            if env.get("NODE_ENV") is not None:
                set_path(("app", "environment"), get("NODE_ENV"))
            if env.get("LOG_LEVEL") is not None:
                set_path(("app", "log_level"), get("LOG_LEVEL"))

            return out

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            legacy_flat_env_source,
            file_secret_settings,
        )

    @property
    def redis_url(self) -> str:
        return self.redis.url

    @property
    def temp_dir(self) -> str:
        return self.storage.temp_storage_path


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
