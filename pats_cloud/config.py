"""Configuration primitives for the Pats Cloud upload server."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional


@dataclass
class StorageConfig:
    upload_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "uploads"))
    scratch_dir_name: str = ".chunks"
    max_file_size: int = 1024 * 1024 * 1024
    max_files_per_request: int = 20
    read_buffer_size: int = 1024 * 1024
    session_ttl_seconds: int = 24 * 3600
    sweep_interval_seconds: int = 3600


@dataclass
class AuthConfig:
    app_password: Optional[str] = None
    session_secret: str = field(default_factory=lambda: secrets.token_hex(32))
    cookie_name: str = "patscloud.sid"
    session_max_age_seconds: int = 7 * 24 * 3600
    secure_cookie: bool = False


@dataclass
class MirrorConfig:
    provider: str = "none"
    key_prefix: str = ""
    synchronous: bool = False
    timeout_seconds: float = 30.0
    s3_region: str = "us-east-1"
    s3_bucket: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    drive_upload_url: str = "https://www.googleapis.com/upload/drive/v3/files?uploadType=multipart"
    drive_access_token: Optional[str] = None
    drive_folder_id: Optional[str] = None


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    max_metrics: int = 1000


@dataclass
class CloudConfig:
    storage: StorageConfig
    auth: AuthConfig
    mirror: MirrorConfig
    message_bus: MessageBusConfig
    observability: ObservabilityConfig
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @staticmethod
    def default() -> "CloudConfig":
        return CloudConfig(
            storage=StorageConfig(),
            auth=AuthConfig(),
            mirror=MirrorConfig(),
            message_bus=MessageBusConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def for_directory(upload_dir: str | Path) -> "CloudConfig":
        cfg = CloudConfig.default()
        cfg.storage.upload_dir = str(upload_dir)
        return cfg

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "CloudConfig":
        env = os.environ if environ is None else environ
        cfg = CloudConfig.default()

        storage = cfg.storage
        storage.upload_dir = env.get("PATS_CLOUD_UPLOAD_DIR", storage.upload_dir)
        storage.max_file_size = _env_int(env, "MAX_FILE_SIZE", storage.max_file_size)
        storage.session_ttl_seconds = _env_int(env, "UPLOAD_SESSION_TTL_SECONDS", storage.session_ttl_seconds)
        storage.sweep_interval_seconds = _env_int(env, "UPLOAD_SWEEP_INTERVAL_SECONDS", storage.sweep_interval_seconds)

        auth = cfg.auth
        auth.app_password = env.get("APP_PASSWORD") or None
        if env.get("SESSION_SECRET"):
            auth.session_secret = env["SESSION_SECRET"]
        auth.secure_cookie = env.get("SESSION_COOKIE_SECURE", "false").lower() in {"1", "true", "yes"}

        mirror = cfg.mirror
        mirror.provider = (env.get("CLOUD_PROVIDER") or "none").strip().lower()
        mirror.key_prefix = env.get("CLOUD_PREFIX", "")
        mirror.s3_region = env.get("S3_REGION", mirror.s3_region)
        mirror.s3_bucket = env.get("S3_BUCKET") or None
        mirror.s3_access_key_id = env.get("S3_ACCESS_KEY_ID") or None
        mirror.s3_secret_access_key = env.get("S3_SECRET_ACCESS_KEY") or None
        mirror.s3_endpoint_url = env.get("S3_ENDPOINT_URL") or None
        mirror.drive_upload_url = env.get("DRIVE_UPLOAD_URL", mirror.drive_upload_url)
        mirror.drive_access_token = env.get("DRIVE_ACCESS_TOKEN") or None
        mirror.drive_folder_id = env.get("DRIVE_FOLDER_ID") or None

        cfg.observability.log_level = env.get("LOG_LEVEL", cfg.observability.log_level).upper()
        origins = [origin.strip() for origin in env.get("PATS_CLOUD_CORS_ORIGINS", "*").split(",") if origin.strip()]
        cfg.cors_origins = origins or ["*"]
        return cfg


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
