import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .profiles import DEFAULT_QUALITIES

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(processName)s] %(name)s: %(message)s"


class QueueConfig(BaseModel):
    """Work queue settings."""

    backend: Literal["sqlite", "redis"] = Field(default="sqlite", description="Queue backend")
    name: str = Field(default="video_jobs", min_length=1, description="Shared queue name")
    dequeue_timeout_s: float = Field(
        default=5.0, gt=0.0, description="How long one dequeue blocks before returning empty"
    )
    backoff_s: float = Field(
        default=5.0, ge=0.0, description="Pause after a queue error before the next iteration"
    )
    poll_interval_s: float = Field(
        default=0.2, gt=0.0, description="SQLite queue polling interval while blocking"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    dead_letter_queue: Optional[str] = Field(
        default=None, description="Queue receiving undecodable messages (off when unset)"
    )


class StoreConfig(BaseModel):
    """Job/video record store settings."""

    db_path: str = Field(default="video_pipeline.db", description="SQLite database file")
    busy_timeout_s: float = Field(default=30.0, gt=0.0, description="SQLite lock wait")


class StorageConfig(BaseModel):
    """Object storage settings."""

    backend: Literal["local", "s3"] = Field(default="local", description="Object storage backend")
    root: str = Field(default="storage", description="Root directory for local storage")
    endpoint_url: Optional[str] = Field(default=None, description="S3/MinIO endpoint URL")
    access_key: Optional[str] = Field(default=None, description="S3/MinIO access key")
    secret_key: Optional[str] = Field(default=None, description="S3/MinIO secret key")
    use_ssl: bool = Field(default=False, description="Use HTTPS when endpoint has no scheme")
    region: str = Field(default="us-east-1", description="S3 region")
    videos_bucket: str = Field(default="videos", description="Bucket for originals and renditions")
    thumbnails_bucket: str = Field(default="thumbnails", description="Bucket for thumbnails")


class WorkerConfig(BaseModel):
    """Worker process settings."""

    worker_id: Optional[str] = Field(default=None, description="Identity recorded on claimed jobs")
    processes: int = Field(default=1, ge=1, description="Worker processes started by the pool")
    scratch_dir: Optional[str] = Field(
        default=None, description="Parent directory for per-job scratch space (system temp if unset)"
    )
    shutdown_grace_s: float = Field(
        default=2.0, ge=0.0, description="How long shutdown waits for in-flight work"
    )


class FfmpegConfig(BaseModel):
    """Transcoding tool settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (bundled imageio-ffmpeg binary if unset)"
    )
    loglevel: str = Field(default="error", description="ffmpeg -loglevel")
    global_timeout_s: int = Field(default=1800, gt=0, description="Hard limit per ffmpeg run")
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Kill ffmpeg if progress stalls this long"
    )
    thumbnail_width: int = Field(default=320, gt=0, description="Thumbnail width")
    thumbnail_height: int = Field(default=240, gt=0, description="Thumbnail height")
    save_artifacts_on_failure: bool = Field(
        default=False, description="Keep command/stderr of failed runs"
    )
    artifacts_dir: str = Field(default="ffmpeg_failures", description="Where failure artifacts go")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root log level")
    format: str = Field(default=LOG_FORMAT, description="logging format string")


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    ffmpeg: FfmpegConfig = Field(default_factory=FfmpegConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    qualities: List[str] = Field(
        default_factory=lambda: list(DEFAULT_QUALITIES),
        min_length=1,
        description="Quality tiers fanned out per upload",
    )

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db_path") is not None:
            config_dict["store"]["db_path"] = cli_args["db_path"]
        if cli_args.get("queue_backend") is not None:
            config_dict["queue"]["backend"] = cli_args["queue_backend"]
        if cli_args.get("worker_id") is not None:
            config_dict["worker"]["worker_id"] = cli_args["worker_id"]
        if cli_args.get("processes") is not None:
            config_dict["worker"]["processes"] = cli_args["processes"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)


# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "WORKER_ID": ("worker", "worker_id"),
    "REDIS_URI": ("queue", "redis_url"),
    "MINIO_ENDPOINT": ("storage", "endpoint_url"),
    "MINIO_ACCESS_KEY": ("storage", "access_key"),
    "MINIO_SECRET_KEY": ("storage", "secret_key"),
    "MINIO_USE_SSL": ("storage", "use_ssl"),
    "VIDEO_PIPELINE_DB": ("store", "db_path"),
    "VIDEO_PIPELINE_LOG_LEVEL": ("logging", "level"),
}


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Nested override dict built from the environment.

    MINIO_ENDPOINT may be a bare ``host:port``; a scheme is added from
    MINIO_USE_SSL and the storage backend switches to s3.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        if key == "use_ssl":
            value = value.strip().lower() in ("1", "true", "yes", "on")
        overrides.setdefault(section, {})[key] = value

    storage = overrides.get("storage", {})
    endpoint = storage.get("endpoint_url")
    if endpoint:
        if "://" not in endpoint:
            scheme = "https" if storage.get("use_ssl") else "http"
            storage["endpoint_url"] = f"{scheme}://{endpoint}"
        storage["backend"] = "s3"

    return overrides


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PipelineConfig model.
    """
    cli_args = cli_args or {}

    # 1. Load default YAML (or an explicit --config file)
    config_data = load_yaml(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Merge environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate, then apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(level: str = "INFO", fmt: str = LOG_FORMAT) -> None:
    """Configure root logging once for CLI entry points."""
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=fmt, force=True)
