"""Configuration management for evidoc.

Supports:
- Local config file (~/.evidoc/config.json)
- Environment variables (EVIDOC_*)
- CLI overrides

Secrets (API keys, AWS credentials) can be provided via:
1. Environment variables (recommended for servers and CI)
2. Config file with underscore prefix (e.g., "_api_key" - not written back)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".evidoc"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"


@dataclass
class AIConfig:
    """Chat model used for classification, parties and summaries."""

    provider: str = "none"  # none, anthropic, openai
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    temperature: float = 0.1


@dataclass
class OCRConfig:
    """OCR configuration."""

    backend: str = "tesseract"  # tesseract, textract

    # Tesseract options
    tesseract_cmd: str | None = None
    tesseract_lang: str = "eng"

    # AWS Textract
    aws_region: str = "us-east-1"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    # Confidence on the 0-100 OCR scale
    min_confidence: float = 0.0
    reject_low_confidence: bool = False


@dataclass
class PipelineConfig:
    # Extraction confidence below which OCR runs, per MIME type
    ocr_confidence_thresholds: dict[str, float] = field(
        default_factory=lambda: {"application/pdf": 0.5}
    )
    max_text_length: int = 50000
    stage_timeout_seconds: float = 60.0
    max_retries: int = 0
    use_filename_hints: bool = True
    quick_summary_length: int = 200


@dataclass
class QueueConfig:
    workers: int = 5
    max_size: int = 1000
    cleanup_days: int = 7


@dataclass
class CacheConfig:
    ttl_seconds: int = 300


@dataclass
class StorageConfig:
    root: Path = field(default_factory=lambda: DEFAULT_DATA_DIR / "files")
    max_file_size_mb: int = 100


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8700


@dataclass
class EvidocConfig:
    """Main configuration container."""

    ai: AIConfig = field(default_factory=AIConfig)
    ocr: OCRConfig = field(default_factory=OCRConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # None means SQLite under data_dir
    database_url: str | None = None
    log_level: str = "INFO"
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.data_dir / 'evidoc.db'}"


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "EVIDOC_",
) -> EvidocConfig:
    """Load configuration from file and environment.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Defaults
    """
    config = EvidocConfig()

    # Load from file
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            config = _merge_config(config, data)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load config from %s: %s", path, e)

    # Override with environment variables
    config = _apply_env_overrides(config, env_prefix)
    validate_config(config)

    return config


def _merge_config(config: EvidocConfig, data: dict[str, Any]) -> EvidocConfig:
    """Merge loaded data into config object."""

    if "ai" in data:
        ai = data["ai"]
        config.ai.provider = ai.get("provider", config.ai.provider)
        config.ai.model = ai.get("model", config.ai.model)
        config.ai.base_url = ai.get("base_url", config.ai.base_url)
        config.ai.api_key = ai.get("api_key") or ai.get("_api_key") or config.ai.api_key
        config.ai.temperature = ai.get("temperature", config.ai.temperature)

    if "ocr" in data:
        ocr = data["ocr"]
        config.ocr.backend = ocr.get("backend", config.ocr.backend)
        config.ocr.tesseract_cmd = ocr.get("tesseract_cmd", config.ocr.tesseract_cmd)
        config.ocr.tesseract_lang = ocr.get("tesseract_lang", config.ocr.tesseract_lang)
        config.ocr.aws_region = ocr.get("region", config.ocr.aws_region)
        config.ocr.aws_access_key_id = ocr.get("access_key_id") or ocr.get("_access_key_id") or config.ocr.aws_access_key_id
        config.ocr.aws_secret_access_key = ocr.get("secret_access_key") or ocr.get("_secret_access_key") or config.ocr.aws_secret_access_key
        config.ocr.min_confidence = ocr.get("min_confidence", config.ocr.min_confidence)
        config.ocr.reject_low_confidence = ocr.get("reject_low_confidence", config.ocr.reject_low_confidence)

    if "pipeline" in data:
        p = data["pipeline"]
        if "ocr_confidence_thresholds" in p:
            config.pipeline.ocr_confidence_thresholds = dict(p["ocr_confidence_thresholds"])
        config.pipeline.max_text_length = p.get("max_text_length", config.pipeline.max_text_length)
        config.pipeline.stage_timeout_seconds = p.get("stage_timeout_seconds", config.pipeline.stage_timeout_seconds)
        config.pipeline.max_retries = p.get("max_retries", config.pipeline.max_retries)
        config.pipeline.use_filename_hints = p.get("use_filename_hints", config.pipeline.use_filename_hints)
        config.pipeline.quick_summary_length = p.get("quick_summary_length", config.pipeline.quick_summary_length)

    if "queue" in data:
        q = data["queue"]
        config.queue.workers = q.get("workers", config.queue.workers)
        config.queue.max_size = q.get("max_size", config.queue.max_size)
        config.queue.cleanup_days = q.get("cleanup_days", config.queue.cleanup_days)

    if "cache" in data:
        config.cache.ttl_seconds = data["cache"].get("ttl_seconds", config.cache.ttl_seconds)

    if "storage" in data:
        s = data["storage"]
        if s.get("root"):
            config.storage.root = Path(s["root"]).expanduser()
        config.storage.max_file_size_mb = s.get("max_file_size_mb", config.storage.max_file_size_mb)

    if "server" in data:
        srv = data["server"]
        config.server.host = srv.get("host", config.server.host)
        config.server.port = srv.get("port", config.server.port)

    config.database_url = data.get("database_url", config.database_url)
    config.log_level = data.get("log_level", config.log_level)
    if data.get("data_dir"):
        config.data_dir = Path(data["data_dir"]).expanduser()

    return config


def _apply_env_overrides(config: EvidocConfig, prefix: str) -> EvidocConfig:
    """Apply environment variable overrides."""

    # AI
    if v := os.environ.get(f"{prefix}AI_PROVIDER"):
        config.ai.provider = v
    if v := os.environ.get(f"{prefix}AI_MODEL"):
        config.ai.model = v
    if v := os.environ.get(f"{prefix}AI_API_KEY"):
        config.ai.api_key = v
    if v := os.environ.get(f"{prefix}AI_BASE_URL"):
        config.ai.base_url = v

    # Specific providers
    if v := os.environ.get(f"{prefix}ANTHROPIC_API_KEY"):
        config.ai.provider = "anthropic"
        config.ai.api_key = v
    if v := os.environ.get(f"{prefix}OPENAI_API_KEY"):
        config.ai.provider = "openai"
        config.ai.api_key = v

    # OCR
    if v := os.environ.get(f"{prefix}OCR_BACKEND"):
        config.ocr.backend = v
    if v := os.environ.get(f"{prefix}TESSERACT_CMD"):
        config.ocr.tesseract_cmd = v
    if v := os.environ.get(f"{prefix}AWS_REGION"):
        config.ocr.aws_region = v
    if v := os.environ.get(f"{prefix}AWS_ACCESS_KEY_ID"):
        config.ocr.aws_access_key_id = v
    if v := os.environ.get(f"{prefix}AWS_SECRET_ACCESS_KEY"):
        config.ocr.aws_secret_access_key = v

    # Pipeline and queue
    if v := os.environ.get(f"{prefix}MAX_RETRIES"):
        config.pipeline.max_retries = _int_env(f"{prefix}MAX_RETRIES", v)
    if v := os.environ.get(f"{prefix}STAGE_TIMEOUT"):
        config.pipeline.stage_timeout_seconds = _float_env(f"{prefix}STAGE_TIMEOUT", v)
    if v := os.environ.get(f"{prefix}WORKERS"):
        config.queue.workers = _int_env(f"{prefix}WORKERS", v)

    # Storage and database
    if v := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(v).expanduser()
    if v := os.environ.get(f"{prefix}STORAGE_ROOT"):
        config.storage.root = Path(v).expanduser()
    if v := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = v
    if v := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.log_level = v

    return config


def _int_env(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", original_error=e) from e


def _float_env(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}", original_error=e) from e


def validate_config(config: EvidocConfig) -> None:
    if config.ai.provider not in ("none", "anthropic", "openai"):
        raise ConfigurationError(f"Unknown AI provider: {config.ai.provider}")
    if config.ocr.backend not in ("tesseract", "textract", "aws"):
        raise ConfigurationError(f"Unknown OCR backend: {config.ocr.backend}")
    if config.queue.workers < 1:
        raise ConfigurationError("queue.workers must be at least 1")
    if config.pipeline.max_retries < 0:
        raise ConfigurationError("pipeline.max_retries cannot be negative")


def save_config(config: EvidocConfig, config_path: Path | str | None = None) -> None:
    """Save configuration to file (excludes secrets)."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "ai": {
            "provider": config.ai.provider,
            "model": config.ai.model,
            "base_url": config.ai.base_url,
            "temperature": config.ai.temperature,
        },
        "ocr": {
            "backend": config.ocr.backend,
            "tesseract_cmd": config.ocr.tesseract_cmd,
            "tesseract_lang": config.ocr.tesseract_lang,
            "region": config.ocr.aws_region,
            "min_confidence": config.ocr.min_confidence,
            "reject_low_confidence": config.ocr.reject_low_confidence,
        },
        "pipeline": {
            "ocr_confidence_thresholds": config.pipeline.ocr_confidence_thresholds,
            "max_text_length": config.pipeline.max_text_length,
            "stage_timeout_seconds": config.pipeline.stage_timeout_seconds,
            "max_retries": config.pipeline.max_retries,
            "use_filename_hints": config.pipeline.use_filename_hints,
            "quick_summary_length": config.pipeline.quick_summary_length,
        },
        "queue": {
            "workers": config.queue.workers,
            "max_size": config.queue.max_size,
            "cleanup_days": config.queue.cleanup_days,
        },
        "cache": {
            "ttl_seconds": config.cache.ttl_seconds,
        },
        "storage": {
            "root": str(config.storage.root),
            "max_file_size_mb": config.storage.max_file_size_mb,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
        "database_url": config.database_url,
        "log_level": config.log_level,
        "data_dir": str(config.data_dir),
    }

    with open(path, "w") as f:
        json.dump(data, f, indent=2)
