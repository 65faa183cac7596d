"""Configuration loaded from a JSON file and validated with pydantic."""

import json
import logging
import os
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from common.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_INDEX_FILE,
    DEFAULT_LOCAL_BLOB_DIR,
    DEFAULT_MAX_CHUNK_SIZE_BYTES,
    DEFAULT_TELEGRAM_API_URL,
    UNLIMITED_RETRIES,
)
from common.exceptions import ConfigError
from engine.integrity import BrokenFilePolicy

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "FILECOLLAGE_CONFIG"


class Config(BaseModel):
    """Engine settings. Unknown keys in the file are rejected."""

    model_config = ConfigDict(extra="forbid")

    # Persistence
    index_file: Path = Field(default=Path(DEFAULT_INDEX_FILE), description="Index snapshot path")
    save_interval_seconds: float = Field(default=60.0, gt=0, description="Time between saves")
    force_exit_signal_count: int = Field(default=3, ge=1, description="Signals that force an exit")
    on_broken_files: BrokenFilePolicy = Field(
        default=BrokenFilePolicy.EXIT,
        description="Startup action for files with chunks never uploaded",
    )

    # Cache
    cache_soft_limit_chunks: int = Field(default=50, ge=1)
    cache_hard_limit_chunks: int = Field(default=200, ge=1)
    prefetch_chunk_count: int = Field(default=3, ge=0)
    simultaneous_cache_evictions: int = Field(default=5, ge=1)

    # Remote
    backend: Literal["telegram", "local"] = "local"
    max_chunk_size: int = Field(
        default=DEFAULT_MAX_CHUNK_SIZE_BYTES,
        gt=0,
        description="Chunk size for the local backend; Telegram's is fixed",
    )
    download_workers: int = Field(default=3, ge=1)
    upload_workers: int = Field(default=2, ge=1)
    download_retries: int = Field(default=5, description="Attempts per download, -1 for unlimited")
    upload_retries: int = Field(default=UNLIMITED_RETRIES, description="Attempts per upload, -1 for unlimited")
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    max_retry_backoff_seconds: float = Field(default=60.0, ge=0)
    request_timeout_seconds: float = Field(default=120.0, gt=0)

    telegram_token: str = ""
    telegram_chat_id: Union[int, str] = 0
    telegram_api_url: str = DEFAULT_TELEGRAM_API_URL
    local_blob_dir: Path = Path(DEFAULT_LOCAL_BLOB_DIR)

    @field_validator("download_retries", "upload_retries")
    @classmethod
    def _check_retries(cls, value: int) -> int:
        if value != UNLIMITED_RETRIES and value < 1:
            raise ValueError(f"must be >= 1 or {UNLIMITED_RETRIES} for unlimited")
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Config":
        if self.cache_hard_limit_chunks < self.cache_soft_limit_chunks:
            raise ValueError(
                "cache_hard_limit_chunks must be >= cache_soft_limit_chunks"
            )
        if self.backend == "telegram" and not self.telegram_token:
            raise ValueError("telegram_token is required for the telegram backend")
        return self


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a JSON file.

    A missing file is created with default values.

    Args:
        path: Config file (default: $FILECOLLAGE_CONFIG or config.json)

    Returns:
        Validated Config

    Raises:
        ConfigError: If the file is unreadable, not JSON, or fails validation
    """
    path = Path(path) if path is not None else default_config_path()

    if not path.exists():
        config = Config()
        logger.warning(f"Config file {path} not found, writing defaults")
        save_config(config, path)
        return config

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def save_config(config: Config, path: Path) -> None:
    """
    Write configuration as JSON.

    Raises:
        ConfigError: If the file cannot be written
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(config.model_dump_json(indent=2))
    except OSError as e:
        raise ConfigError(f"Failed to write config file {path}: {e}") from e
