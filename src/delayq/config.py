import logging
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = '[%(process)d] %(message)s'


class QueueSettings(BaseSettings):
    backend: Literal["mongo", "local"] = "mongo"
    mongo_url: str = "mongodb://127.0.0.1:27017"
    database: str = "delayq"
    collection: str = "items"
    heartbeat_expiration_ms: int = Field(default=5 * 60 * 1000, gt=0)
    local_storage_filename: str = "queue"
    cas_max_retries: int = Field(default=50, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="DELAYQ_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


_settings: Optional[QueueSettings] = None


def get_settings() -> QueueSettings:
    global _settings
    if _settings is None:
        _settings = QueueSettings()
    return _settings


def reset_settings():
    """Forget the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None


def configure_logging(config: QueueSettings = None):
    """For applications and scripts; the library itself never calls this."""
    config = config or get_settings()
    logging.basicConfig(level=getattr(logging, config.log_level), format=LOG_FORMAT)
