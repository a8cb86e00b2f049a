# config/settings.py
"""
Typed engine settings.

Resolution order: packaged defaults, then the YAML file named by the
``path`` argument or ``ICM_ENGINE_CONFIG`` (``.env`` is read first), then
``ICM_ENGINE_LOG_LEVEL``.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ConfigurationError
from ..utils.logging_utils import setup_logging
from .config_manager import DEFAULT_CONFIG_PATH, ConfigManager

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ICM_ENGINE_CONFIG"
LOG_LEVEL_ENV_VAR = "ICM_ENGINE_LOG_LEVEL"


class EngineSection(BaseModel):
    max_workers: int = Field(default=8, ge=1)
    row_page_size: int = Field(default=500, ge=1)


class ReconciliationSection(BaseModel):
    total_epsilon: float = Field(default=0.01, gt=0)
    component_epsilon: float = Field(default=0.01, gt=0)
    tolerance_pct: float = Field(default=5.0, ge=0)
    amber_pct: float = Field(default=15.0, ge=0)


class SummarySection(BaseModel):
    outlier_sigma: float = Field(default=3.0, gt=0)


class CacheSection(BaseModel):
    enabled: bool = False
    ttl_seconds: float = Field(default=300, gt=0)
    max_entries: int = Field(default=1024, ge=1)


class LoggingSection(BaseModel):
    level: str = "INFO"
    json_format: bool = Field(default=False, alias="json")
    file: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class EngineSettings(BaseModel):
    engine: EngineSection = Field(default_factory=EngineSection)
    reconciliation: ReconciliationSection = Field(default_factory=ReconciliationSection)
    summary: SummarySection = Field(default_factory=SummarySection)
    cache: CacheSection = Field(default_factory=CacheSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)


def load_settings(path: Optional[str] = None) -> EngineSettings:
    load_dotenv()
    manager = ConfigManager(DEFAULT_CONFIG_PATH)

    override_path = path or os.getenv(CONFIG_ENV_VAR)
    if override_path:
        manager.merge(ConfigManager(override_path).get_all())

    level = os.getenv(LOG_LEVEL_ENV_VAR)
    if level:
        manager.set("logging", "level", level.upper())

    try:
        return EngineSettings.model_validate(manager.get_all())
    except ValidationError as e:
        raise ConfigurationError(f"Invalid engine configuration: {e}", rule=override_path) from e


def configure_logging(settings: EngineSettings) -> logging.Logger:
    """Install the root handler described by the ``logging`` section."""
    section = settings.logging
    return setup_logging(section.level, log_file=section.file, json_format=section.json_format)
