"""
Configuration management for Cardsmith
Loads settings from YAML files with environment variable overrides
"""

import os
import yaml
from pathlib import Path
from typing import Dict, List, Literal, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from loguru import logger


ENV_PREFIX = "CARDSMITH_"


class RenderSettings(BaseModel):
    """Main render configuration"""

    ENVIRONMENT: str = "development"

    # Paths
    ASSET_ROOT: str = "assets"
    ARTWORK_FOLDER: str = "artwork"  # relative to ASSET_ROOT
    ARTWORK_EXTENSIONS: List[str] = ["png", "jpg", "jpeg"]
    PLACEHOLDER_IMAGE: Optional[str] = None
    FONT_DIRS: List[str] = Field(default_factory=list)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Batch execution
    WORKERS: int = Field(default=4, ge=1)

    # Scripts
    SCRIPT_TIMEOUT: float = Field(default=2.0, gt=0)
    SCRIPT_MAX_STEPS: int = Field(default=10_000, ge=1)

    # Policies
    MISSING_ASSET_POLICY: Literal["abort", "placeholder"] = "abort"
    KIND_MISMATCH_POLICY: Literal["reject", "coerce"] = "reject"
    STRICT_OVERFLOW: bool = True

    # Output
    OUTPUT_FORMAT: Literal["PNG", "TIFF", "WEBP"] = "PNG"
    NAME_PATTERN: str = "{id}"


def load_yaml_config(file_path: str) -> Dict:
    """Load configuration from YAML file"""
    path = Path(file_path)
    if not path.exists():
        logger.debug(f"Config file not found: {file_path}")
        return {}

    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config file {file_path}: {e}")
        return {}


def _env_overrides() -> Dict:
    """Collect CARDSMITH_* environment variables as setting overrides."""
    overrides = {}
    for name in RenderSettings.model_fields:
        value = os.getenv(ENV_PREFIX + name)
        if value is None:
            continue
        if name in ('ARTWORK_EXTENSIONS', 'FONT_DIRS'):
            overrides[name] = [part.strip() for part in value.split(',') if part.strip()]
        else:
            overrides[name] = value
    return overrides


def load_config(environment: str = "development", config_dir: str = "config") -> RenderSettings:
    """Load configuration with environment-specific overrides"""

    # Load .env into the process environment
    load_dotenv()

    base_config = load_yaml_config(f"{config_dir}/settings.yaml")
    env_config = load_yaml_config(f"{config_dir}/settings_{environment}.yaml")

    # env file overrides base
    config_dict = {**base_config, **env_config}
    config_dict.update(_env_overrides())
    config_dict.setdefault('ENVIRONMENT', environment)

    try:
        return RenderSettings(**config_dict)
    except ValueError as e:
        logger.error(f"Configuration validation error: {e}")
        return RenderSettings(ENVIRONMENT=environment)


_config_instance = None


def get_config() -> RenderSettings:
    """Get the process-wide configuration instance"""
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config(os.getenv(ENV_PREFIX + 'ENV', 'development'))
    return _config_instance
