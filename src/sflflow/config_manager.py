"""
╔═════════════════════════════════════════════════════════════════════════════╗
║                  CONFIGURATION MANAGER SCRIPT - ver. 01.00                  ║
║ Purpose: Load and validate engine settings for sflflow                      ║
║ File:    config_manager.py                                                  ║
╠═════════════════════════════════════════════════════════════════════════════╣
║ Section 1: Initial Settings and Imports                                     ║
║ Purpose:   Configure imports and the environment overrides table            ║
╚═════════════════════════════════════════════════════════════════════════════╝
"""
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from sflflow import config

# Environment variable -> settings field
ENV_OVERRIDES = {
    "REDIS_URL": "redis_url",
    "GOOGLE_API_KEY": "gemini_api_key",
    "GEMINI_API_KEY": "gemini_api_key",
    "SFLFLOW_LOG_LEVEL": "log_level",
    "SFLFLOW_LOG_FILE": "log_file",
    "SFLFLOW_CONCURRENCY": "worker_concurrency",
    "SFLFLOW_PROMPT_LIBRARY": "prompt_library_path",
}
#
"""
╔═════════════════════════════════════════════════════════════════════════════╗
║ Section 2: Pydantic Configuration Models                                    ║
╠═════════════════════════════════════════════════════════════════════════════╣
║ Class 2.1: EngineSettings                                                   ║
║ Purpose:   Define the data structure and validation for engine settings     ║
╚═════════════════════════════════════════════════════════════════════════════╝
"""
class EngineSettings(BaseModel):
    worker_concurrency: int = Field(default=config.WORKER_CONCURRENCY, ge=1)
    max_attempts: int = Field(default=config.MAX_JOB_ATTEMPTS, ge=1)
    backoff_base_delay: float = Field(default=config.BACKOFF_BASE_DELAY, ge=0)
    task_timeout: float = Field(default=config.TASK_TIMEOUT, gt=0)
    poll_interval: float = Field(default=config.QUEUE_POLL_INTERVAL, gt=0)
    keep_completed: int = Field(default=config.KEEP_COMPLETED_JOBS, ge=0)
    keep_failed: int = Field(default=config.KEEP_FAILED_JOBS, ge=0)
    lease_ttl: float = Field(default=config.LEASE_TTL, gt=0)
    heartbeat_interval: float = Field(default=config.LEASE_HEARTBEAT_INTERVAL, gt=0)
    queue_name: str = config.QUEUE_NAME
    redis_url: Optional[str] = None

    gemini_api_key: Optional[str] = None
    default_model: str = config.DEFAULT_MODEL
    simulate_delay: float = Field(default=config.SIMULATE_PROCESS_DELAY, ge=0)
    function_step_limit: int = Field(default=config.FUNCTION_STEP_LIMIT, ge=1)
    prompt_library_path: Optional[str] = None

    log_level: str = "INFO"
    log_file: Optional[str] = None
    host: str = config.SERVER_HOST
    port: int = config.SERVER_PORT

    @model_validator(mode="after")
    def check_lease_timing(self) -> "EngineSettings":
        if self.heartbeat_interval >= self.lease_ttl:
            raise ValueError("heartbeat_interval must be shorter than lease_ttl")
        return self
# End class
#
"""
╔═════════════════════════════════════════════════════════════════════════════╗
║ Section 3: Secrets & Environment                                            ║
╚═════════════════════════════════════════════════════════════════════════════╝
"""
def load_secrets() -> Dict[str, str]:
    """
    Loads a .env file (if present) and collects the settings overrides
    found in the environment.

    Returns:
        Mapping of settings field name to raw environment value.
    """
    if not load_dotenv(override=False):
        logger.debug("No .env file found, using existing environment variables")

    overrides: Dict[str, str] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            overrides[field_name] = value

    if not overrides.get("gemini_api_key"):
        logger.warning("GEMINI_API_KEY not found in environment variables or .env file")
    return overrides
# End function
#
"""
╔═════════════════════════════════════════════════════════════════════════════╗
║ Class 3.1: ConfigManager                                                    ║
║ Purpose:   Manages loading and validation of the engine settings            ║
╚═════════════════════════════════════════════════════════════════════════════╝
"""
class ConfigManager:
    """
    Loads engine settings from an optional YAML/JSON file and overlays the
    environment. Thread-safe; uses pydantic for validation.
    """
    def __init__(self, config_path: Optional[Union[str, Path]] = None, use_environment: bool = True):
        self.config_path = Path(config_path) if config_path else None
        self.use_environment = use_environment
        self._settings: Optional[EngineSettings] = None
        self._lock = threading.Lock()
        self.reload()
    # End function

    # =========================================================================
    # Function 3.1.1: reload
    # =========================================================================
    def reload(self) -> EngineSettings:
        """Reloads and re-validates the settings from file and environment."""
        with self._lock:
            data = self._read_file() if self.config_path else {}
            if self.use_environment:
                data.update(load_secrets())
            try:
                self._settings = EngineSettings(**data)
            except ValidationError as e:
                raise RuntimeError(f"Configuration validation error: {e}") from e
            logger.debug(f"Engine settings loaded (config file: {self.config_path or 'none'})")
            return self._settings
    # End function

    # =========================================================================
    # Function 3.1.2: get
    # =========================================================================
    def get(self) -> EngineSettings:
        """Returns the current, validated settings object."""
        with self._lock:
            if self._settings is None:
                raise RuntimeError("Configuration could not be loaded, and settings are unavailable.")
            return self._settings
    # End function

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"FATAL: Configuration file not found at {self.config_path}")
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                if self.config_path.suffix.lower() == ".json":
                    loaded = json.load(f)
                else:
                    loaded = yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise RuntimeError(f"Failed to parse configuration from {self.config_path}: {e}") from e
        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            raise RuntimeError(f"Configuration file {self.config_path} must contain a mapping")
        return loaded
#
#
## End of script
