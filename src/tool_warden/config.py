"""Environment-driven settings."""

from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from tool_warden import constants


class WardenSettings(BaseSettings):
    """Runtime knobs; every field can be set through a ``WARDEN_*`` variable."""

    model_config = SettingsConfigDict(env_prefix="WARDEN_", env_file=".env", extra="ignore")

    max_concurrent_executions: int = constants.MAX_CONCURRENT_EXECUTIONS
    default_step_timeout: float = constants.DEFAULT_STEP_TIMEOUT
    sweep_interval: float = constants.SWEEP_INTERVAL
    retention_hours: int = constants.RETENTION_HOURS
    max_escalation_levels: int = constants.MAX_ESCALATION_LEVELS
    react_max_steps: int = constants.REACT_MAX_STEPS
    observation_limit: int = constants.OBSERVATION_LIMIT
    enable_notifications: bool = True
    enable_audit_log: bool = True
    log_level: str = "INFO"

    # None keeps all engine state in memory.
    database_url: Optional[str] = None

    completion_base_url: str = "https://api.openai.com/v1"
    completion_api_key: Optional[str] = None
    completion_model: str = "gpt-4.1-mini"
    tool_service_url: Optional[str] = None


def load_settings() -> WardenSettings:
    return WardenSettings()
