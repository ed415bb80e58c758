"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowSettings(BaseSettings):
    """Workflow engine configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db, postgresql://...

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Definition defaults
    display_id_prefix: str = "WF"
    default_sla_hours: float = 24.0

    # Instance policy
    allow_concurrent_instances: bool = True  # several running instances per (workflow, resource)
    cancel_instances_on_disable: bool = False

    # Concurrency
    max_conflict_retries: int = 3

    # SLA sweep
    sla_sweep_batch_size: int = 100

    class Config:
        env_prefix = "GRC_WORKFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
settings = WorkflowSettings()


def get_settings() -> WorkflowSettings:
    """Get global configuration instance"""
    return settings


def reload_settings() -> WorkflowSettings:
    """Reload configuration from environment"""
    global settings
    settings = WorkflowSettings()
    return settings
