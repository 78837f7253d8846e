"""Centralized settings for the approval engine service.

Uses pydantic-settings to load from environment variables (prefixed
APPROVALS_) or a local ``.env`` file. Only process edges (CLI, API
factory) read these; the engine receives an explicit ``EngineConfig``.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Approval engine settings loaded from environment variables."""

    # --- Database ---
    database_url: str = "sqlite:///./approvals.db"
    use_database: bool = False

    # --- Delegation policy ---
    allow_delegation: bool = True
    delegation_approval_type: str = "upper_group_leader"
    require_delegation_approval: bool = True
    auto_approve_for_upper_leaders: bool = False
    allow_multiple_delegations: bool = False
    max_delegation_days: int = 30

    # --- Auto-approval policy ---
    auto_approval_enabled: bool = False
    auto_approval_max_amount: float = 1000.0
    auto_approval_max_days: float = 3.0
    auto_approval_types: List[str] = ["leave_request", "schedule_change"]

    # --- Escalation ---
    escalation_enabled: bool = True
    escalation_default_timeout_hours: float = 24.0
    escalation_levels: int = 3
    scheduler_interval_seconds: float = 60.0

    # --- Engine ---
    require_rejection_comment: bool = False
    worker_count: int = 4
    load_default_workflows: bool = True

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = {
        "env_prefix": "APPROVALS_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
