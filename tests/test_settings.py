"""Tests for environment settings and engine configuration."""

import pytest

from src.approval_engine import (
    DelegationApprovalType,
    EngineConfig,
    EscalationType,
    RequestType,
)
from src.settings import Settings, get_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.use_database is False
        assert settings.escalation_levels == 3
        assert settings.max_delegation_days == 30
        assert settings.auto_approval_types == ["leave_request", "schedule_change"]

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("APPROVALS_ESCALATION_LEVELS", "5")
        monkeypatch.setenv("APPROVALS_AUTO_APPROVAL_ENABLED", "true")
        monkeypatch.setenv("APPROVALS_AUTO_APPROVAL_TYPES", '["overtime_request"]')
        settings = Settings()
        assert settings.escalation_levels == 5
        assert settings.auto_approval_enabled is True
        assert settings.auto_approval_types == ["overtime_request"]

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.delegation.approval_type == DelegationApprovalType.UPPER_GROUP_LEADER
        assert config.delegation.require_approval is True
        assert config.auto_approval.enabled is False
        assert config.escalation.escalation_levels == 3
        assert config.escalation.default_type == EscalationType.NEXT_LEVEL
        assert config.require_rejection_comment is False

    def test_from_settings(self):
        config = EngineConfig.from_settings(Settings(
            delegation_approval_type="admin",
            allow_multiple_delegations=True,
            auto_approval_enabled=True,
            auto_approval_types=["expense_claim"],
            escalation_default_timeout_hours=6,
            require_rejection_comment=True,
            worker_count=8,
        ))
        assert config.delegation.approval_type == DelegationApprovalType.ADMIN
        assert config.delegation.allow_multiple_delegations is True
        assert config.auto_approval.allowed_types == (RequestType.EXPENSE_CLAIM,)
        assert config.escalation.default_timeout_hours == 6
        assert config.require_rejection_comment is True
        assert config.worker_count == 8

    def test_unknown_approval_type(self):
        with pytest.raises(ValueError):
            EngineConfig.from_settings(Settings(delegation_approval_type="oracle"))
