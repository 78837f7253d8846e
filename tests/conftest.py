"""Pytest configuration and shared fixtures."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.approval_engine import (  # noqa: E402
    Account,
    EngineConfig,
    OrgDirectory,
    OrgGroup,
    WorkflowDefinitionStore,
    WorkflowEngine,
)

START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock injected into the engine and registry."""

    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


def build_org():
    """Small organisation used across the suite.

    company (ceo)
      └── engineering (eng_lead)
            └── platform (plat_lead): bob, alice, carol

    Manager chain of alice and carol: bob -> plat_lead -> eng_lead -> ceo.
    """
    org = OrgDirectory()
    org.add_group(OrgGroup("company", "Company", leader_id="ceo"))
    org.add_group(OrgGroup("engineering", "Engineering", leader_id="eng_lead", parent_id="company"))
    org.add_group(OrgGroup("platform", "Platform", leader_id="plat_lead", parent_id="engineering"))
    org.add_group(OrgGroup("finance", "Finance", leader_id="fin_lead", parent_id="company"))

    org.add_account(Account("ceo", "CEO", roles=frozenset({"executive"}), group_ids=("company",)))
    org.add_account(Account("eng_lead", "Eng Lead", group_ids=("engineering",), manager_id="ceo"))
    org.add_account(Account("plat_lead", "Platform Lead", group_ids=("platform",), manager_id="eng_lead"))
    org.add_account(Account("bob", "Bob", roles=frozenset({"team_lead"}),
                            group_ids=("platform",), manager_id="plat_lead"))
    org.add_account(Account("alice", "Alice", group_ids=("platform",), manager_id="bob"))
    org.add_account(Account("carol", "Carol", group_ids=("platform",), manager_id="bob"))
    org.add_account(Account("fin_lead", "Finance Lead", roles=frozenset({"finance"}),
                            group_ids=("finance",), manager_id="ceo"))
    org.add_account(Account("dave", "Dave", roles=frozenset({"finance"}),
                            group_ids=("finance",), manager_id="fin_lead"))
    org.add_account(Account("root", "Administrator", roles=frozenset({"admin"})))
    return org


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def org():
    return build_org()


@pytest.fixture
def make_engine(org, clock):
    """Factory building an engine over ``workflows`` with the shared org and clock."""

    def _make(workflows, config=None, **kwargs):
        return WorkflowEngine(
            WorkflowDefinitionStore(list(workflows)),
            org,
            config=config or EngineConfig(),
            clock=clock,
            **kwargs,
        )

    return _make
