"""Tests for the organisation directory."""

import pytest

from src.approval_engine import Account, OrgDirectory, OrgGroup


class TestOrgDirectory:
    def setup_method(self):
        from conftest import build_org
        self.org = build_org()

    def test_manager_chain(self):
        assert self.org.manager_chain("alice") == ["bob", "plat_lead", "eng_lead", "ceo"]
        assert self.org.manager_chain("ceo") == []

    def test_group_ancestry_and_root(self):
        ancestry = [g.group_id for g in self.org.group_ancestry("platform")]
        assert ancestry == ["platform", "engineering", "company"]
        assert self.org.root_group("platform").group_id == "company"

    def test_roles_and_admins(self):
        assert {a.account_id for a in self.org.accounts_with_role("finance")} == {"fin_lead", "dave"}
        assert [a.account_id for a in self.org.admins()] == ["root"]

    def test_deactivate(self):
        self.org.deactivate("carol")
        assert not self.org.is_active("carol")
        assert self.org.is_active("alice")
        assert not self.org.is_active(None)
        with pytest.raises(KeyError):
            self.org.deactivate("nobody")

    def test_inactive_accounts_are_not_role_holders(self):
        self.org.deactivate("dave")
        assert {a.account_id for a in self.org.accounts_with_role("finance")} == {"fin_lead"}

    def test_primary_group(self):
        org = OrgDirectory()
        org.add_group(OrgGroup("ops", "Operations"))
        account = org.add_account(Account("zoe", "Zoe", group_ids=("ops", "other")))
        assert account.primary_group == "ops"
        assert Account("solo").primary_group is None
