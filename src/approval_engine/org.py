"""Organisational context consulted by the approver resolver."""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional, Tuple

from .config import ADMIN_ROLE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    """A person who can request or approve."""

    account_id: str
    name: str = ""
    roles: FrozenSet[str] = frozenset()
    group_ids: Tuple[str, ...] = ()
    manager_id: Optional[str] = None
    active: bool = True

    @property
    def primary_group(self) -> Optional[str]:
        return self.group_ids[0] if self.group_ids else None


@dataclass(frozen=True)
class OrgGroup:
    """A node in the group hierarchy; the root has no parent."""

    group_id: str
    name: str = ""
    leader_id: Optional[str] = None
    parent_id: Optional[str] = None


class OrgDirectory:
    """In-memory account and group directory.

    Edited by administrative collaborators; the engine only reads it.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._groups: Dict[str, OrgGroup] = {}
        self._lock = threading.Lock()

    # ── Administration ───────────────────────────────────────────────

    def add_account(self, account: Account) -> Account:
        with self._lock:
            self._accounts[account.account_id] = account
        return account

    def add_group(self, group: OrgGroup) -> OrgGroup:
        with self._lock:
            self._groups[group.group_id] = group
        return group

    def deactivate(self, account_id: str) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise KeyError(f"Unknown account: {account_id}")
            self._accounts[account_id] = replace(account, active=False)
        logger.info("Deactivated account %s", account_id)

    # ── Queries ──────────────────────────────────────────────────────

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    def get_group(self, group_id: str) -> Optional[OrgGroup]:
        return self._groups.get(group_id)

    def is_active(self, account_id: Optional[str]) -> bool:
        if not account_id:
            return False
        account = self._accounts.get(account_id)
        return account is not None and account.active

    def accounts_with_role(self, *roles: str) -> List[Account]:
        wanted = set(roles)
        return [
            a for a in self._accounts.values()
            if a.active and wanted.intersection(a.roles)
        ]

    def admins(self) -> List[Account]:
        return self.accounts_with_role(ADMIN_ROLE)

    def manager_chain(self, account_id: str) -> List[str]:
        """Manager ids from the direct manager upward; stops on cycles."""
        chain: List[str] = []
        seen = {account_id}
        account = self._accounts.get(account_id)
        while account is not None and account.manager_id and account.manager_id not in seen:
            chain.append(account.manager_id)
            seen.add(account.manager_id)
            account = self._accounts.get(account.manager_id)
        return chain

    def group_ancestry(self, group_id: Optional[str]) -> List[OrgGroup]:
        """The group followed by its ancestors, ending at the root."""
        ancestry: List[OrgGroup] = []
        seen = set()
        group = self._groups.get(group_id) if group_id else None
        while group is not None and group.group_id not in seen:
            ancestry.append(group)
            seen.add(group.group_id)
            group = self._groups.get(group.parent_id) if group.parent_id else None
        return ancestry

    def root_group(self, group_id: Optional[str]) -> Optional[OrgGroup]:
        ancestry = self.group_ancestry(group_id)
        return ancestry[-1] if ancestry else None
