"""Approver Resolver.

Turns a step's ``ApproverSpec`` into the concrete set of account ids that
may decide it, then applies delegation substitution. Resolution itself is
pure with respect to the request; the only write it can trigger is the
delegation registry's lazy activation/expiry bookkeeping.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .config import ApproverType, EscalationType
from .delegation import DelegationRegistry
from .errors import DelegationInactive, NoManagerFound, ResolutionError
from .models import ApprovalRequest, ApprovalStep, DelegationInfo, EscalationRule
from .org import OrgDirectory, OrgGroup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Effective actors for a step after delegation substitution.

    ``substitutions`` maps each delegator to the delegate acting for them.
    """

    actors: FrozenSet[str]
    substitutions: Dict[str, str] = field(default_factory=dict)
    delegations: Tuple[DelegationInfo, ...] = ()

    @property
    def delegated(self) -> bool:
        return bool(self.substitutions)


class ApproverResolver:
    """Resolves approver specifications against an ``OrgDirectory``."""

    def __init__(self, org: OrgDirectory, delegations: DelegationRegistry) -> None:
        self._org = org
        self._delegations = delegations

    @property
    def org(self) -> OrgDirectory:
        return self._org

    # ── Base resolution ──────────────────────────────────────────────

    def resolve(
        self,
        step: ApprovalStep,
        request: ApprovalRequest,
        org: Optional[OrgDirectory] = None,
    ) -> FrozenSet[str]:
        """Compute the eligible approver ids for ``step``.

        Raises ``ResolutionError`` (or ``NoManagerFound``) instead of ever
        returning an empty set.
        """
        org = org or self._org
        spec = step.approver
        kind = ApproverType(spec.kind)

        if kind == ApproverType.SPECIFIC:
            actors = self._specific(spec.ids, org)
        elif kind == ApproverType.ROLE:
            actors = {a.account_id for a in org.accounts_with_role(*spec.roles)}
        elif kind == ApproverType.GROUP:
            actors = set()
            for group_id in spec.groups:
                group = org.get_group(group_id)
                if group is not None and org.is_active(group.leader_id):
                    actors.add(group.leader_id)
        elif kind == ApproverType.MANAGER:
            actors = {self._manager_at(request, 1, org)}
        elif kind == ApproverType.UPPER_MANAGER:
            actors = {self._manager_at(request, 2, org)}
        elif kind == ApproverType.GROUP_LEADER:
            actors = self._leader_at(request, 0, org)
        elif kind == ApproverType.UPPER_GROUP_LEADER:
            actors = self._leader_at(request, 1, org)
        elif kind == ApproverType.TOP_GROUP_LEADER:
            actors = self._leader_at(request, None, org)
        elif kind == ApproverType.ADMIN:
            actors = {a.account_id for a in org.admins()}
        elif kind == ApproverType.ANY_LEADER:
            actors = set()
            for group_id in self._requester_groups(request, org):
                group = org.get_group(group_id)
                if group is not None and org.is_active(group.leader_id):
                    actors.add(group.leader_id)
        elif kind == ApproverType.ANY_MANAGER:
            actors = {
                m for m in org.manager_chain(request.requester_id) if org.is_active(m)
            }
        else:
            raise ResolutionError(f"Unsupported approver type: {kind}", request_id=request.request_id)

        if not actors:
            raise ResolutionError(
                f"No eligible approver for step {step.name or step.step_id} ({kind.value})",
                request_id=request.request_id,
            )
        return frozenset(actors)

    def _specific(self, ids: Iterable[str], org: OrgDirectory) -> set:
        actors = set()
        for account_id in ids:
            if org.is_active(account_id):
                actors.add(account_id)
            else:
                logger.warning("Configured approver %s is inactive or unknown", account_id)
        return actors

    def _manager_at(self, request: ApprovalRequest, depth: int, org: OrgDirectory) -> str:
        chain = org.manager_chain(request.requester_id)
        if len(chain) < depth:
            raise NoManagerFound(
                f"Manager chain of {request.requester_id} ends before depth {depth}",
                request_id=request.request_id,
            )
        manager_id = chain[depth - 1]
        if not org.is_active(manager_id):
            raise ResolutionError(
                f"Manager {manager_id} of {request.requester_id} is inactive",
                request_id=request.request_id,
            )
        return manager_id

    def _requester_group(self, request: ApprovalRequest, org: OrgDirectory) -> Optional[str]:
        if request.requester_group:
            return request.requester_group
        account = org.get_account(request.requester_id)
        return account.primary_group if account else None

    def _requester_groups(self, request: ApprovalRequest, org: OrgDirectory) -> List[str]:
        groups: List[str] = []
        if request.requester_group:
            groups.append(request.requester_group)
        account = org.get_account(request.requester_id)
        if account is not None:
            groups.extend(g for g in account.group_ids if g not in groups)
        return groups

    def _ancestor(
        self, request: ApprovalRequest, depth: Optional[int], org: OrgDirectory,
    ) -> Optional[OrgGroup]:
        ancestry = org.group_ancestry(self._requester_group(request, org))
        if not ancestry:
            return None
        if depth is None:
            return ancestry[-1]
        return ancestry[min(depth, len(ancestry) - 1)]

    def _leader_at(
        self, request: ApprovalRequest, depth: Optional[int], org: OrgDirectory,
    ) -> set:
        group = self._ancestor(request, depth, org)
        if group is None or not org.is_active(group.leader_id):
            return set()
        return {group.leader_id}

    # ── Delegation substitution ──────────────────────────────────────

    def substitute(
        self,
        actors: FrozenSet[str],
        request: ApprovalRequest,
        at: datetime,
    ) -> Resolution:
        """Replace each actor that delegated away with their delegate.

        Substitution is a single hop: a delegate is never substituted again.
        """
        effective = set()
        substitutions: Dict[str, str] = {}
        used: List[DelegationInfo] = []

        for actor in sorted(actors):
            grant = self._grant_for(actor, request, at)
            if grant is not None and self._org.is_active(grant.delegate_id):
                effective.add(grant.delegate_id)
                substitutions[actor] = grant.delegate_id
                used.append(grant)
            else:
                effective.add(actor)

        return Resolution(
            actors=frozenset(effective),
            substitutions=substitutions,
            delegations=tuple(used),
        )

    def _grant_for(
        self, actor: str, request: ApprovalRequest, at: datetime,
    ) -> Optional[DelegationInfo]:
        scoped = request.delegation_info
        if scoped is not None and scoped.delegator_id == actor:
            try:
                return self._delegations.require_usable(scoped.delegation_id, at)
            except DelegationInactive:
                logger.info(
                    "Delegation %s on request %s is no longer usable; %s acts directly",
                    scoped.delegation_id,
                    request.request_id,
                    actor,
                )
                return None
        return self._delegations.find_active(
            actor, request.request_type, at, request_id=request.request_id
        )

    # ── Escalation targets ───────────────────────────────────────────

    def resolve_escalation(
        self,
        rule: EscalationRule,
        request: ApprovalRequest,
        current_actors: FrozenSet[str],
        org: Optional[OrgDirectory] = None,
    ) -> FrozenSet[str]:
        """Approvers for the next escalation level of a stalled step."""
        org = org or self._org
        kind = EscalationType(rule.escalation_type)

        if kind == EscalationType.NEXT_LEVEL:
            actors = set()
            for actor in current_actors:
                account = org.get_account(actor)
                if account is not None and org.is_active(account.manager_id):
                    actors.add(account.manager_id)
        elif kind == EscalationType.SPECIFIC_USER:
            actors = self._specific(rule.target_ids, org)
        elif kind == EscalationType.ADMIN:
            actors = {a.account_id for a in org.admins()}
        elif kind == EscalationType.GROUP_LEADER:
            actors = self._leader_at(request, request.escalation_count + 1, org)
        else:
            raise ResolutionError(f"Unsupported escalation type: {kind}", request_id=request.request_id)

        if not actors:
            raise ResolutionError(
                f"No escalation target for {kind.value} on request {request.request_id}",
                request_id=request.request_id,
            )
        return frozenset(actors)
