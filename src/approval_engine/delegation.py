"""Delegation Registry.

Tracks who may act on whose behalf, for which request type and within
which window. Grants move ``pending -> approved -> active -> expired``;
activation and expiry are applied lazily on read under a per-delegator
lock, so the first lookup after a boundary records the transition exactly
once. Records are never deleted.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .config import DelegationApprovalType, DelegationSettings, DelegationStatus, RequestType
from .errors import DelegationError, DelegationInactive, DelegationNotFound, NotEligible
from .locks import KeyedLock
from .models import DelegationInfo
from .org import OrgDirectory

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[DelegationInfo, DelegationStatus], None]

_LIVE_STATUSES = (DelegationStatus.PENDING, DelegationStatus.APPROVED, DelegationStatus.ACTIVE)


class DelegationRegistry:
    """Thread-safe store of delegation grants."""

    def __init__(
        self,
        org: OrgDirectory,
        settings: Optional[DelegationSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self._org = org
        self._settings = settings or DelegationSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_transition = on_transition
        self._records: Dict[str, DelegationInfo] = {}
        self._by_delegator: Dict[str, List[str]] = {}
        self._index_lock = threading.Lock()
        self._delegator_locks = KeyedLock()

    @property
    def settings(self) -> DelegationSettings:
        return self._settings

    def set_transition_callback(self, callback: Optional[TransitionCallback]) -> None:
        self._on_transition = callback

    # ── Grant lifecycle ──────────────────────────────────────────────

    def create(
        self,
        delegator_id: str,
        delegate_id: str,
        request_type: RequestType,
        start_date: datetime,
        end_date: datetime,
        reason: str = "",
        request_id: Optional[str] = None,
    ) -> DelegationInfo:
        """Record a new grant.

        Type-wide grants go through the configured approval gate and start
        ``pending`` unless policy approves them immediately. Request-scoped
        grants are created by an eligible approver from inside a decision
        and are approved on creation.
        """
        if not self._settings.allow_delegation:
            raise DelegationError("Delegation is disabled")
        if delegator_id == delegate_id:
            raise DelegationError("Cannot delegate to yourself")
        if end_date <= start_date:
            raise DelegationError("Delegation end must be after its start")
        max_span = timedelta(days=self._settings.max_delegation_days)
        if end_date - start_date > max_span:
            raise DelegationError(
                f"Delegation exceeds maximum duration of {self._settings.max_delegation_days} days"
            )
        if not self._org.is_active(delegate_id):
            raise DelegationError(f"Delegate {delegate_id} is not an active account")

        record = DelegationInfo(
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            request_type=RequestType(request_type),
            start_date=start_date,
            end_date=end_date,
            reason=reason,
            request_id=request_id,
            created_at=self._clock(),
            updated_at=self._clock(),
        )

        transitions: List[Tuple[DelegationInfo, DelegationStatus]] = []
        try:
            self._store_new(record, transitions)
        finally:
            self._notify(transitions)

        logger.info(
            "Delegation %s created: %s -> %s for %s (%s)",
            record.delegation_id,
            delegator_id,
            delegate_id,
            record.request_type.value,
            record.status.value,
        )
        return record

    def approve(self, delegation_id: str, approver_id: str) -> DelegationInfo:
        """Approve a pending grant; only its computed approvers may do so."""
        record = self.get(delegation_id)
        transitions: List[Tuple[DelegationInfo, DelegationStatus]] = []
        with self._delegator_locks.hold(record.delegator_id):
            if record.status != DelegationStatus.PENDING:
                raise DelegationError(
                    f"Delegation {delegation_id} is {record.status.value}, not pending"
                )
            if approver_id not in record.approver_ids:
                raise NotEligible(
                    f"{approver_id} may not approve delegation {delegation_id}",
                    actor_id=approver_id,
                )
            self._set_status(record, DelegationStatus.APPROVED, transitions)
            record.approved_by = approver_id
            self._refresh(record, self._clock(), transitions)
        logger.info("Delegation %s approved by %s", delegation_id, approver_id)
        self._notify(transitions)
        return record

    def reject(self, delegation_id: str, approver_id: str) -> DelegationInfo:
        record = self.get(delegation_id)
        with self._delegator_locks.hold(record.delegator_id):
            if record.status != DelegationStatus.PENDING:
                raise DelegationError(
                    f"Delegation {delegation_id} is {record.status.value}, not pending"
                )
            if approver_id not in record.approver_ids:
                raise NotEligible(
                    f"{approver_id} may not reject delegation {delegation_id}",
                    actor_id=approver_id,
                )
            self._set_status(record, DelegationStatus.REJECTED, [])
        logger.info("Delegation %s rejected by %s", delegation_id, approver_id)
        return record

    def revoke(self, delegation_id: str, actor_id: str) -> DelegationInfo:
        """Withdraw a live grant. The delegator or an administrator may revoke."""
        record = self.get(delegation_id)
        is_admin = any(a.account_id == actor_id for a in self._org.admins())
        if actor_id != record.delegator_id and not is_admin:
            raise NotEligible(
                f"{actor_id} may not revoke delegation {delegation_id}", actor_id=actor_id
            )
        with self._delegator_locks.hold(record.delegator_id):
            if record.status not in _LIVE_STATUSES:
                raise DelegationError(
                    f"Delegation {delegation_id} is already {record.status.value}"
                )
            self._set_status(record, DelegationStatus.REVOKED, [])
        logger.info("Delegation %s revoked by %s", delegation_id, actor_id)
        return record

    # ── Lookups ──────────────────────────────────────────────────────

    def get(self, delegation_id: str) -> DelegationInfo:
        record = self._records.get(delegation_id)
        if record is None:
            raise DelegationNotFound(delegation_id)
        return record

    def find_active(
        self,
        delegator_id: str,
        request_type: RequestType,
        at: Optional[datetime] = None,
        request_id: Optional[str] = None,
    ) -> Optional[DelegationInfo]:
        """Return the grant currently moving ``delegator_id``'s authority.

        A grant scoped to ``request_id`` wins over a type-wide one; among
        equals the most recently created grant wins.
        """
        at = at or self._clock()
        request_type = RequestType(request_type)
        transitions: List[Tuple[DelegationInfo, DelegationStatus]] = []
        with self._delegator_locks.hold(delegator_id):
            candidates: List[DelegationInfo] = []
            for record in self._records_of(delegator_id):
                self._refresh(record, at, transitions)
                if not record.is_usable(at):
                    continue
                if record.request_id is not None and record.request_id != request_id:
                    continue
                if record.request_type != request_type and record.request_id is None:
                    continue
                candidates.append(record)
        self._notify(transitions)

        if not candidates:
            return None
        # Stable sort: among equal timestamps the later-created grant stays last
        candidates.sort(key=lambda r: (r.request_id is not None, r.created_at))
        return candidates[-1]

    def require_usable(self, delegation_id: str, at: Optional[datetime] = None) -> DelegationInfo:
        """Return the grant if it can be exercised at ``at``.

        Raises ``DelegationInactive`` for expired, revoked or unapproved grants.
        """
        at = at or self._clock()
        record = self.get(delegation_id)
        transitions: List[Tuple[DelegationInfo, DelegationStatus]] = []
        with self._delegator_locks.hold(record.delegator_id):
            self._refresh(record, at, transitions)
            usable = record.is_usable(at)
        self._notify(transitions)
        if not usable:
            raise DelegationInactive(
                f"Delegation {delegation_id} is {record.status.value}",
                delegation_id=delegation_id,
            )
        return record

    def list_for(
        self, actor_id: str, status: Optional[DelegationStatus] = None,
    ) -> List[DelegationInfo]:
        """Grants where ``actor_id`` is delegator, delegate or approver."""
        at = self._clock()
        matches = [
            r for r in list(self._records.values())
            if actor_id in (r.delegator_id, r.delegate_id) or actor_id in r.approver_ids
        ]
        for record in matches:
            self.require_refreshed(record, at)
        if status is not None:
            matches = [r for r in matches if r.status == status]
        return sorted(matches, key=lambda r: r.created_at)

    def list_all(self) -> List[DelegationInfo]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def require_refreshed(self, record: DelegationInfo, at: datetime) -> None:
        transitions: List[Tuple[DelegationInfo, DelegationStatus]] = []
        with self._delegator_locks.hold(record.delegator_id):
            self._refresh(record, at, transitions)
        self._notify(transitions)

    # ── Internals ────────────────────────────────────────────────────

    def _records_of(self, delegator_id: str) -> List[DelegationInfo]:
        with self._index_lock:
            ids = list(self._by_delegator.get(delegator_id, ()))
        return [self._records[i] for i in ids]

    def _store_new(
        self,
        record: DelegationInfo,
        transitions: List[Tuple[DelegationInfo, DelegationStatus]],
    ) -> None:
        delegator_id = record.delegator_id
        delegate_id = record.delegate_id
        request_id = record.request_id
        with self._delegator_locks.hold(delegator_id):
            if request_id is None and not self._settings.allow_multiple_delegations:
                clash = self._overlapping(record, transitions)
                if clash is not None:
                    raise DelegationError(
                        f"Delegator {delegator_id} already has delegation "
                        f"{clash.delegation_id} for {record.request_type.value}"
                    )

            if request_id is not None:
                record.status = DelegationStatus.APPROVED
                record.approved_by = delegator_id
            else:
                approvers = self._grant_approvers(delegator_id, delegate_id)
                record.approver_ids = tuple(a for a in approvers if a != delegator_id)
                if not self._settings.require_approval:
                    record.status = DelegationStatus.APPROVED
                    record.approved_by = delegator_id
                elif delegator_id in approvers and self._settings.auto_approve_for_upper_leaders:
                    record.status = DelegationStatus.APPROVED
                    record.approved_by = delegator_id
                elif not record.approver_ids:
                    raise DelegationError(
                        f"No approver available for delegation by {delegator_id}"
                    )

            with self._index_lock:
                self._records[record.delegation_id] = record
                self._by_delegator.setdefault(delegator_id, []).append(record.delegation_id)
            self._refresh(record, self._clock(), transitions)

    def _overlapping(
        self,
        new: DelegationInfo,
        transitions: List[Tuple[DelegationInfo, DelegationStatus]],
    ) -> Optional[DelegationInfo]:
        """Live type-wide grant clashing with ``new``. Caller holds the delegator lock."""
        at = self._clock()
        for record in self._records_of(new.delegator_id):
            self._refresh(record, at, transitions)
            if record.request_id is not None or record.request_type != new.request_type:
                continue
            if record.status not in _LIVE_STATUSES:
                continue
            if record.start_date <= new.end_date and new.start_date <= record.end_date:
                return record
        return None

    def _grant_approvers(self, delegator_id: str, delegate_id: str) -> Tuple[str, ...]:
        approval_type = self._settings.approval_type
        if approval_type == DelegationApprovalType.DELEGATE_DIRECT:
            return (delegate_id,)
        if approval_type == DelegationApprovalType.ADMIN:
            return tuple(sorted(a.account_id for a in self._org.admins()))

        account = self._org.get_account(delegator_id)
        ancestry = self._org.group_ancestry(account.primary_group if account else None)
        if not ancestry:
            return tuple(sorted(a.account_id for a in self._org.admins()))
        if approval_type == DelegationApprovalType.TOP_GROUP_LEADER:
            group = ancestry[-1]
        else:
            group = ancestry[1] if len(ancestry) > 1 else ancestry[0]
        if group.leader_id and self._org.is_active(group.leader_id):
            return (group.leader_id,)
        return tuple(sorted(a.account_id for a in self._org.admins()))

    def _refresh(
        self,
        record: DelegationInfo,
        at: datetime,
        transitions: List[Tuple[DelegationInfo, DelegationStatus]],
    ) -> None:
        """Apply time-driven transitions. Caller holds the delegator lock."""
        if record.status in _LIVE_STATUSES and at > record.end_date:
            self._set_status(record, DelegationStatus.EXPIRED, transitions)
            logger.info(
                "Delegation %s expired (%s -> %s)",
                record.delegation_id,
                record.delegator_id,
                record.delegate_id,
            )
        elif record.status == DelegationStatus.APPROVED and record.in_window(at):
            self._set_status(record, DelegationStatus.ACTIVE, transitions)
            logger.info("Delegation %s is now active", record.delegation_id)

    def _set_status(
        self,
        record: DelegationInfo,
        status: DelegationStatus,
        transitions: List[Tuple[DelegationInfo, DelegationStatus]],
    ) -> None:
        previous = record.status
        record.status = status
        record.updated_at = self._clock()
        transitions.append((replace(record), previous))

    def _notify(self, transitions: List[Tuple[DelegationInfo, DelegationStatus]]) -> None:
        if self._on_transition is None:
            return
        for record, previous in transitions:
            try:
                self._on_transition(record, previous)
            except Exception:
                logger.exception(
                    "Delegation transition callback failed for %s", record.delegation_id
                )
