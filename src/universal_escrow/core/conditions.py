"""Condition engine and release gating.

Conditions move out of ``pending`` exactly once.  After any condition or
approval change the escrow is re-checked: a ``funded`` escrow advances to
``pending_release`` when its :class:`ReleasePolicy` is met or when every
required role has approved.

All functions here mutate the :class:`Escrow` they are handed; the manager
only ever hands them a private copy inside a store mutation.
"""

from __future__ import annotations

import logging
from typing import Optional

from universal_escrow.core.errors import InvalidState, NotFound
from universal_escrow.storage.models import (
    PAYER_ROLES,
    Condition,
    ConditionStatus,
    Escrow,
    EscrowKind,
    EscrowStatus,
    ReleasePolicy,
    utcnow,
)

logger = logging.getLogger("universal_escrow.core.conditions")

# Statuses in which conditions and approvals may still change.
MUTABLE_STATUSES = (
    EscrowStatus.CREATED,
    EscrowStatus.FUNDED,
    EscrowStatus.PENDING_RELEASE,
)


def ensure_mutable(escrow: Escrow, operation: str) -> None:
    """Disputed and terminal escrows are frozen for condition/approval changes."""
    if escrow.status not in MUTABLE_STATUSES:
        raise InvalidState(
            f"Cannot {operation} on escrow {escrow.id}: status is '{escrow.status.value}'.",
            escrow_id=escrow.id,
            operation=operation,
            status=escrow.status.value,
        )


def get_condition(escrow: Escrow, condition_id: str) -> Condition:
    condition = escrow.find_condition(condition_id)
    if condition is None:
        raise NotFound(
            f"Condition {condition_id} not found on escrow {escrow.id}.",
            escrow_id=escrow.id,
            condition_id=condition_id,
        )
    return condition


def _pending_condition(escrow: Escrow, condition_id: str, operation: str) -> Condition:
    ensure_mutable(escrow, operation)
    condition = get_condition(escrow, condition_id)
    if condition.status != ConditionStatus.PENDING:
        raise InvalidState(
            f"Cannot {operation} condition {condition_id}: it is already "
            f"'{condition.status.value}'.",
            escrow_id=escrow.id,
            condition_id=condition_id,
            operation=operation,
            condition_status=condition.status.value,
        )
    return condition


# ------------------------------------------------------------------
# Mutations
# ------------------------------------------------------------------

def satisfy(escrow: Escrow, condition_id: str, by: str, evidence: Optional[str] = None) -> Condition:
    condition = _pending_condition(escrow, condition_id, "satisfy")
    condition.status = ConditionStatus.SATISFIED
    condition.satisfied_at = utcnow()
    condition.satisfied_by = by
    condition.evidence = evidence
    escrow.touch()
    advance_if_ready(escrow)
    return condition


def waive(escrow: Escrow, condition_id: str, by: str) -> Condition:
    condition = _pending_condition(escrow, condition_id, "waive")
    condition.status = ConditionStatus.WAIVED
    condition.satisfied_at = utcnow()
    condition.satisfied_by = by
    escrow.touch()
    advance_if_ready(escrow)
    return condition


def fail(escrow: Escrow, condition_id: str, reason: str) -> Condition:
    """Fail a condition.

    On earnest money the payer becomes the pending resolution target and an
    escrow already in ``pending_release`` drops back to ``funded``; the caller
    still has to invoke ``refund``.
    """
    condition = _pending_condition(escrow, condition_id, "fail")
    condition.status = ConditionStatus.FAILED
    condition.evidence = reason
    escrow.touch()
    if escrow.kind == EscrowKind.EARNEST_MONEY:
        payer = escrow.payer()
        escrow.release_to_role = payer.role if payer else PAYER_ROLES[0]
        if escrow.status == EscrowStatus.PENDING_RELEASE:
            escrow.status = EscrowStatus.FUNDED
        logger.info(
            f"Escrow {escrow.id}: condition '{condition.description}' failed, "
            f"refund to {escrow.release_to_role} pending"
        )
    advance_if_ready(escrow)
    return condition


# ------------------------------------------------------------------
# Gating
# ------------------------------------------------------------------

def refund_pending(escrow: Escrow) -> bool:
    return escrow.release_to_role is not None and escrow.release_to_role in PAYER_ROLES


def _conditions_met(escrow: Escrow) -> bool:
    return bool(escrow.conditions) and all(c.is_resolved for c in escrow.conditions)


def _quorum_met(escrow: Escrow) -> bool:
    required = set(escrow.required_approvals)
    return bool(required) and required <= escrow.approved_roles()


def _milestones_met(escrow: Escrow) -> bool:
    milestones = escrow.milestones()
    if not milestones:
        return _conditions_met(escrow)
    return all(c.status == ConditionStatus.SATISFIED for c in milestones)


def policy_met(escrow: Escrow) -> bool:
    """Whether the escrow's own release policy is currently met."""
    policy = escrow.release_requires
    if policy in (ReleasePolicy.ALL_CONDITIONS, ReleasePolicy.CONDITION_BASED):
        return _conditions_met(escrow)
    if policy == ReleasePolicy.MAJORITY_APPROVAL:
        return _quorum_met(escrow)
    if policy == ReleasePolicy.ANY_PARTY:
        return _milestones_met(escrow)
    raise AssertionError(f"unhandled release policy {policy!r}")


def release_authorized(escrow: Escrow) -> bool:
    """Whether the escrow may move to ``pending_release``.

    Either the release policy is met or every required role has approved,
    whatever the policy.  A pending refund blocks both.
    """
    if refund_pending(escrow):
        return False
    return policy_met(escrow) or _quorum_met(escrow)


def advance_if_ready(escrow: Escrow) -> bool:
    """Move ``funded`` to ``pending_release`` once release is authorized.

    Idempotent: any other status is left alone.  Returns True on transition.
    """
    if escrow.status != EscrowStatus.FUNDED:
        return False
    if not release_authorized(escrow):
        return False
    escrow.status = EscrowStatus.PENDING_RELEASE
    escrow.touch()
    logger.info(
        f"Escrow {escrow.id}: release authorized ({escrow.release_requires.value}), now pending_release"
    )
    return True
