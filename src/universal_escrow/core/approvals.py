"""Approval engine: one approval per required role, never overwritten."""

from __future__ import annotations

import logging
from typing import Optional

from universal_escrow.core.conditions import advance_if_ready, ensure_mutable
from universal_escrow.core.errors import AuthorizationError
from universal_escrow.storage.models import Approval, Escrow

logger = logging.getLogger("universal_escrow.core.approvals")


def approve(escrow: Escrow, role: str, note: Optional[str] = None) -> Approval:
    ensure_mutable(escrow, "approve")

    if role not in escrow.required_approvals:
        raise AuthorizationError(
            f'Party role "{role}" is not required for approval on escrow {escrow.id}.',
            escrow_id=escrow.id,
            role=role,
            required=",".join(escrow.required_approvals),
        )
    if role in escrow.approved_roles():
        raise AuthorizationError(
            f'Role "{role}" has already approved escrow {escrow.id}.',
            escrow_id=escrow.id,
            role=role,
        )

    approval = Approval(role=role, note=note)
    escrow.approvals.append(approval)
    escrow.touch()
    logger.info(
        f"Escrow {escrow.id}: {role} approved "
        f"({len(quorum_progress(escrow)[0])}/{len(escrow.required_approvals)})"
    )
    advance_if_ready(escrow)
    return approval


def quorum_progress(escrow: Escrow) -> tuple[list[str], list[str]]:
    """Split required roles into (approved, outstanding), keeping their order."""
    approved = escrow.approved_roles()
    done = [r for r in escrow.required_approvals if r in approved]
    waiting = [r for r in escrow.required_approvals if r not in approved]
    return done, waiting
