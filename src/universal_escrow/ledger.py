"""Ledger seam: the caller's side of moving escrowed funds.

The engine never initiates a transfer.  A caller that owns a ledger client
runs the manager's settlement guards, submits the transfer and then records
the returned reference through the manager.  A transfer is only submitted
for a record the manager would accept, and a failed transfer leaves the
escrow untouched.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol, runtime_checkable

from universal_escrow.core.manager import EscrowManager
from universal_escrow.storage.models import Escrow

logger = logging.getLogger("universal_escrow.ledger")


@runtime_checkable
class LedgerClient(Protocol):
    """Anything that can move funds and hand back a settlement reference."""

    async def submit_transfer(self, destination: str, amount: Decimal) -> str:
        ...


async def settle_release(
    manager: EscrowManager,
    ledger: LedgerClient,
    escrow_id: str,
    destination: str,
) -> Escrow:
    """Transfer the remaining balance to ``destination`` and record the release."""
    escrow = await manager.get(escrow_id)
    amount = manager.check_release(escrow, destination)
    reference = await ledger.submit_transfer(destination, amount)
    logger.info(f"Ledger transfer {reference}: {amount} to {destination} for {escrow_id}")
    return await manager.release(escrow_id, destination, reference)


async def settle_milestone(
    manager: EscrowManager,
    ledger: LedgerClient,
    escrow_id: str,
    condition_id: str,
    destination: str,
) -> Escrow:
    """Transfer one milestone's payout and record it as a partial release."""
    escrow = await manager.get(escrow_id)
    amount, _ = manager.check_partial(escrow, condition_id, destination)
    reference = await ledger.submit_transfer(destination, amount)
    logger.info(
        f"Ledger transfer {reference}: {amount} to {destination} "
        f"for {escrow_id}/{condition_id}"
    )
    return await manager.release_partial(escrow_id, condition_id, destination, reference)


async def settle_refund(
    manager: EscrowManager,
    ledger: LedgerClient,
    escrow_id: str,
) -> Escrow:
    """Transfer the remaining balance back to the payer and record the refund."""
    escrow = await manager.get(escrow_id)
    payer = manager.check_refund(escrow)
    amount = escrow.remaining_amount
    reference = await ledger.submit_transfer(payer.address, amount)
    logger.info(f"Ledger transfer {reference}: refund {amount} to {payer.address} for {escrow_id}")
    return await manager.refund(escrow_id, reference)
