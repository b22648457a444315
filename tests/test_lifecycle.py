import asyncio
from decimal import Decimal

import pytest

from universal_escrow.core.builder import ConditionBuilder
from universal_escrow.core.errors import InvalidState, NotFound, ValidationError
from universal_escrow.storage.models import (
    DisputeOutcome,
    EscrowKind,
    EscrowStatus,
    ReleasePolicy,
)

from conftest import BUYER, SELLER


async def _purchase(manager, **kwargs):
    return await manager.create_custom(
        amount=kwargs.pop("amount", "500"),
        parties=kwargs.pop("parties", [BUYER, SELLER]),
        conditions=kwargs.pop("conditions", [ConditionBuilder.delivery()]),
        kind=EscrowKind.PURCHASE,
        **kwargs,
    )


async def _ready(manager):
    """A funded escrow whose only condition is satisfied."""
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")
    return await manager.satisfy_condition(escrow.id, escrow.conditions[0].id, "courier")


# ------------------------------------------------------------------
# creation
# ------------------------------------------------------------------


async def test_created_escrow_is_persisted(manager):
    escrow = await _purchase(manager, notes="Laptop")

    stored = await manager.get(escrow.id)
    assert stored == escrow
    assert stored.status is EscrowStatus.CREATED
    assert stored.id.startswith("CUSTOM-")
    assert stored.required_approvals == ["buyer", "seller"]
    assert stored.funding_deadline > stored.created_at


async def test_condition_based_has_no_implicit_approvers(manager):
    escrow = await _purchase(manager, release_requires=ReleasePolicy.CONDITION_BASED)
    assert escrow.required_approvals == []


@pytest.mark.parametrize("amount", ["0", "-10", "NaN"])
async def test_amount_must_be_positive(manager, amount):
    with pytest.raises(ValidationError):
        await _purchase(manager, amount=amount)
    assert await manager.list() == []


async def test_unknown_chain_rejected(manager):
    with pytest.raises(ValidationError, match="Unknown chain"):
        await _purchase(manager, chain="dogechain")


async def test_duplicate_roles_rejected(manager):
    with pytest.raises(ValidationError, match="distinct"):
        await _purchase(manager, parties=[BUYER, dict(BUYER, name="Other")])


async def test_required_approvals_must_name_parties(manager):
    with pytest.raises(ValidationError, match="match no party"):
        await _purchase(manager, required_approvals=["arbiter"])


async def test_bad_policy_rejected(manager):
    with pytest.raises(ValidationError):
        await _purchase(manager, release_requires="whenever")


async def test_bad_condition_input_rejected(manager):
    with pytest.raises(ValidationError, match="Bad condition"):
        await _purchase(manager, conditions=[{"description": "x", "type": "telepathy"}])


async def test_auto_release_adds_deadline_condition(manager):
    escrow = await _purchase(manager, auto_release_days=5)
    assert escrow.conditions[-1].type.value == "deadline"
    assert escrow.conditions[-1].deadline is not None


# ------------------------------------------------------------------
# funding / cancellation
# ------------------------------------------------------------------


async def test_fund_records_reference(manager):
    escrow = await _purchase(manager)
    funded = await manager.fund(escrow.id, "0xfund")

    assert funded.status is EscrowStatus.FUNDED
    assert funded.funding_ref == "0xfund"
    assert funded.funded_at is not None


async def test_fund_twice_is_invalid(manager):
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")

    with pytest.raises(InvalidState) as info:
        await manager.fund(escrow.id, "0xagain")
    assert info.value.context["status"] == "funded"
    assert info.value.context["operation"] == "fund"
    assert (await manager.get(escrow.id)).funding_ref == "0xfund"


async def test_fund_needs_reference(manager):
    escrow = await _purchase(manager)
    with pytest.raises(ValidationError):
        await manager.fund(escrow.id, "  ")


async def test_fund_advances_when_already_satisfied(manager):
    escrow = await _purchase(manager)
    await manager.satisfy_condition(escrow.id, escrow.conditions[0].id, "courier")

    funded = await manager.fund(escrow.id, "0xfund")
    assert funded.status is EscrowStatus.PENDING_RELEASE


async def test_cancel_only_before_funding(manager):
    escrow = await _purchase(manager)
    cancelled = await manager.cancel(escrow.id)
    assert cancelled.status is EscrowStatus.CANCELLED

    other = await _purchase(manager)
    await manager.fund(other.id, "0xfund")
    with pytest.raises(InvalidState):
        await manager.cancel(other.id)


async def test_cancelled_escrow_cannot_be_funded(manager):
    escrow = await _purchase(manager)
    await manager.cancel(escrow.id)
    with pytest.raises(InvalidState):
        await manager.fund(escrow.id, "0xfund")


# ------------------------------------------------------------------
# release / refund
# ------------------------------------------------------------------


async def test_release_from_pending_release(manager):
    escrow = await _ready(manager)
    assert escrow.status is EscrowStatus.PENDING_RELEASE

    released = await manager.release(escrow.id, "0xB0B", "0xsettle")

    assert released.status is EscrowStatus.RELEASED
    assert released.settlement.destination == "0xB0B"
    assert released.settlement.reference == "0xsettle"
    assert released.tranches[-1].amount == Decimal("500")
    assert released.remaining_amount == 0


async def test_release_before_gate_is_invalid(manager):
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")

    with pytest.raises(InvalidState):
        await manager.release(escrow.id, "0xB0B", "0xsettle")
    assert (await manager.get(escrow.id)).settlement is None


async def test_release_needs_destination(manager):
    escrow = await _ready(manager)
    with pytest.raises(ValidationError):
        await manager.release(escrow.id, "", "0xsettle")


async def test_refund_goes_to_payer(manager):
    escrow = await _ready(manager)
    refunded = await manager.refund(escrow.id, "0xrefund")

    assert refunded.status is EscrowStatus.REFUNDED
    assert refunded.settlement.destination == BUYER["address"]
    assert refunded.release_to_role == "buyer"


async def test_refund_without_payer_address_fails(manager):
    escrow = await _purchase(manager, parties=[{"role": "buyer", "name": "Anon"}, SELLER])
    await manager.fund(escrow.id, "0xfund")

    with pytest.raises(ValidationError, match="refund"):
        await manager.refund(escrow.id, "0xrefund")
    assert (await manager.get(escrow.id)).status is EscrowStatus.FUNDED


async def test_refund_before_funding_is_invalid(manager):
    escrow = await _purchase(manager)
    with pytest.raises(InvalidState):
        await manager.refund(escrow.id, "0xrefund")


async def test_terminal_escrow_rejects_everything(manager):
    escrow = await _ready(manager)
    await manager.release(escrow.id, "0xB0B", "0xsettle")

    with pytest.raises(InvalidState):
        await manager.refund(escrow.id, "0xrefund")
    with pytest.raises(InvalidState):
        await manager.approve(escrow.id, "buyer")
    with pytest.raises(InvalidState):
        await manager.raise_dispute(escrow.id, "buyer", "too late")


# ------------------------------------------------------------------
# disputes
# ------------------------------------------------------------------


async def test_dispute_freezes_escrow(manager):
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")

    disputed = await manager.raise_dispute(escrow.id, "buyer", "Item never arrived")
    assert disputed.status is EscrowStatus.DISPUTED
    assert disputed.dispute.raised_by == "buyer"

    with pytest.raises(InvalidState):
        await manager.satisfy_condition(escrow.id, escrow.conditions[0].id, "courier")
    with pytest.raises(InvalidState):
        await manager.approve(escrow.id, "seller")
    with pytest.raises(InvalidState):
        await manager.refund(escrow.id, "0xrefund")


async def test_dispute_needs_reason_and_funded_status(manager):
    escrow = await _purchase(manager)
    with pytest.raises(InvalidState):
        await manager.raise_dispute(escrow.id, "buyer", "early")

    await manager.fund(escrow.id, "0xfund")
    with pytest.raises(ValidationError):
        await manager.raise_dispute(escrow.id, "buyer", "")


async def test_resolve_dispute_as_refund(manager):
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")
    await manager.raise_dispute(escrow.id, "buyer", "Item never arrived")

    resolved = await manager.resolve_dispute(escrow.id, "Seller could not prove shipment", "refund", "0xr")

    assert resolved.status is EscrowStatus.REFUNDED
    assert resolved.dispute.outcome is DisputeOutcome.REFUND
    assert resolved.dispute.resolved_at is not None
    assert resolved.settlement.destination == BUYER["address"]


async def test_resolve_dispute_as_release(manager):
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")
    await manager.raise_dispute(escrow.id, "buyer", "Wrong colour")

    with pytest.raises(ValidationError):
        await manager.resolve_dispute(escrow.id, "Seller was right", DisputeOutcome.RELEASE, "0xr")

    resolved = await manager.resolve_dispute(
        escrow.id, "Seller was right", DisputeOutcome.RELEASE, "0xr", destination="0xB0B"
    )
    assert resolved.status is EscrowStatus.RELEASED
    assert resolved.settlement.destination == "0xB0B"


async def test_resolve_requires_disputed(manager):
    escrow = await _purchase(manager)
    await manager.fund(escrow.id, "0xfund")
    with pytest.raises(InvalidState):
        await manager.resolve_dispute(escrow.id, "n/a", "refund", "0xr")
    with pytest.raises(ValidationError):
        await manager.resolve_dispute(escrow.id, "n/a", "split", "0xr")


# ------------------------------------------------------------------
# reads and documents
# ------------------------------------------------------------------


async def test_unknown_escrow_is_not_found(manager):
    with pytest.raises(NotFound):
        await manager.get("CUSTOM-NOPE")
    with pytest.raises(NotFound):
        await manager.fund("CUSTOM-NOPE", "0xfund")


async def test_list_newest_first_with_filters(manager):
    first = await _purchase(manager)
    second = await _purchase(manager, parties=[dict(BUYER, address="0xFeEd"), SELLER])
    await manager.fund(second.id, "0xfund")

    assert [e.id for e in await manager.list()] == [second.id, first.id]
    assert [e.id for e in await manager.list(status="funded")] == [second.id]
    assert [e.id for e in await manager.list(kind=EscrowKind.PURCHASE)] == [second.id, first.id]
    assert await manager.list(kind="trade") == []
    assert [e.id for e in await manager.list(party_address="0XFEED")] == [second.id]


async def test_list_by_property_address(manager):
    elm = await manager.create_earnest_money(
        amount="5000", buyer=BUYER, seller=SELLER, property_address="12 Elm Street, Springfield"
    )
    await manager.create_earnest_money(
        amount="8000", buyer=BUYER, seller=SELLER, property_address="4 Oak Lane"
    )
    await _purchase(manager)

    assert [e.id for e in await manager.list(property_address="elm street")] == [elm.id]
    assert len(await manager.list(property_address="")) == 3
    assert await manager.list(property_address="Birch") == []


async def test_list_rejects_unknown_status(manager):
    with pytest.raises(ValidationError):
        await manager.list(status="lost")


async def test_add_document(manager):
    escrow = await _purchase(manager)
    updated = await manager.add_document(escrow.id, "Invoice", "https://example.com/inv.pdf")

    assert [d.name for d in updated.documents] == ["Invoice"]
    with pytest.raises(ValidationError):
        await manager.add_document(escrow.id, "Blank", "")


async def test_distinct_escrows_mutate_concurrently(manager):
    a = await _purchase(manager)
    b = await _purchase(manager)

    funded = await asyncio.gather(manager.fund(a.id, "0xa"), manager.fund(b.id, "0xb"))
    assert {e.funding_ref for e in funded} == {"0xa", "0xb"}


async def test_resolve_without_dispute_record_is_invalid(manager):
    escrow = await _purchase(manager)

    def _corrupt(record):
        record.status = EscrowStatus.DISPUTED

    await manager.store.mutate(escrow.id, _corrupt)

    with pytest.raises(InvalidState, match="no dispute record"):
        await manager.resolve_dispute(escrow.id, "Split", DisputeOutcome.REFUND, "0xrefund")
    assert (await manager.get(escrow.id)).status is EscrowStatus.DISPUTED
