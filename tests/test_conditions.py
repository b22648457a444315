import pytest

from universal_escrow.core import approvals, conditions
from universal_escrow.core.errors import AuthorizationError, InvalidState, NotFound
from universal_escrow.storage.models import (
    Condition,
    ConditionStatus,
    ConditionType,
    EscrowKind,
    EscrowStatus,
    ReleasePolicy,
)


def _ids(escrow):
    return [c.id for c in escrow.conditions]


def test_satisfy_records_actor_and_evidence(make_escrow):
    escrow = make_escrow()
    first, _ = _ids(escrow)

    cond = conditions.satisfy(escrow, first, "inspector", "https://example.com/report.pdf")

    assert cond.status is ConditionStatus.SATISFIED
    assert cond.satisfied_by == "inspector"
    assert cond.evidence == "https://example.com/report.pdf"
    assert cond.satisfied_at is not None


def test_condition_leaves_pending_only_once(make_escrow):
    escrow = make_escrow()
    first, _ = _ids(escrow)
    conditions.satisfy(escrow, first, "inspector")

    with pytest.raises(InvalidState) as info:
        conditions.waive(escrow, first, "buyer")
    assert info.value.context["condition_status"] == "satisfied"

    with pytest.raises(InvalidState):
        conditions.fail(escrow, first, "changed my mind")


def test_unknown_condition_is_not_found(make_escrow):
    with pytest.raises(NotFound):
        conditions.satisfy(make_escrow(), "missing", "x")


def test_all_conditions_gate_advances_funded_escrow(make_escrow):
    escrow = make_escrow()
    first, second = _ids(escrow)

    conditions.satisfy(escrow, first, "inspector")
    assert escrow.status is EscrowStatus.FUNDED

    conditions.waive(escrow, second, "buyer")
    assert escrow.status is EscrowStatus.PENDING_RELEASE


def test_gating_does_not_fire_before_funding(make_escrow):
    escrow = make_escrow(status=EscrowStatus.CREATED)
    for cid in _ids(escrow):
        conditions.satisfy(escrow, cid, "x")

    assert escrow.status is EscrowStatus.CREATED
    assert conditions.release_authorized(escrow)


def test_all_conditions_needs_at_least_one_condition(make_escrow):
    escrow = make_escrow(conditions=[])
    assert not conditions.release_authorized(escrow)
    assert not conditions.advance_if_ready(escrow)


def test_majority_approval_needs_every_required_role(make_escrow):
    escrow = make_escrow(policy=ReleasePolicy.MAJORITY_APPROVAL)

    approvals.approve(escrow, "buyer")
    assert escrow.status is EscrowStatus.FUNDED

    approvals.approve(escrow, "seller", "looks good")
    assert escrow.status is EscrowStatus.PENDING_RELEASE


def test_majority_approval_with_no_required_roles_never_releases(make_escrow):
    escrow = make_escrow(policy=ReleasePolicy.MAJORITY_APPROVAL, required=[])
    assert not conditions.release_authorized(escrow)


def test_conditions_do_not_gate_majority_approval(make_escrow):
    escrow = make_escrow(policy=ReleasePolicy.MAJORITY_APPROVAL, required=["buyer"])
    for cid in _ids(escrow):
        conditions.satisfy(escrow, cid, "x")
    assert escrow.status is EscrowStatus.FUNDED

    approvals.approve(escrow, "buyer")
    assert escrow.status is EscrowStatus.PENDING_RELEASE


def test_any_party_waits_for_every_milestone(make_escrow):
    escrow = make_escrow(
        policy=ReleasePolicy.ANY_PARTY,
        conditions=[
            Condition(description="M1", type=ConditionType.MILESTONE),
            Condition(description="M2", type=ConditionType.MILESTONE),
            Condition(description="Paperwork", type=ConditionType.DOCUMENT),
        ],
    )
    m1, m2, _ = _ids(escrow)

    conditions.satisfy(escrow, m1, "client")
    assert escrow.status is EscrowStatus.FUNDED

    conditions.satisfy(escrow, m2, "client")
    assert escrow.status is EscrowStatus.PENDING_RELEASE


def test_any_party_waived_milestone_does_not_count(make_escrow):
    escrow = make_escrow(
        policy=ReleasePolicy.ANY_PARTY,
        conditions=[Condition(description="M1", type=ConditionType.MILESTONE)],
    )
    conditions.waive(escrow, _ids(escrow)[0], "client")
    assert escrow.status is EscrowStatus.FUNDED


def test_earnest_money_failure_marks_refund_pending(make_escrow):
    escrow = make_escrow(kind=EscrowKind.EARNEST_MONEY)
    first, _ = _ids(escrow)

    conditions.fail(escrow, first, "foundation cracked")

    assert escrow.release_to_role == "buyer"
    assert escrow.status is EscrowStatus.FUNDED
    assert conditions.refund_pending(escrow)


def test_earnest_money_failure_pulls_back_from_pending_release(make_escrow):
    escrow = make_escrow(
        kind=EscrowKind.EARNEST_MONEY,
        policy=ReleasePolicy.MAJORITY_APPROVAL,
        conditions=[Condition(description="Inspection", type=ConditionType.INSPECTION)],
    )
    approvals.approve(escrow, "buyer")
    approvals.approve(escrow, "seller")
    assert escrow.status is EscrowStatus.PENDING_RELEASE

    conditions.fail(escrow, _ids(escrow)[0], "foundation cracked")

    assert escrow.status is EscrowStatus.FUNDED
    assert escrow.release_to_role == "buyer"
    assert not conditions.release_authorized(escrow)


def test_complete_approvals_release_under_any_policy(make_escrow):
    escrow = make_escrow(policy=ReleasePolicy.ALL_CONDITIONS)

    approvals.approve(escrow, "buyer")
    assert escrow.status is EscrowStatus.FUNDED
    assert not conditions.policy_met(escrow)

    approvals.approve(escrow, "seller")
    assert escrow.status is EscrowStatus.PENDING_RELEASE


def test_pending_refund_outweighs_complete_approvals(make_escrow):
    escrow = make_escrow(kind=EscrowKind.EARNEST_MONEY)
    conditions.fail(escrow, _ids(escrow)[0], "appraisal short")

    approvals.approve(escrow, "buyer")
    approvals.approve(escrow, "seller")

    assert escrow.status is EscrowStatus.FUNDED


def test_failure_on_other_kinds_just_blocks(make_escrow):
    escrow = make_escrow()
    first, _ = _ids(escrow)
    conditions.fail(escrow, first, "no")

    assert escrow.release_to_role is None
    assert not conditions.release_authorized(escrow)


@pytest.mark.parametrize(
    "status",
    [EscrowStatus.DISPUTED, EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.CANCELLED],
)
def test_frozen_statuses_reject_condition_and_approval_changes(make_escrow, status):
    escrow = make_escrow(status=status)
    first, _ = _ids(escrow)

    with pytest.raises(InvalidState):
        conditions.satisfy(escrow, first, "x")
    with pytest.raises(InvalidState):
        approvals.approve(escrow, "buyer")


def test_approval_by_unrequired_role_is_rejected(make_escrow):
    escrow = make_escrow(required=["buyer"])
    with pytest.raises(AuthorizationError) as info:
        approvals.approve(escrow, "seller")
    assert info.value.context["role"] == "seller"
    assert escrow.approvals == []


def test_duplicate_approval_is_rejected(make_escrow):
    escrow = make_escrow(policy=ReleasePolicy.MAJORITY_APPROVAL)
    approvals.approve(escrow, "buyer")

    with pytest.raises(AuthorizationError, match="already approved"):
        approvals.approve(escrow, "buyer")
    assert len(escrow.approvals) == 1


def test_quorum_progress_keeps_required_order(make_escrow):
    escrow = make_escrow(policy=ReleasePolicy.MAJORITY_APPROVAL)
    approvals.approve(escrow, "seller")

    done, waiting = approvals.quorum_progress(escrow)
    assert done == ["seller"]
    assert waiting == ["buyer"]


def test_approval_in_pending_release_is_recorded(make_escrow):
    escrow = make_escrow(status=EscrowStatus.PENDING_RELEASE)
    approvals.approve(escrow, "buyer")

    assert escrow.approved_roles() == {"buyer"}
    assert escrow.status is EscrowStatus.PENDING_RELEASE


def test_pending_refund_blocks_release_gate(make_escrow):
    escrow = make_escrow(status=EscrowStatus.CREATED)
    for cid in _ids(escrow):
        conditions.satisfy(escrow, cid, "x")
    escrow.release_to_role = "buyer"
    escrow.status = EscrowStatus.FUNDED

    assert not conditions.advance_if_ready(escrow)
    assert escrow.status is EscrowStatus.FUNDED
