"""Release calculator: milestone payouts and allocation checks.

Percentages always resolve against the escrow's original total, never a
remaining balance.  A mismatch between allocations and the total is an error;
nothing is rounded away silently.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from universal_escrow.core.errors import ValidationError
from universal_escrow.storage.models import Condition, ConditionType

DEFAULT_TOLERANCE = Decimal("0.01")
DEFAULT_QUANTUM = Decimal("0.01")

_HUNDRED = Decimal("100")


def to_decimal(value: Union[str, int, Decimal], field: str = "amount") -> Decimal:
    """Parse a monetary value, rejecting NaN and infinities."""
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} '{value}' is not a number.", field=field) from exc
    if not result.is_finite():
        raise ValidationError(f"{field} '{value}' is not a finite number.", field=field)
    return result


def require_positive(amount: Union[str, int, Decimal], field: str = "amount") -> Decimal:
    value = to_decimal(amount, field)
    if value <= 0:
        raise ValidationError(f"{field} must be greater than zero, got {value}.", field=field)
    return value


def payout_for(condition: Condition, total: Decimal, quantum: Decimal = DEFAULT_QUANTUM) -> Decimal:
    """Absolute payout of one allocation-bearing condition."""
    if condition.release_amount is not None:
        return condition.release_amount
    if condition.release_percentage is not None:
        raw = total * condition.release_percentage / _HUNDRED
        return raw.quantize(quantum, rounding=ROUND_HALF_UP)
    raise ValidationError(
        f"Condition {condition.id} has no release amount or percentage.",
        condition_id=condition.id,
    )


def compute_payouts(
    total: Decimal,
    conditions: Iterable[Condition],
    quantum: Decimal = DEFAULT_QUANTUM,
) -> dict[str, Decimal]:
    """Map condition id to payout for every condition carrying an allocation."""
    return {
        c.id: payout_for(c, total, quantum)
        for c in conditions
        if c.has_allocation
    }


def check_allocation_fields(condition: Condition) -> None:
    """A condition may carry a fixed amount or a percentage, not both."""
    if condition.release_amount is not None and condition.release_percentage is not None:
        raise ValidationError(
            f"Condition '{condition.description}' sets both releaseAmount and "
            f"releasePercentage; choose one.",
            condition_id=condition.id,
        )
    if not condition.has_allocation:
        return
    if condition.type != ConditionType.MILESTONE:
        raise ValidationError(
            f"Condition '{condition.description}' has type '{condition.type.value}'; "
            f"only milestone conditions may carry a release allocation.",
            condition_id=condition.id,
        )
    if condition.release_amount is not None and condition.release_amount <= 0:
        raise ValidationError(
            f"Milestone '{condition.description}' release amount must be positive.",
            condition_id=condition.id,
        )
    if condition.release_percentage is not None and not (
        0 < condition.release_percentage <= _HUNDRED
    ):
        raise ValidationError(
            f"Milestone '{condition.description}' percentage must be in (0, 100].",
            condition_id=condition.id,
        )


def validate_allocations(
    total: Decimal,
    conditions: list[Condition],
    tolerance: Decimal = DEFAULT_TOLERANCE,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> dict[str, Decimal]:
    """Check milestone allocations against the escrow total.

    Milestones without any allocation are plain release gates and are
    allowed, but only when no milestone carries one.  Returns the payouts.
    """
    for cond in conditions:
        check_allocation_fields(cond)

    milestones = [c for c in conditions if c.type == ConditionType.MILESTONE]
    allocated = [c for c in milestones if c.has_allocation]
    if not allocated:
        return {}

    missing = [c for c in milestones if not c.has_allocation]
    if missing:
        raise ValidationError(
            f"Milestone '{missing[0].description}' has no release amount or percentage "
            f"while other milestones do.",
            condition_id=missing[0].id,
        )

    payouts = compute_payouts(total, allocated, quantum)
    allocated_sum = sum(payouts.values(), Decimal("0"))
    if abs(allocated_sum - total) > tolerance:
        raise ValidationError(
            f"Milestone amounts ({allocated_sum}) don't match total ({total}).",
            computed_sum=allocated_sum,
            expected_total=total,
        )
    return payouts
