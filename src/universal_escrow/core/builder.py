"""Shorthand constructors for conditions passed to ``create_custom``.

Usage::

    await manager.create_custom(
        amount="5000",
        chain="base",
        parties=[Party(role="buyer", name="Alice"), Party(role="seller", name="Bob")],
        conditions=[
            ConditionBuilder.milestone("Phase 1", percentage="30"),
            ConditionBuilder.milestone("Phase 2", percentage="70"),
        ],
        release_requires=ReleasePolicy.ANY_PARTY,
    )
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Union

from universal_escrow.core.errors import ValidationError
from universal_escrow.core.release import to_decimal
from universal_escrow.storage.models import Condition, ConditionType, utcnow

Number = Union[str, int, Decimal]


class ConditionBuilder:
    """Factory methods returning fresh pending :class:`Condition` objects."""

    @staticmethod
    def milestone(
        description: str,
        percentage: Optional[Number] = None,
        amount: Optional[Number] = None,
        deadline: Optional[datetime] = None,
    ) -> Condition:
        if (percentage is None) == (amount is None):
            raise ValidationError(
                f"Milestone '{description}' needs exactly one of percentage or amount."
            )
        return Condition(
            description=description,
            type=ConditionType.MILESTONE,
            release_percentage=to_decimal(percentage, "percentage") if percentage is not None else None,
            release_amount=to_decimal(amount, "amount") if amount is not None else None,
            deadline=deadline,
        )

    @staticmethod
    def inspection(description: str = "Inspection passed", within_days: Optional[int] = None) -> Condition:
        return Condition(
            description=description,
            type=ConditionType.INSPECTION,
            deadline=_in_days(within_days),
        )

    @staticmethod
    def delivery(description: str = "Delivered", within_days: Optional[int] = None) -> Condition:
        return Condition(
            description=description,
            type=ConditionType.DELIVERY,
            deadline=_in_days(within_days),
        )

    @staticmethod
    def approval(role: str, description: Optional[str] = None) -> Condition:
        return Condition(
            description=description or f"{role} approves release",
            type=ConditionType.APPROVAL,
            metadata={"role": role},
        )

    @staticmethod
    def document(name: str) -> Condition:
        return Condition(
            description=f"Document provided: {name}",
            type=ConditionType.DOCUMENT,
            metadata={"document": name},
        )

    @staticmethod
    def deadline(days: int, description: Optional[str] = None) -> Condition:
        if days <= 0:
            raise ValidationError(f"Deadline must be at least one day, got {days}.")
        return Condition(
            description=description or f"Auto-release after {days} days if no disputes",
            type=ConditionType.DEADLINE,
            deadline=_in_days(days),
        )

    @staticmethod
    def custom(description: str, **metadata: Any) -> Condition:
        return Condition(
            description=description,
            type=ConditionType.CUSTOM,
            metadata=metadata,
        )


def _in_days(days: Optional[int]) -> Optional[datetime]:
    if not days:
        return None
    return utcnow() + timedelta(days=days)
