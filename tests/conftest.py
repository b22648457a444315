"""Shared fixtures: a manager on a throwaway profile and record factories."""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio

from universal_escrow.config import EscrowConfig
from universal_escrow.core.manager import EscrowManager
from universal_escrow.storage.models import (
    Condition,
    ConditionType,
    Escrow,
    EscrowKind,
    EscrowStatus,
    Party,
    ReleasePolicy,
)

BUYER = {"role": "buyer", "name": "Alice", "address": "0xA11CE"}
SELLER = {"role": "seller", "name": "Bob", "address": "0xB0B"}
CLIENT = {"name": "Carol", "address": "0xC4401"}
FREELANCER = {"name": "Dave", "address": "0xDA7E"}


@pytest_asyncio.fixture
async def manager(tmp_path):
    mgr = await EscrowManager.open(tmp_path, EscrowConfig())
    yield mgr
    await mgr.close()


@pytest.fixture
def make_escrow():
    """Build an in-memory escrow for engine tests that need no database."""

    def _make(
        conditions: list[Condition] | None = None,
        policy: ReleasePolicy = ReleasePolicy.ALL_CONDITIONS,
        required: list[str] | None = None,
        status: EscrowStatus = EscrowStatus.FUNDED,
        kind: EscrowKind = EscrowKind.GENERAL,
        amount: str = "1000",
    ) -> Escrow:
        return Escrow(
            id="GE-TEST",
            kind=kind,
            status=status,
            amount=Decimal(amount),
            chain="base",
            parties=[Party(**BUYER), Party(**SELLER)],
            conditions=conditions if conditions is not None else [
                Condition(description="Inspection", type=ConditionType.INSPECTION),
                Condition(description="Title", type=ConditionType.TITLE),
            ],
            release_requires=policy,
            required_approvals=required if required is not None else ["buyer", "seller"],
        )

    return _make
