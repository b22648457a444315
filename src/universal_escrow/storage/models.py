"""Pydantic models for escrow records.

Attributes are snake_case in Python and camelCase on disk and on the wire
(``releaseRequires``, ``requiredApprovals``, ``createdAt`` ...).  Monetary
amounts are :class:`~decimal.Decimal` and serialize as strings so no precision
is lost in JSON.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EscrowKind(str, Enum):
    EARNEST_MONEY = "earnest_money"
    SECURITY_DEPOSIT = "security_deposit"
    MILESTONE = "milestone"
    PURCHASE = "purchase"
    TRADE = "trade"
    GENERAL = "general"


class EscrowStatus(str, Enum):
    CREATED = "created"
    FUNDED = "funded"
    PENDING_RELEASE = "pending_release"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.CANCELLED)


class ReleasePolicy(str, Enum):
    ALL_CONDITIONS = "all_conditions"
    MAJORITY_APPROVAL = "majority_approval"
    ANY_PARTY = "any_party"
    CONDITION_BASED = "condition_based"


class ConditionType(str, Enum):
    # Real estate
    INSPECTION = "inspection"
    FINANCING = "financing"
    APPRAISAL = "appraisal"
    TITLE = "title"
    CLOSING = "closing"
    MOVE_OUT = "move_out"
    # Freelance / milestones
    MILESTONE = "milestone"
    DELIVERY = "delivery"
    APPROVAL = "approval"
    REVISION = "revision"
    # Commerce
    SHIPPING = "shipping"
    RECEIPT = "receipt"
    VERIFICATION = "verification"
    # Document / time based
    DOCUMENT = "document"
    DEADLINE = "deadline"
    CUSTOM = "custom"


class ConditionStatus(str, Enum):
    PENDING = "pending"
    SATISFIED = "satisfied"
    WAIVED = "waived"
    FAILED = "failed"


class DisputeOutcome(str, Enum):
    RELEASE = "release"
    REFUND = "refund"


class StandardRole(str, Enum):
    DEPOSITOR = "depositor"
    RECIPIENT = "recipient"
    BUYER = "buyer"
    SELLER = "seller"
    CLIENT = "client"
    PROVIDER = "provider"
    LANDLORD = "landlord"
    TENANT = "tenant"
    AGENT = "agent"
    TITLE_COMPANY = "title_company"
    ARBITER = "arbiter"
    WITNESS = "witness"
    LENDER = "lender"
    BORROWER = "borrower"
    PARTY_A = "party_a"
    PARTY_B = "party_b"
    MARKETPLACE = "marketplace"
    PLATFORM = "platform"


# Roles whose settlement address receives a refund, in lookup order.
PAYER_ROLES: tuple[str, ...] = (
    StandardRole.BUYER.value,
    StandardRole.TENANT.value,
    StandardRole.DEPOSITOR.value,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_condition_id() -> str:
    return uuid.uuid4().hex[:12]


def new_escrow_address() -> str:
    """Placeholder custody address; a deployed contract would supply the real one."""
    return "0x" + secrets.token_hex(20)


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class Party(_Record):
    role: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None  # settlement address


class Condition(_Record):
    id: str = Field(default_factory=new_condition_id)
    description: str
    type: ConditionType = ConditionType.CUSTOM
    status: ConditionStatus = ConditionStatus.PENDING
    deadline: Optional[datetime] = None
    release_amount: Optional[Decimal] = None
    release_percentage: Optional[Decimal] = None
    satisfied_at: Optional[datetime] = None
    satisfied_by: Optional[str] = None
    evidence: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def has_allocation(self) -> bool:
        return self.release_amount is not None or self.release_percentage is not None

    @property
    def is_resolved(self) -> bool:
        """Satisfied or waived, i.e. no longer blocking release."""
        return self.status in (ConditionStatus.SATISFIED, ConditionStatus.WAIVED)


class Approval(_Record):
    role: str
    approved: bool = True
    timestamp: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class Dispute(_Record):
    raised_by: str
    reason: str
    raised_at: datetime = Field(default_factory=utcnow)
    resolution: Optional[str] = None
    outcome: Optional[DisputeOutcome] = None
    resolved_at: Optional[datetime] = None


class Settlement(_Record):
    destination: str
    reference: str
    settled_at: datetime = Field(default_factory=utcnow)


class Tranche(_Record):
    """One recorded movement of escrowed funds."""

    condition_id: Optional[str] = None  # None == remaining balance
    amount: Decimal
    destination: str
    reference: str
    released_at: datetime = Field(default_factory=utcnow)


class Document(_Record):
    name: str
    url: str
    uploaded_at: datetime = Field(default_factory=utcnow)


class Escrow(_Record):
    """An escrow record.  ``amount`` never changes after creation."""

    id: str
    kind: EscrowKind
    status: EscrowStatus = EscrowStatus.CREATED
    amount: Decimal
    chain: str
    escrow_address: str = Field(default_factory=new_escrow_address)
    parties: list[Party] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    release_requires: ReleasePolicy = ReleasePolicy.ALL_CONDITIONS
    required_approvals: list[str] = Field(default_factory=list)
    approvals: list[Approval] = Field(default_factory=list)
    dispute: Optional[Dispute] = None
    settlement: Optional[Settlement] = None
    tranches: list[Tranche] = Field(default_factory=list)
    funding_ref: Optional[str] = None
    funded_at: Optional[datetime] = None
    release_to_role: Optional[str] = None
    documents: list[Document] = Field(default_factory=list)
    template: Optional[str] = None
    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    funding_deadline: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # -- lookups -----------------------------------------------------------

    def find_condition(self, condition_id: str) -> Optional[Condition]:
        for cond in self.conditions:
            if cond.id == condition_id:
                return cond
        return None

    def find_party(self, role: str) -> Optional[Party]:
        for party in self.parties:
            if party.role == role:
                return party
        return None

    def payer(self) -> Optional[Party]:
        """The refund-eligible party: first payer role with a settlement address."""
        for role in PAYER_ROLES:
            party = self.find_party(role)
            if party is not None and party.address:
                return party
        return None

    def approved_roles(self) -> set[str]:
        return {a.role for a in self.approvals if a.approved}

    def milestones(self) -> list[Condition]:
        return [c for c in self.conditions if c.type == ConditionType.MILESTONE]

    def released_condition_ids(self) -> set[str]:
        return {t.condition_id for t in self.tranches if t.condition_id is not None}

    @property
    def settled_amount(self) -> Decimal:
        return sum((t.amount for t in self.tranches), Decimal("0"))

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - self.settled_amount

    def touch(self) -> None:
        self.updated_at = utcnow()

    # -- serialization -----------------------------------------------------

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> Escrow:
        return cls.model_validate_json(raw)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
