"""Universal Escrow storage layer -- async SQLite database, escrow store and Pydantic models."""

from universal_escrow.storage.database import Database, get_database
from universal_escrow.storage.models import (
    Approval,
    Condition,
    ConditionStatus,
    ConditionType,
    Dispute,
    DisputeOutcome,
    Document,
    Escrow,
    EscrowKind,
    EscrowStatus,
    Party,
    ReleasePolicy,
    Settlement,
    StandardRole,
    Tranche,
)
from universal_escrow.storage.store import EscrowStore

__all__ = [
    "Database",
    "get_database",
    "EscrowStore",
    "Approval",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "Dispute",
    "DisputeOutcome",
    "Document",
    "Escrow",
    "EscrowKind",
    "EscrowStatus",
    "Party",
    "ReleasePolicy",
    "Settlement",
    "StandardRole",
    "Tranche",
]
