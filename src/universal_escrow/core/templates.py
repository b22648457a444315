"""Escrow template catalog.

Templates are read-only configuration.  Creating an escrow copies a
template's conditions (with fresh ids) into the new record; nothing refers
back to the template afterwards except its name in ``Escrow.template``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from universal_escrow.config import TemplateConfig
from universal_escrow.core.errors import NotFound, ValidationError
from universal_escrow.storage.models import (
    Condition,
    ConditionType,
    EscrowKind,
    ReleasePolicy,
)


# Vertical -> escrow kind when a template does not name one.
VERTICAL_KINDS: dict[str, EscrowKind] = {
    "real_estate": EscrowKind.EARNEST_MONEY,
    "freelance": EscrowKind.MILESTONE,
    "commerce": EscrowKind.PURCHASE,
    "p2p": EscrowKind.TRADE,
    "digital": EscrowKind.PURCHASE,
    "services": EscrowKind.GENERAL,
    "custom": EscrowKind.GENERAL,
}


@dataclass(frozen=True)
class TemplateCondition:
    description: str
    type: ConditionType
    release_amount: Optional[Decimal] = None
    release_percentage: Optional[Decimal] = None
    deadline_days: Optional[int] = None

    def instantiate(self, now: datetime) -> Condition:
        return Condition(
            description=self.description,
            type=self.type,
            release_amount=self.release_amount,
            release_percentage=self.release_percentage,
            deadline=now + timedelta(days=self.deadline_days) if self.deadline_days else None,
        )


@dataclass(frozen=True)
class EscrowTemplate:
    """A named escrow recipe for one vertical."""

    name: str
    vertical: str
    kind: EscrowKind
    release_requires: ReleasePolicy
    conditions: tuple[TemplateCondition, ...] = ()
    recommended_roles: tuple[str, ...] = ()
    auto_release_days: Optional[int] = None
    description: str = ""

    @property
    def id_prefix(self) -> str:
        return self.vertical.upper().replace("_", "")[:2]

    def build_conditions(self, now: datetime) -> list[Condition]:
        return [c.instantiate(now) for c in self.conditions]


def _c(description: str, type_: ConditionType, **kwargs) -> TemplateCondition:
    return TemplateCondition(description=description, type=type_, **kwargs)


BUILTIN_TEMPLATES: dict[str, EscrowTemplate] = {
    t.name: t
    for t in (
        EscrowTemplate(
            name="real_estate_earnest_money",
            vertical="real_estate",
            kind=EscrowKind.EARNEST_MONEY,
            description="Buyer's earnest money held until inspection, financing, appraisal and title clear.",
            conditions=(
                _c("Home inspection satisfactory", ConditionType.INSPECTION, deadline_days=10),
                _c("Financing approved", ConditionType.FINANCING, deadline_days=21),
                _c("Appraisal at or above contract price", ConditionType.APPRAISAL, deadline_days=21),
                _c("Title clear", ConditionType.TITLE),
            ),
            release_requires=ReleasePolicy.ALL_CONDITIONS,
            recommended_roles=("buyer", "seller"),
        ),
        EscrowTemplate(
            name="rental_security_deposit",
            vertical="real_estate",
            kind=EscrowKind.SECURITY_DEPOSIT,
            description="Tenant deposit returned on landlord sign-off after move-out.",
            conditions=(
                _c("Lease term completed", ConditionType.MOVE_OUT),
                _c("Move-out inspection passed", ConditionType.INSPECTION),
            ),
            release_requires=ReleasePolicy.MAJORITY_APPROVAL,
            recommended_roles=("landlord",),
        ),
        EscrowTemplate(
            name="project_milestone",
            vertical="freelance",
            kind=EscrowKind.MILESTONE,
            description="Project budget paid out per milestone as each one is accepted.",
            conditions=(
                _c("Design approved", ConditionType.MILESTONE, release_percentage=Decimal("30")),
                _c("Build delivered", ConditionType.MILESTONE, release_percentage=Decimal("50")),
                _c("Final handoff", ConditionType.MILESTONE, release_percentage=Decimal("20")),
            ),
            release_requires=ReleasePolicy.ANY_PARTY,
            recommended_roles=("client",),
        ),
        EscrowTemplate(
            name="freelance_delivery",
            vertical="freelance",
            kind=EscrowKind.MILESTONE,
            description="Single deliverable with a revision round and client acceptance.",
            conditions=(
                _c("Work delivered", ConditionType.DELIVERY),
                _c("Revisions completed", ConditionType.REVISION),
                _c("Client accepts deliverable", ConditionType.APPROVAL),
            ),
            release_requires=ReleasePolicy.ALL_CONDITIONS,
            recommended_roles=("client",),
            auto_release_days=14,
        ),
        EscrowTemplate(
            name="commerce_purchase",
            vertical="commerce",
            kind=EscrowKind.PURCHASE,
            description="Goods purchase released after shipping, receipt and an inspection window.",
            conditions=(
                _c("Item shipped by seller", ConditionType.SHIPPING),
                _c("Item received by buyer", ConditionType.RECEIPT),
                _c("Inspection period", ConditionType.INSPECTION, deadline_days=3),
            ),
            release_requires=ReleasePolicy.ALL_CONDITIONS,
            recommended_roles=("buyer",),
            auto_release_days=7,
        ),
        EscrowTemplate(
            name="digital_goods",
            vertical="digital",
            kind=EscrowKind.PURCHASE,
            description="License or content sale released once the buyer confirms access.",
            conditions=(
                _c("Digital goods delivered", ConditionType.DELIVERY),
                _c("Buyer verifies access", ConditionType.VERIFICATION),
            ),
            release_requires=ReleasePolicy.ALL_CONDITIONS,
            recommended_roles=("buyer",),
            auto_release_days=3,
        ),
        EscrowTemplate(
            name="p2p_trade",
            vertical="p2p",
            kind=EscrowKind.TRADE,
            description="OTC swap settled when both counterparties approve.",
            conditions=(
                _c("Party A asset deposited", ConditionType.VERIFICATION),
                _c("Party B asset deposited", ConditionType.VERIFICATION),
            ),
            release_requires=ReleasePolicy.MAJORITY_APPROVAL,
            recommended_roles=("party_a", "party_b"),
        ),
        EscrowTemplate(
            name="services_retainer",
            vertical="services",
            kind=EscrowKind.GENERAL,
            description="Service engagement released on signed scope and mutual sign-off.",
            conditions=(
                _c("Statement of work signed", ConditionType.DOCUMENT),
                _c("Provider work accepted", ConditionType.APPROVAL),
            ),
            release_requires=ReleasePolicy.MAJORITY_APPROVAL,
            recommended_roles=("client", "provider"),
        ),
    )
}


def template_from_config(cfg: TemplateConfig) -> EscrowTemplate:
    """Turn a ``templates:`` entry from ``config.yaml`` into an :class:`EscrowTemplate`."""
    try:
        conditions = tuple(
            TemplateCondition(
                description=c.description,
                type=ConditionType(c.type),
                release_amount=Decimal(c.release_amount) if c.release_amount else None,
                release_percentage=Decimal(c.release_percentage) if c.release_percentage else None,
                deadline_days=c.deadline_days,
            )
            for c in cfg.conditions
        )
        kind = EscrowKind(cfg.kind) if cfg.kind else VERTICAL_KINDS.get(cfg.vertical, EscrowKind.GENERAL)
        policy = ReleasePolicy(cfg.release_requires)
    except ValueError as exc:
        raise ValidationError(
            f"Template '{cfg.name}' in config.yaml is invalid: {exc}",
            template=cfg.name,
        ) from exc

    return EscrowTemplate(
        name=cfg.name,
        vertical=cfg.vertical,
        kind=kind,
        release_requires=policy,
        conditions=conditions,
        recommended_roles=tuple(cfg.recommended_roles),
        auto_release_days=cfg.auto_release_days,
        description=cfg.description,
    )


class TemplateRegistry:
    """Built-in templates plus any declared in config; later entries win."""

    def __init__(self, extra: Iterable[EscrowTemplate] = ()) -> None:
        self._templates: dict[str, EscrowTemplate] = dict(BUILTIN_TEMPLATES)
        for tmpl in extra:
            self._templates[tmpl.name] = tmpl

    @classmethod
    def from_config(cls, templates: Iterable[TemplateConfig]) -> TemplateRegistry:
        return cls(template_from_config(t) for t in templates)

    def get(self, name: str) -> EscrowTemplate:
        tmpl = self._templates.get(name)
        if tmpl is None:
            raise NotFound(
                f"Template '{name}' not found. Available: {self.names()}",
                template=name,
            )
        return tmpl

    def names(self) -> list[str]:
        return sorted(self._templates)

    def all(self) -> list[EscrowTemplate]:
        return [self._templates[n] for n in self.names()]
