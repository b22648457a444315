"""Escrow lifecycle manager used by the CLI, the JSON API and SDK callers.

The manager owns the state machine.  Every mutating operation runs as one
:meth:`EscrowStore.mutate` call: the record is loaded, checked against the
operation's guards, changed on a private copy and written back only if
nothing raised.  The manager never moves funds; callers hand it settlement
references for transfers they have already made.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as SchemaError

from universal_escrow.chains import get_chain
from universal_escrow.config import DefaultsConfig, EscrowConfig, ReleaseConfig, load_or_default
from universal_escrow.core import approvals as approval_engine
from universal_escrow.core import conditions as condition_engine
from universal_escrow.core.builder import ConditionBuilder
from universal_escrow.core.errors import InvalidState, ValidationError
from universal_escrow.core.release import payout_for, require_positive, validate_allocations
from universal_escrow.core.templates import TemplateRegistry
from universal_escrow.storage.database import Database, get_database
from universal_escrow.storage.models import (
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
    Tranche,
    utcnow,
)
from universal_escrow.storage.store import EscrowStore

logger = logging.getLogger("universal_escrow.core.manager")

PartyInput = Union[Party, dict]
ConditionInput = Union[Condition, dict]
Number = Union[str, int, Decimal]

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def new_escrow_id(prefix: str) -> str:
    """``<PREFIX>-<base36 ms timestamp><4 hex>``, e.g. ``MS-LZ3K9Q1A7F2C``."""
    stamp = _base36(int(time.time() * 1000))
    return f"{prefix}-{stamp}{secrets.token_hex(2).upper()}"


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} must not be empty.", field=field)
    return str(value).strip()


def _require_status(escrow: Escrow, operation: str, *allowed: EscrowStatus) -> None:
    if escrow.status not in allowed:
        raise InvalidState(
            f"Cannot {operation} escrow {escrow.id}: status is '{escrow.status.value}', "
            f"expected {' or '.join(s.value for s in allowed)}.",
            escrow_id=escrow.id,
            operation=operation,
            status=escrow.status.value,
        )


def _party(value: PartyInput, role: Optional[str] = None) -> Party:
    if isinstance(value, dict) and role is not None:
        value = {**value, "role": role}
    try:
        party = value.model_copy() if isinstance(value, Party) else Party.model_validate(value)
    except SchemaError as exc:
        raise ValidationError(f"Bad party {value!r}: {exc.errors()[0]['msg']}") from exc
    if role is not None:
        party.role = role
    return party


def _fresh_condition(value: ConditionInput) -> Condition:
    """Copy a caller-supplied condition as a new pending condition with its own id."""
    try:
        src = value if isinstance(value, Condition) else Condition.model_validate(value)
    except SchemaError as exc:
        raise ValidationError(f"Bad condition {value!r}: {exc.errors()[0]['msg']}") from exc
    return Condition(
        description=src.description,
        type=src.type,
        deadline=src.deadline,
        release_amount=src.release_amount,
        release_percentage=src.release_percentage,
        metadata=dict(src.metadata),
    )


class EscrowManager:
    """Creates escrows and drives them through their lifecycle."""

    def __init__(
        self,
        store: EscrowStore,
        templates: TemplateRegistry | None = None,
        release: ReleaseConfig | None = None,
        defaults: DefaultsConfig | None = None,
    ) -> None:
        self.store = store
        self.templates = templates or TemplateRegistry()
        self.release_config = release or ReleaseConfig()
        self.defaults = defaults or DefaultsConfig()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def open(cls, profile_dir: Path, config: EscrowConfig | None = None) -> EscrowManager:
        """Connect to the profile's database and build a manager from its config."""
        config = config or load_or_default(profile_dir)
        db = get_database(
            profile_dir,
            filename=config.storage.db_filename,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
        await db.connect()
        return cls(
            EscrowStore(db, max_retries=config.storage.max_retries),
            templates=TemplateRegistry.from_config(config.templates),
            release=config.release,
            defaults=config.defaults,
        )

    @property
    def db(self) -> Database:
        return self.store.db

    async def close(self) -> None:
        await self.store.db.close()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _assemble(
        self,
        *,
        prefix: str,
        kind: EscrowKind,
        amount: Number,
        chain: Optional[str],
        parties: Iterable[PartyInput],
        conditions: list[Condition],
        release_requires: ReleasePolicy,
        required_approvals: Iterable[str],
        template: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Escrow:
        """Validate and persist a new escrow in status ``created``."""
        total = require_positive(amount)

        chain = chain or self.defaults.chain
        try:
            get_chain(chain)
        except KeyError as exc:
            raise ValidationError(str(exc.args[0]), chain=chain) from exc

        party_list = [_party(p) for p in parties]
        if not party_list:
            raise ValidationError("An escrow needs at least one party.")
        roles = [p.role.strip() for p in party_list]
        if any(not r for r in roles):
            raise ValidationError("Every party needs a role.")
        duplicates = sorted({r for r in roles if roles.count(r) > 1})
        if duplicates:
            raise ValidationError(
                f"Party roles must be distinct; repeated: {', '.join(duplicates)}.",
                roles=",".join(duplicates),
            )

        required = list(dict.fromkeys(required_approvals))
        unknown = [r for r in required if r not in roles]
        if unknown:
            raise ValidationError(
                f"Required approval role(s) {', '.join(unknown)} match no party.",
                roles=",".join(unknown),
            )

        validate_allocations(
            total,
            conditions,
            tolerance=self.release_config.tolerance,
            quantum=self.release_config.quantum,
        )

        now = utcnow()
        escrow = Escrow(
            id=new_escrow_id(prefix),
            kind=kind,
            amount=total,
            chain=chain,
            parties=party_list,
            conditions=conditions,
            release_requires=release_requires,
            required_approvals=required,
            template=template,
            notes=notes,
            metadata=dict(metadata or {}),
            funding_deadline=now + timedelta(days=self.defaults.funding_deadline_days),
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(escrow)
        logger.info(
            f"Escrow created: {escrow.id} {kind.value} {total} {self.defaults.currency} "
            f"on {chain} ({len(conditions)} conditions, {release_requires.value})"
        )
        return escrow

    async def create_from_template(
        self,
        template_name: str,
        amount: Number,
        parties: Iterable[PartyInput],
        chain: Optional[str] = None,
        custom_conditions: Optional[Iterable[ConditionInput]] = None,
        auto_release_days: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Escrow:
        """Create an escrow from a registered template.

        The template's conditions are copied with fresh ids, custom
        conditions are appended, and an auto-release deadline condition is
        added when the caller or the template asks for one.
        """
        tmpl = self.templates.get(template_name)
        now = utcnow()
        conditions = tmpl.build_conditions(now)
        conditions.extend(_fresh_condition(c) for c in custom_conditions or ())

        days = auto_release_days or tmpl.auto_release_days
        if days:
            conditions.append(ConditionBuilder.deadline(days))

        return await self._assemble(
            prefix=tmpl.id_prefix,
            kind=tmpl.kind,
            amount=amount,
            chain=chain,
            parties=parties,
            conditions=conditions,
            release_requires=tmpl.release_requires,
            required_approvals=tmpl.recommended_roles,
            template=tmpl.name,
            notes=f"Created from template: {tmpl.name}",
            metadata=metadata,
        )

    create = create_from_template

    async def create_custom(
        self,
        amount: Number,
        parties: Iterable[PartyInput],
        conditions: Iterable[ConditionInput],
        chain: Optional[str] = None,
        release_requires: ReleasePolicy | str = ReleasePolicy.ALL_CONDITIONS,
        required_approvals: Optional[Iterable[str]] = None,
        kind: EscrowKind | str = EscrowKind.GENERAL,
        auto_release_days: Optional[int] = None,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Escrow:
        """Create an escrow from caller-supplied conditions and policy.

        Without explicit ``required_approvals`` every party must approve,
        except under ``condition_based`` where conditions alone decide.
        """
        try:
            policy = ReleasePolicy(release_requires)
            escrow_kind = EscrowKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Bad escrow settings: {exc}") from exc
        party_list = [_party(p) for p in parties]
        built = [_fresh_condition(c) for c in conditions]
        if auto_release_days:
            built.append(ConditionBuilder.deadline(auto_release_days))

        if required_approvals is None:
            required: list[str] = (
                [] if policy == ReleasePolicy.CONDITION_BASED else [p.role for p in party_list]
            )
        else:
            required = list(required_approvals)

        return await self._assemble(
            prefix="CUSTOM",
            kind=escrow_kind,
            amount=amount,
            chain=chain,
            parties=party_list,
            conditions=built,
            release_requires=policy,
            required_approvals=required,
            notes=notes,
            metadata=metadata,
        )

    async def create_earnest_money(
        self,
        amount: Number,
        buyer: PartyInput,
        seller: PartyInput,
        chain: Optional[str] = None,
        agent: Optional[PartyInput] = None,
        property_address: Optional[str] = None,
        closing_date: Optional[datetime] = None,
        conditions: Optional[Iterable[ConditionInput]] = None,
    ) -> Escrow:
        """Real-estate earnest money: inspection, financing and title must clear."""
        parties = [_party(buyer, "buyer"), _party(seller, "seller")]
        if agent is not None:
            parties.append(_party(agent, "agent"))

        now = utcnow()
        built = [
            Condition(
                description="Home inspection satisfactory",
                type=ConditionType.INSPECTION,
                deadline=now + timedelta(days=10),
            ),
            Condition(
                description="Financing approved",
                type=ConditionType.FINANCING,
                deadline=now + timedelta(days=21),
            ),
            Condition(description="Title clear", type=ConditionType.TITLE),
        ]
        built.extend(_fresh_condition(c) for c in conditions or ())

        metadata: dict[str, Any] = {}
        if property_address:
            metadata["property_address"] = property_address
        if closing_date:
            metadata["closing_date"] = closing_date.isoformat()

        return await self._assemble(
            prefix="EM",
            kind=EscrowKind.EARNEST_MONEY,
            amount=amount,
            chain=chain,
            parties=parties,
            conditions=built,
            release_requires=ReleasePolicy.ALL_CONDITIONS,
            required_approvals=["buyer", "seller"],
            metadata=metadata,
        )

    async def create_security_deposit(
        self,
        amount: Number,
        landlord: PartyInput,
        tenant: PartyInput,
        lease_end_date: datetime,
        chain: Optional[str] = None,
        property_address: Optional[str] = None,
    ) -> Escrow:
        """Rental deposit: landlord sign-off releases it back to the tenant."""
        built = [
            Condition(
                description="Lease term completed",
                type=ConditionType.MOVE_OUT,
                deadline=lease_end_date,
            ),
            Condition(description="Move-out inspection passed", type=ConditionType.INSPECTION),
        ]
        metadata: dict[str, Any] = {"lease_end_date": lease_end_date.isoformat()}
        if property_address:
            metadata["property_address"] = property_address

        return await self._assemble(
            prefix="SD",
            kind=EscrowKind.SECURITY_DEPOSIT,
            amount=amount,
            chain=chain,
            parties=[_party(landlord, "landlord"), _party(tenant, "tenant")],
            conditions=built,
            release_requires=ReleasePolicy.MAJORITY_APPROVAL,
            required_approvals=["landlord"],
            metadata=metadata,
        )

    async def create_general(
        self,
        amount: Number,
        depositor: PartyInput,
        recipient: PartyInput,
        chain: Optional[str] = None,
        conditions: Optional[Iterable[ConditionInput]] = None,
        description: Optional[str] = None,
    ) -> Escrow:
        """Two-party hold.  With no conditions the depositor's approval releases it."""
        built = [_fresh_condition(c) for c in conditions or ()]
        policy = ReleasePolicy.ALL_CONDITIONS if built else ReleasePolicy.MAJORITY_APPROVAL
        return await self._assemble(
            prefix="GE",
            kind=EscrowKind.GENERAL,
            amount=amount,
            chain=chain,
            parties=[_party(depositor, "depositor"), _party(recipient, "recipient")],
            conditions=built,
            release_requires=policy,
            required_approvals=["depositor"],
            notes=description,
        )

    async def create_milestone(
        self,
        amount: Number,
        client: PartyInput,
        freelancer: PartyInput,
        project_name: str,
        milestones: Iterable[ConditionInput],
        chain: Optional[str] = None,
    ) -> Escrow:
        """Freelance project paid per milestone; each one releases independently."""
        built = []
        for m in milestones:
            cond = _fresh_condition(m)
            cond.type = ConditionType.MILESTONE
            built.append(cond)
        if not built:
            raise ValidationError("A milestone escrow needs at least one milestone.")

        return await self._assemble(
            prefix="MS",
            kind=EscrowKind.MILESTONE,
            amount=amount,
            chain=chain,
            parties=[_party(client, "depositor"), _party(freelancer, "recipient")],
            conditions=built,
            release_requires=ReleasePolicy.ANY_PARTY,
            required_approvals=["depositor"],
            notes=f"Project: {project_name}",
        )

    async def create_purchase(
        self,
        amount: Number,
        buyer: PartyInput,
        seller: PartyInput,
        item_description: str,
        chain: Optional[str] = None,
        requires_shipping: bool = False,
        inspection_period_days: Optional[int] = None,
    ) -> Escrow:
        """Goods purchase; the buyer's own sign-off is always the last gate."""
        built: list[Condition] = []
        if requires_shipping:
            built.append(Condition(description="Item shipped by seller", type=ConditionType.SHIPPING))
            built.append(Condition(description="Item received by buyer", type=ConditionType.RECEIPT))
        if inspection_period_days:
            built.append(
                ConditionBuilder.inspection(
                    f"Inspection period ({inspection_period_days} days)",
                    within_days=inspection_period_days,
                )
            )
        built.append(ConditionBuilder.approval("buyer", "Buyer approves release"))

        return await self._assemble(
            prefix="PU",
            kind=EscrowKind.PURCHASE,
            amount=amount,
            chain=chain,
            parties=[_party(buyer, "buyer"), _party(seller, "seller")],
            conditions=built,
            release_requires=ReleasePolicy.ALL_CONDITIONS,
            required_approvals=["buyer"],
            notes=item_description,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, escrow_id: str) -> Escrow:
        """Fetch one escrow.  Raises :class:`NotFound` for an unknown id."""
        return await self.store.require(escrow_id)

    async def list(
        self,
        kind: EscrowKind | str | None = None,
        status: EscrowStatus | str | None = None,
        party_address: str | None = None,
        property_address: str | None = None,
    ) -> list[Escrow]:
        """List escrows newest first; address filters match case-insensitively."""
        try:
            return await self.store.list(
                kind=kind,
                status=status,
                party_address=party_address,
                property_address=property_address,
            )
        except ValueError as exc:
            raise ValidationError(f"Bad list filter: {exc}") from exc

    # ------------------------------------------------------------------
    # Funding / cancellation
    # ------------------------------------------------------------------

    async def fund(self, escrow_id: str, reference: str) -> Escrow:
        """Record the deposit transfer and move ``created`` to ``funded``."""

        def _fund(escrow: Escrow) -> None:
            _require_status(escrow, "fund", EscrowStatus.CREATED)
            escrow.funding_ref = _require_text(reference, "reference")
            escrow.funded_at = utcnow()
            escrow.status = EscrowStatus.FUNDED
            escrow.touch()
            condition_engine.advance_if_ready(escrow)

        escrow, _ = await self.store.mutate(escrow_id, _fund)
        logger.info(f"Escrow {escrow_id} funded (ref={reference})")
        return escrow

    async def cancel(self, escrow_id: str) -> Escrow:
        """Cancel an escrow that never received funds."""

        def _cancel(escrow: Escrow) -> None:
            _require_status(escrow, "cancel", EscrowStatus.CREATED)
            if escrow.funding_ref is not None:
                raise InvalidState(
                    f"Cannot cancel escrow {escrow.id}: funds already recorded.",
                    escrow_id=escrow.id,
                    operation="cancel",
                    status=escrow.status.value,
                )
            escrow.status = EscrowStatus.CANCELLED
            escrow.touch()

        escrow, _ = await self.store.mutate(escrow_id, _cancel)
        logger.info(f"Escrow {escrow_id} cancelled")
        return escrow

    # ------------------------------------------------------------------
    # Conditions and approvals
    # ------------------------------------------------------------------

    async def satisfy_condition(
        self,
        escrow_id: str,
        condition_id: str,
        satisfied_by: str,
        evidence: Optional[str] = None,
    ) -> Escrow:
        by = _require_text(satisfied_by, "satisfied_by")
        escrow, _ = await self.store.mutate(
            escrow_id, lambda e: condition_engine.satisfy(e, condition_id, by, evidence)
        )
        return escrow

    async def waive_condition(self, escrow_id: str, condition_id: str, waived_by: str) -> Escrow:
        by = _require_text(waived_by, "waived_by")
        escrow, _ = await self.store.mutate(
            escrow_id, lambda e: condition_engine.waive(e, condition_id, by)
        )
        return escrow

    async def fail_condition(self, escrow_id: str, condition_id: str, reason: str) -> Escrow:
        why = _require_text(reason, "reason")
        escrow, _ = await self.store.mutate(
            escrow_id, lambda e: condition_engine.fail(e, condition_id, why)
        )
        return escrow

    async def approve(self, escrow_id: str, role: str, note: Optional[str] = None) -> Escrow:
        escrow, _ = await self.store.mutate(
            escrow_id, lambda e: approval_engine.approve(e, role, note)
        )
        return escrow

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def payout_due(self, escrow: Escrow, condition: Condition) -> tuple[Decimal, bool]:
        """Amount the next tranche for ``condition`` pays, and whether it is the last one."""
        released = escrow.released_condition_ids()
        outstanding = [
            c for c in escrow.milestones() if c.has_allocation and c.id not in released
        ]
        if len(outstanding) == 1 and outstanding[0].id == condition.id:
            # Last tranche takes whatever rounding left behind.
            return escrow.remaining_amount, True
        amount = min(
            payout_for(condition, escrow.amount, self.release_config.quantum),
            escrow.remaining_amount,
        )
        return amount, False

    # ------------------------------------------------------------------
    # Settlement guards
    #
    # Pure checks on a loaded record.  The mutations below run them inside
    # the store lock; the ledger helpers run them before moving funds.
    # ------------------------------------------------------------------

    def _check_destination(self, escrow: Escrow, destination: str) -> None:
        if escrow.settlement is not None and escrow.settlement.destination != destination:
            raise ValidationError(
                f"Escrow {escrow.id} already settles to {escrow.settlement.destination}; "
                f"every transfer must use that destination, got {destination}.",
                escrow_id=escrow.id,
                destination=destination,
            )

    def _check_not_refunding(self, escrow: Escrow, operation: str) -> None:
        if condition_engine.refund_pending(escrow):
            raise InvalidState(
                f"Cannot {operation} escrow {escrow.id}: a failed condition redirected it "
                f"to a refund for {escrow.release_to_role}.",
                escrow_id=escrow.id,
                operation=operation,
                status=escrow.status.value,
                release_to_role=escrow.release_to_role,
            )

    def check_release(self, escrow: Escrow, destination: str) -> Decimal:
        """Raise unless ``escrow`` may be released to ``destination``; return the amount due."""
        _require_status(escrow, "release", EscrowStatus.PENDING_RELEASE)
        self._check_not_refunding(escrow, "release")
        self._check_destination(escrow, destination)
        return escrow.remaining_amount

    def check_refund(self, escrow: Escrow) -> Party:
        """Raise unless ``escrow`` may be refunded; return the payer to refund."""
        _require_status(escrow, "refund", EscrowStatus.FUNDED, EscrowStatus.PENDING_RELEASE)
        return self._payer(escrow)

    def check_partial(
        self, escrow: Escrow, condition_id: str, destination: str
    ) -> tuple[Decimal, bool]:
        """Raise unless the milestone may be paid to ``destination``.

        Returns the tranche amount and whether it is the last one.
        """
        _require_status(
            escrow, "release milestone on", EscrowStatus.FUNDED, EscrowStatus.PENDING_RELEASE
        )
        self._check_not_refunding(escrow, "release milestone on")
        condition = condition_engine.get_condition(escrow, condition_id)
        if condition.status != ConditionStatus.SATISFIED:
            raise InvalidState(
                f"Condition {condition_id} must be satisfied before partial release "
                f"(it is '{condition.status.value}').",
                escrow_id=escrow.id,
                condition_id=condition_id,
                condition_status=condition.status.value,
            )
        if not condition.has_allocation:
            raise ValidationError(
                f"Condition {condition_id} has no release amount defined.",
                escrow_id=escrow.id,
                condition_id=condition_id,
            )
        if condition_id in escrow.released_condition_ids():
            raise InvalidState(
                f"Condition {condition_id} has already been paid out.",
                escrow_id=escrow.id,
                condition_id=condition_id,
            )
        self._check_destination(escrow, destination)
        return self.payout_due(escrow, condition)

    def _payer(self, escrow: Escrow) -> Party:
        payer = escrow.payer()
        if payer is None:
            raise ValidationError(
                f"Escrow {escrow.id} has no buyer, tenant or depositor with a settlement "
                f"address to refund.",
                escrow_id=escrow.id,
            )
        return payer

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(self, escrow: Escrow, destination: str, reference: str, status: EscrowStatus) -> None:
        """Record the remaining balance as moved and close the escrow."""
        remaining = escrow.remaining_amount
        if remaining > 0:
            escrow.tranches.append(
                Tranche(amount=remaining, destination=destination, reference=reference)
            )
        escrow.settlement = Settlement(destination=destination, reference=reference)
        escrow.status = status
        escrow.touch()

    def _apply_refund(self, escrow: Escrow, reference: str) -> None:
        payer = self._payer(escrow)
        escrow.release_to_role = payer.role
        self._settle(escrow, payer.address, reference, EscrowStatus.REFUNDED)

    async def release(self, escrow_id: str, destination: str, reference: str) -> Escrow:
        """Record the release transfer.  Only legal from ``pending_release``."""
        dest = _require_text(destination, "destination")
        ref = _require_text(reference, "reference")

        def _release(escrow: Escrow) -> None:
            self.check_release(escrow, dest)
            self._settle(escrow, dest, ref, EscrowStatus.RELEASED)

        escrow, _ = await self.store.mutate(escrow_id, _release)
        logger.info(f"Escrow {escrow_id} released to {dest} (ref={ref})")
        return escrow

    async def refund(self, escrow_id: str, reference: str) -> Escrow:
        """Record the refund transfer back to the payer."""
        ref = _require_text(reference, "reference")

        def _refund(escrow: Escrow) -> None:
            self.check_refund(escrow)
            self._apply_refund(escrow, ref)

        escrow, _ = await self.store.mutate(escrow_id, _refund)
        logger.info(
            f"Escrow {escrow_id} refunded to {escrow.settlement.destination} (ref={ref})"
        )
        return escrow

    async def release_partial(
        self,
        escrow_id: str,
        condition_id: str,
        destination: str,
        reference: str,
    ) -> Escrow:
        """Record the payout of one satisfied milestone.

        The first tranche fixes the escrow's settlement destination; later
        tranches must go to the same place.  Once every allocated milestone
        has been paid the escrow is ``released``.
        """
        dest = _require_text(destination, "destination")
        ref = _require_text(reference, "reference")

        def _partial(escrow: Escrow) -> Decimal:
            amount, last = self.check_partial(escrow, condition_id, dest)

            escrow.tranches.append(
                Tranche(condition_id=condition_id, amount=amount, destination=dest, reference=ref)
            )
            if escrow.settlement is None or last:
                escrow.settlement = Settlement(destination=dest, reference=ref)
            if last:
                escrow.status = EscrowStatus.RELEASED
            escrow.touch()
            return amount

        escrow, amount = await self.store.mutate(escrow_id, _partial)
        logger.info(
            f"Escrow {escrow_id}: milestone {condition_id} paid {amount} to {dest} "
            f"(settled {escrow.settled_amount}/{escrow.amount})"
        )
        return escrow

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(self, escrow_id: str, raised_by: str, reason: str) -> Escrow:
        """Freeze a funded escrow until :meth:`resolve_dispute` is called."""
        by = _require_text(raised_by, "raised_by")
        why = _require_text(reason, "reason")

        def _dispute(escrow: Escrow) -> None:
            _require_status(escrow, "dispute", EscrowStatus.FUNDED)
            escrow.dispute = Dispute(raised_by=by, reason=why)
            escrow.status = EscrowStatus.DISPUTED
            escrow.touch()

        escrow, _ = await self.store.mutate(escrow_id, _dispute)
        logger.info(f"Escrow {escrow_id} disputed by {by}: {why}")
        return escrow

    async def resolve_dispute(
        self,
        escrow_id: str,
        resolution: str,
        outcome: DisputeOutcome | str,
        reference: str,
        destination: Optional[str] = None,
    ) -> Escrow:
        """Close a dispute and settle it as a release or a refund."""
        text = _require_text(resolution, "resolution")
        ref = _require_text(reference, "reference")
        try:
            decided = DisputeOutcome(outcome)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown dispute outcome '{outcome}'; use release or refund.",
                outcome=outcome,
            ) from exc
        dest = _require_text(destination, "destination") if decided == DisputeOutcome.RELEASE else None

        def _resolve(escrow: Escrow) -> None:
            _require_status(escrow, "resolve dispute on", EscrowStatus.DISPUTED)
            if escrow.dispute is None:
                raise InvalidState(
                    f"Escrow {escrow.id} is disputed but carries no dispute record.",
                    escrow_id=escrow.id,
                    operation="resolve dispute on",
                    status=escrow.status.value,
                )
            escrow.dispute.resolution = text
            escrow.dispute.outcome = decided
            escrow.dispute.resolved_at = utcnow()
            if decided == DisputeOutcome.RELEASE:
                # The resolution overrides any refund a failed condition queued.
                self._check_destination(escrow, dest)
                escrow.release_to_role = None
                self._settle(escrow, dest, ref, EscrowStatus.RELEASED)
            else:
                self._apply_refund(escrow, ref)

        escrow, _ = await self.store.mutate(escrow_id, _resolve)
        logger.info(f"Escrow {escrow_id} dispute resolved: {decided.value} (ref={ref})")
        return escrow

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def add_document(self, escrow_id: str, name: str, url: str) -> Escrow:
        doc = Document(name=_require_text(name, "name"), url=_require_text(url, "url"))

        def _add(escrow: Escrow) -> None:
            escrow.documents.append(doc.model_copy())
            escrow.touch()

        escrow, _ = await self.store.mutate(escrow_id, _add)
        return escrow
