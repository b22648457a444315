"""FastAPI JSON API for Universal Escrow.

A thin wrapper over :class:`EscrowManager`: every route maps onto one
manager operation and returns the escrow record in its camelCase wire form.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from universal_escrow.core.errors import EscrowError
from universal_escrow.core.manager import EscrowManager
from universal_escrow.storage.models import Condition, Party

logger = logging.getLogger("universal_escrow.dashboard")

STATUS_BY_KIND = {
    "not_found": 404,
    "invalid_state": 409,
    "validation_error": 422,
    "authorization_error": 403,
    "concurrency_error": 409,
}


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TemplateCreate(_Body):
    template: str
    amount: Decimal
    parties: list[Party]
    chain: Optional[str] = None
    custom_conditions: list[Condition] = Field(default_factory=list)
    auto_release_days: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CustomCreate(_Body):
    amount: Decimal
    parties: list[Party]
    conditions: list[Condition] = Field(default_factory=list)
    chain: Optional[str] = None
    release_requires: str = "all_conditions"
    required_approvals: Optional[list[str]] = None
    kind: str = "general"
    auto_release_days: Optional[int] = None
    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class FundBody(_Body):
    reference: str


class SatisfyBody(_Body):
    by: str
    evidence: Optional[str] = None


class WaiveBody(_Body):
    by: str


class FailBody(_Body):
    reason: str


class ApproveBody(_Body):
    role: str
    note: Optional[str] = None


class SettleBody(_Body):
    destination: str
    reference: str


class RefundBody(_Body):
    reference: str


class DisputeBody(_Body):
    raised_by: str
    reason: str


class ResolveBody(_Body):
    resolution: str
    outcome: str
    reference: str
    destination: Optional[str] = None


class DocumentBody(_Body):
    name: str
    url: str


# ------------------------------------------------------------------
# App factory
# ------------------------------------------------------------------


def create_app(profile_dir: Path) -> FastAPI:
    """Build the API bound to one profile directory."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = await EscrowManager.open(profile_dir)
        app.state.manager = manager
        logger.info(f"Escrow API started for {profile_dir}")
        try:
            yield
        finally:
            await manager.close()

    app = FastAPI(title="Universal Escrow", lifespan=lifespan)

    @app.exception_handler(EscrowError)
    async def escrow_error(request: Request, exc: EscrowError):
        status = STATUS_BY_KIND.get(exc.kind, 400)
        if status >= 409:
            logger.info(f"{request.method} {request.url.path} -> {status}: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    def _manager(request: Request) -> EscrowManager:
        return request.app.state.manager

    # -- templates ----------------------------------------------------

    @app.get("/api/templates")
    async def api_templates(request: Request):
        return [
            {
                "name": t.name,
                "vertical": t.vertical,
                "kind": t.kind.value,
                "releaseRequires": t.release_requires.value,
                "recommendedRoles": list(t.recommended_roles),
                "autoReleaseDays": t.auto_release_days,
                "description": t.description,
                "conditions": [
                    {"description": c.description, "type": c.type.value}
                    for c in t.conditions
                ],
            }
            for t in _manager(request).templates.all()
        ]

    # -- escrows ------------------------------------------------------

    @app.get("/api/escrows")
    async def api_list(
        request: Request,
        kind: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        party: Optional[str] = Query(None),
        property_address: Optional[str] = Query(None, alias="propertyAddress"),
    ):
        escrows = await _manager(request).list(
            kind=kind, status=status, party_address=party, property_address=property_address
        )
        return [e.to_dict() for e in escrows]

    @app.post("/api/escrows", status_code=201)
    async def api_create(request: Request, body: TemplateCreate):
        escrow = await _manager(request).create_from_template(
            body.template,
            body.amount,
            body.parties,
            chain=body.chain,
            custom_conditions=body.custom_conditions,
            auto_release_days=body.auto_release_days,
            metadata=body.metadata,
        )
        return escrow.to_dict()

    @app.post("/api/escrows/custom", status_code=201)
    async def api_create_custom(request: Request, body: CustomCreate):
        escrow = await _manager(request).create_custom(
            body.amount,
            body.parties,
            body.conditions,
            chain=body.chain,
            release_requires=body.release_requires,
            required_approvals=body.required_approvals,
            kind=body.kind,
            auto_release_days=body.auto_release_days,
            notes=body.notes,
            metadata=body.metadata,
        )
        return escrow.to_dict()

    @app.get("/api/escrows/{escrow_id}")
    async def api_get(request: Request, escrow_id: str):
        return (await _manager(request).get(escrow_id)).to_dict()

    @app.post("/api/escrows/{escrow_id}/fund")
    async def api_fund(request: Request, escrow_id: str, body: FundBody):
        return (await _manager(request).fund(escrow_id, body.reference)).to_dict()

    @app.post("/api/escrows/{escrow_id}/cancel")
    async def api_cancel(request: Request, escrow_id: str):
        return (await _manager(request).cancel(escrow_id)).to_dict()

    # -- conditions and approvals ---------------------------------------

    @app.post("/api/escrows/{escrow_id}/conditions/{condition_id}/satisfy")
    async def api_satisfy(request: Request, escrow_id: str, condition_id: str, body: SatisfyBody):
        escrow = await _manager(request).satisfy_condition(
            escrow_id, condition_id, body.by, body.evidence
        )
        return escrow.to_dict()

    @app.post("/api/escrows/{escrow_id}/conditions/{condition_id}/waive")
    async def api_waive(request: Request, escrow_id: str, condition_id: str, body: WaiveBody):
        return (await _manager(request).waive_condition(escrow_id, condition_id, body.by)).to_dict()

    @app.post("/api/escrows/{escrow_id}/conditions/{condition_id}/fail")
    async def api_fail(request: Request, escrow_id: str, condition_id: str, body: FailBody):
        return (await _manager(request).fail_condition(escrow_id, condition_id, body.reason)).to_dict()

    @app.post("/api/escrows/{escrow_id}/conditions/{condition_id}/release")
    async def api_release_partial(
        request: Request, escrow_id: str, condition_id: str, body: SettleBody
    ):
        escrow = await _manager(request).release_partial(
            escrow_id, condition_id, body.destination, body.reference
        )
        return escrow.to_dict()

    @app.post("/api/escrows/{escrow_id}/approve")
    async def api_approve(request: Request, escrow_id: str, body: ApproveBody):
        return (await _manager(request).approve(escrow_id, body.role, body.note)).to_dict()

    # -- settlement and disputes ----------------------------------------

    @app.post("/api/escrows/{escrow_id}/release")
    async def api_release(request: Request, escrow_id: str, body: SettleBody):
        escrow = await _manager(request).release(escrow_id, body.destination, body.reference)
        return escrow.to_dict()

    @app.post("/api/escrows/{escrow_id}/refund")
    async def api_refund(request: Request, escrow_id: str, body: RefundBody):
        return (await _manager(request).refund(escrow_id, body.reference)).to_dict()

    @app.post("/api/escrows/{escrow_id}/dispute")
    async def api_dispute(request: Request, escrow_id: str, body: DisputeBody):
        escrow = await _manager(request).raise_dispute(escrow_id, body.raised_by, body.reason)
        return escrow.to_dict()

    @app.post("/api/escrows/{escrow_id}/resolve")
    async def api_resolve(request: Request, escrow_id: str, body: ResolveBody):
        escrow = await _manager(request).resolve_dispute(
            escrow_id,
            body.resolution,
            body.outcome,
            body.reference,
            destination=body.destination,
        )
        return escrow.to_dict()

    @app.post("/api/escrows/{escrow_id}/documents")
    async def api_add_document(request: Request, escrow_id: str, body: DocumentBody):
        return (await _manager(request).add_document(escrow_id, body.name, body.url)).to_dict()

    return app


def run_dashboard(host: str = "127.0.0.1", port: int = 8420, profile_dir: Path | None = None) -> None:
    from universal_escrow.config import get_profile_dir

    uvicorn.run(
        create_app(profile_dir or get_profile_dir()),
        host=host,
        port=port,
        log_level="info",
    )
