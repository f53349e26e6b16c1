"""
REST API for custom domain management.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from ..domains.errors import (
    BlacklistedHostnameError,
    DomainEngineError,
    DomainNotFoundError,
    InvalidHostnameError,
    OwnershipError,
)
from ..domains.models import OwnerKind, OwnerRef

logger = logging.getLogger("domain_engine.api.domains")

router = APIRouter(prefix="/api/domains", tags=["domains"])


# ── Owner dependency ─────────────────────────────────────────────────

def _parse_owner(
    owner_type: Optional[str], owner_id: Optional[str], missing_status: int = 401
) -> OwnerRef:
    if not owner_type or not owner_id or not owner_id.strip():
        raise HTTPException(status_code=missing_status, detail="Missing owner")
    try:
        kind = OwnerKind(owner_type.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail="Owner type must be 'user' or 'team'")
    return OwnerRef(kind=kind, id=owner_id.strip())


async def get_current_owner(
    x_owner_type: Optional[str] = Header(None),
    x_owner_id: Optional[str] = Header(None),
) -> OwnerRef:
    """Owner of the request, as asserted by the upstream gateway."""
    return _parse_owner(x_owner_type, x_owner_id)


def _http_error(e: DomainEngineError) -> HTTPException:
    if isinstance(e, (InvalidHostnameError, BlacklistedHostnameError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, DomainNotFoundError):
        return HTTPException(status_code=404, detail="Domain not found")
    if isinstance(e, OwnershipError):
        return HTTPException(status_code=403, detail="Not your domain")
    return HTTPException(status_code=409, detail=str(e))


# ── Request / Response models ────────────────────────────────────────

class DomainReserveRequest(BaseModel):
    hostname: str


class DomainTransferRequest(BaseModel):
    owner_type: str
    owner_id: str
    reason: str = "transfer"


# ── Routes ───────────────────────────────────────────────────────────

@router.post("")
async def reserve_domain(
    body: DomainReserveRequest,
    request: Request,
    owner: OwnerRef = Depends(get_current_owner),
):
    """Reserve a custom domain and return the DNS record to add."""
    service = request.app.state.domain_service

    try:
        domain = await service.reserve(body.hostname, owner)
    except DomainEngineError as e:
        raise _http_error(e)

    return {
        **domain.to_api_response(),
        "instructions": service.verifier.get_verification_instructions(domain),
    }


@router.get("")
async def list_domains(
    request: Request,
    owner: OwnerRef = Depends(get_current_owner),
):
    """List all custom domains for the owner."""
    domains = await request.app.state.domain_service.list(owner)
    return {
        "count": len(domains),
        "domains": [d.to_api_response() for d in domains],
    }


@router.get("/{domain_id}")
async def get_domain(
    domain_id: str,
    request: Request,
    owner: OwnerRef = Depends(get_current_owner),
):
    """Get details of a specific custom domain."""
    try:
        domain = await request.app.state.domain_service.status(domain_id, owner)
    except DomainEngineError as e:
        raise _http_error(e)
    return domain.to_api_response()


@router.post("/{domain_id}/verify")
async def verify_domain(
    domain_id: str,
    request: Request,
    owner: OwnerRef = Depends(get_current_owner),
):
    """Trigger DNS verification for a domain."""
    try:
        domain = await request.app.state.domain_service.request_verification(domain_id, owner)
    except DomainEngineError as e:
        raise _http_error(e)

    if domain.is_verified:
        message = "Domain is verified"
    else:
        message = domain.verification_error or "Verification pending"
    return {**domain.to_api_response(), "message": message}


@router.post("/{domain_id}/transfer")
async def transfer_domain(
    domain_id: str,
    body: DomainTransferRequest,
    request: Request,
    owner: OwnerRef = Depends(get_current_owner),
):
    """Hand a domain over to another user or team."""
    new_owner = _parse_owner(body.owner_type, body.owner_id, missing_status=400)
    try:
        domain = await request.app.state.domain_service.transfer(
            domain_id, owner, new_owner, reason=body.reason
        )
    except DomainEngineError as e:
        raise _http_error(e)
    return domain.to_api_response()


@router.delete("/{domain_id}")
async def delete_domain(
    domain_id: str,
    request: Request,
    owner: OwnerRef = Depends(get_current_owner),
):
    """Delete a custom domain and release its certificate."""
    try:
        await request.app.state.domain_service.remove(domain_id, owner)
    except DomainEngineError as e:
        raise _http_error(e)
    return {"deleted": True, "id": domain_id}
