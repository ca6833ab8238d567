"""Security status and administration endpoints."""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ...runtime import Runtime
from ..deps import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/security", tags=["Security"])

MIN_BLOCK_MS = 60_000
MAX_BLOCK_MS = 7 * 24 * 3_600_000
DEFAULT_BLOCK_MS = 3_600_000


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class BlockedIdentifier(BaseModel):
    identifier: str
    blockedUntil: str
    reason: str


class SecurityStatusResponse(BaseModel):
    blocked: list[BlockedIdentifier]
    timestamp: str


class BlockRequest(BaseModel):
    """Manual block of a client identifier."""

    identifier: str = Field(min_length=1, max_length=255)
    reason: str = Field("Manual block", max_length=500)
    durationMs: int = Field(DEFAULT_BLOCK_MS, ge=MIN_BLOCK_MS, le=MAX_BLOCK_MS)


class BlockResponse(BaseModel):
    success: bool
    identifier: str
    blockedUntil: str


class ViolationsResponse(BaseModel):
    violations: list[dict[str, Any]]
    count: int


@router.get("/status", response_model=SecurityStatusResponse)
async def security_status(runtime: Runtime = Depends(get_runtime)):
    """Currently blocked identifiers."""
    blocked = [
        BlockedIdentifier(identifier=key, blockedUntil=_iso(entry.blocked_until), reason=entry.reason)
        for key, entry in runtime.guard.get_blocked_identifiers().items()
    ]
    return SecurityStatusResponse(blocked=blocked, timestamp=_iso(runtime.clock()))


@router.post("/block", response_model=BlockResponse)
async def block_identifier(request: BlockRequest, runtime: Runtime = Depends(get_runtime)):
    """Block an identifier, replacing any existing block."""
    entry = runtime.guard.block_identifier(request.identifier, request.reason, request.durationMs / 1000)
    logger.warning(f"Manually blocked {request.identifier} for {request.durationMs}ms: {request.reason}")
    return BlockResponse(success=True, identifier=request.identifier, blockedUntil=_iso(entry.blocked_until))


@router.delete("/block/{identifier}")
async def unblock_identifier(identifier: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    """Lift a block."""
    if not runtime.guard.unblock(identifier):
        raise HTTPException(status_code=404, detail=f"Identifier not blocked: {identifier}")
    return {"success": True, "identifier": identifier}


@router.get("/violations", response_model=ViolationsResponse)
async def security_violations(
    limit: int = Query(50, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    """Most recent blocks and policy violations from the audit trail."""
    violations = [event.to_dict() for event in runtime.audit.violations(limit)]
    return ViolationsResponse(violations=violations, count=len(violations))
