"""Prometheus exposition endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from ...runtime import Runtime
from ..deps import get_runtime

router = APIRouter(tags=["Metrics"])

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(runtime: Runtime = Depends(get_runtime)) -> PlainTextResponse:
    return PlainTextResponse(runtime.metrics.generate(), media_type=CONTENT_TYPE)
