"""Error reporting endpoints."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ...resilience.errors import ErrorKind
from ...runtime import Runtime
from ..deps import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/monitoring/errors", tags=["Errors"])


class ErrorReport(BaseModel):
    """An error reported by a client."""

    kind: ErrorKind
    message: str = Field(min_length=1, max_length=2000)
    details: Optional[dict[str, Any]] = None
    context: Optional[dict[str, Any]] = None


class ErrorReportResponse(BaseModel):
    errorId: str
    timestamp: str


class ErrorMetricsResponse(BaseModel):
    totalErrors: int
    errorsByKind: dict[str, int]
    errorsBySeverity: dict[str, int]
    recentErrors: list[dict[str, Any]]
    errorRate: float


@router.post("", response_model=ErrorReportResponse)
async def report_error(report: ErrorReport, runtime: Runtime = Depends(get_runtime)):
    """Record a client-side error."""
    error_id = runtime.error_log.log_custom_error(
        report.kind, report.message, report.details, report.context
    )
    return ErrorReportResponse(
        errorId=error_id,
        timestamp=datetime.fromtimestamp(runtime.clock(), tz=timezone.utc).isoformat(),
    )


@router.get("", response_model=ErrorMetricsResponse)
async def get_error_metrics(
    time_window: int = Query(3_600_000, alias="timeWindow", ge=1, description="Window in milliseconds"),
    runtime: Runtime = Depends(get_runtime),
):
    """Error counts, recent errors and errors per minute over a window."""
    return ErrorMetricsResponse(**runtime.error_log.get_error_metrics(time_window / 1000).to_dict())


@router.delete("")
async def clear_errors(runtime: Runtime = Depends(get_runtime)) -> dict[str, bool]:
    """Clear the error log."""
    runtime.error_log.clear()
    logger.info("Error log cleared")
    return {"success": True}
