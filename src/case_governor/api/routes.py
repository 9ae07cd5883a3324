"""HTTP query surface for the governor.

Endpoints:
    GET  /api/v1/cases/{case_id}/page-data        -> PageData
    POST /api/v1/cases/{case_id}/refresh?section= -> 202 Accepted

Caller identity comes from the X-User-* headers the API gateway adds.
Governor errors are returned as ``{"code", "message", "details"}`` bodies.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from case_governor.auth.request_context import RequestContext, get_request_context
from case_governor.errors import (
    AccessDeniedError,
    AggregationFailed,
    CaseGovernorError,
    NotFoundError,
    RuleConfigurationError,
)
from case_governor.models.page_data import BuildOptions, PageData
from case_governor.service import CaseDataGovernorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cases", tags=["cases"])


def status_for(error: CaseGovernorError) -> int:
    """HTTP status for a governor error; aggregation failures take their cause's status."""
    if isinstance(error, AggregationFailed):
        if isinstance(error.cause, (NotFoundError, AccessDeniedError)):
            return status_for(error.cause)
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, AccessDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, RuleConfigurationError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_502_BAD_GATEWAY


async def governor_error_handler(request: Request, exc: CaseGovernorError) -> JSONResponse:
    code = status_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {code} {exc.code}")
    return JSONResponse(status_code=code, content=exc.to_dict())


def get_governor(request: Request) -> CaseDataGovernorService:
    return request.app.state.governor


@router.get("/{case_id}/page-data", response_model=PageData)
async def get_page_data(
    case_id: str,
    include_related: bool = Query(default=True),
    evaluate_rules: bool = Query(default=True),
    context: RequestContext = Depends(get_request_context),
    governor: CaseDataGovernorService = Depends(get_governor),
) -> PageData:
    options = BuildOptions(include_related=include_related, evaluate_rules=evaluate_rules)
    return await governor.get_page_data(case_id, context=context, options=options)


@router.post("/{case_id}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def request_refresh(
    case_id: str,
    section: Optional[str] = Query(default=None),
    context: RequestContext = Depends(get_request_context),
    governor: CaseDataGovernorService = Depends(get_governor),
) -> dict:
    logger.info(f"Refresh requested for case {case_id} by {context.user_id} (section={section})")
    await governor.request_refresh(case_id, section=section)
    return {"case_id": case_id, "section": section, "accepted": True}


def create_app(governor: CaseDataGovernorService) -> FastAPI:
    """FastAPI application serving one governor instance."""
    app = FastAPI(title="Case Data Governor")
    app.state.governor = governor
    app.add_exception_handler(CaseGovernorError, governor_error_handler)
    app.include_router(router)
    return app
