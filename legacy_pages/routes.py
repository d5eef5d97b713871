"""
HTTP routes for the legacy pages API.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from legacy_pages.auth import get_caller_id
from legacy_pages.config import Settings, get_settings
from legacy_pages.db import DbClient
from legacy_pages.dependencies import get_db_client, get_page_service
from legacy_pages.errors import PageError, UpstreamFailure
from legacy_pages.forms import parse_page_submission
from legacy_pages.schemas import (
    DeletePageResponse,
    OwnPageDetailResponse,
    OwnPageResponse,
    PageDetailResponse,
    PageIdResponse,
    PageResponse,
    PageSubmission,
    UserResponse,
)
from legacy_pages.service import PageService
from legacy_pages.webhooks import (
    WebhookVerificationError,
    handle_identity_event,
    parse_identity_event,
    verify_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def _upstream_errors(message: str):
    """Surface unexpected database/storage failures as a generic 500."""
    try:
        yield
    except (PageError, HTTPException):
        raise
    except Exception as exc:
        logger.exception(message)
        raise UpstreamFailure(message) from exc


async def _read_submission(request: Request) -> PageSubmission:
    form = await request.form()
    try:
        return await parse_page_submission(form)
    finally:
        await form.close()


@router.post("/pages", response_model=PageIdResponse, status_code=201)
async def create_page(
    request: Request,
    caller_id: Optional[str] = Depends(get_caller_id),
    pages: PageService = Depends(get_page_service),
):
    with _upstream_errors("Error creating legacy page"):
        await run_in_threadpool(pages.resolve_user, caller_id)
        submission = await _read_submission(request)
        page_id = await run_in_threadpool(pages.create_page, caller_id, submission)
    return PageIdResponse(id=page_id)


@router.get("/pages", response_model=OwnPageResponse)
async def get_own_page(
    caller_id: Optional[str] = Depends(get_caller_id),
    pages: PageService = Depends(get_page_service),
):
    with _upstream_errors("Error checking legacy page"):
        page = await run_in_threadpool(pages.get_own_page, caller_id)
    return OwnPageResponse(page=PageResponse.from_record(page) if page else None)


@router.get("/pages/check", response_model=OwnPageDetailResponse)
async def check_own_page(
    caller_id: Optional[str] = Depends(get_caller_id),
    pages: PageService = Depends(get_page_service),
):
    with _upstream_errors("Error checking legacy page"):
        aggregate = await run_in_threadpool(pages.get_own_page, caller_id, True)
    return OwnPageDetailResponse(
        page=PageDetailResponse.from_aggregate(aggregate) if aggregate else None
    )


@router.get("/pages/{page_id}", response_model=PageDetailResponse)
async def get_page(page_id: str, pages: PageService = Depends(get_page_service)):
    with _upstream_errors("Error fetching legacy page"):
        aggregate = await run_in_threadpool(pages.get_page, page_id)
    return PageDetailResponse.from_aggregate(aggregate)


@router.put("/pages/{page_id}", response_model=PageIdResponse)
async def replace_page(
    page_id: str,
    request: Request,
    caller_id: Optional[str] = Depends(get_caller_id),
    pages: PageService = Depends(get_page_service),
):
    with _upstream_errors("Error updating legacy page"):
        await run_in_threadpool(pages.resolve_user, caller_id)
        submission = await _read_submission(request)
        await run_in_threadpool(pages.replace_page, caller_id, page_id, submission)
    return PageIdResponse(id=page_id)


@router.delete("/pages/{page_id}", response_model=DeletePageResponse)
async def delete_page(
    page_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    pages: PageService = Depends(get_page_service),
):
    with _upstream_errors("Error deleting legacy page"):
        await run_in_threadpool(pages.delete_page, caller_id, page_id)
    return DeletePageResponse(success=True)


@router.get("/user", response_model=UserResponse)
async def get_current_user(
    caller_id: Optional[str] = Depends(get_caller_id),
    pages: PageService = Depends(get_page_service),
):
    with _upstream_errors("Internal server error"):
        user = await run_in_threadpool(pages.resolve_user, caller_id)
    return UserResponse(id=user.id, name=user.name, email=user.email)


@router.post("/webhooks/identity")
async def identity_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: DbClient = Depends(get_db_client),
    pages: PageService = Depends(get_page_service),
):
    body = await request.body()
    try:
        payload = verify_webhook(settings.webhook_secret, request.headers, body)
        event = parse_identity_event(payload)
    except WebhookVerificationError as exc:
        logger.warning("Error verifying webhook: %s", exc)
        return PlainTextResponse("Error verifying webhook", status_code=400)

    with _upstream_errors("Error processing webhook"):
        status_code, content = await run_in_threadpool(
            handle_identity_event, event, db, pages
        )
    return JSONResponse(content, status_code=status_code)
