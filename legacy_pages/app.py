"""
FastAPI application entry point for the legacy pages service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from legacy_pages.config import get_settings
from legacy_pages.errors import PageError
from legacy_pages.routes import router


async def page_error_handler(request: Request, exc: PageError) -> JSONResponse:
    return JSONResponse({"message": exc.message}, status_code=exc.status_code)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    app = FastAPI(title="Legacy Pages API", version="0.1.0")
    app.add_exception_handler(PageError, page_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
