"""Translate moderation errors into JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.moderation.domain.errors import ModerationError, ModerationErrorCode

STATUS_BY_CODE: dict[ModerationErrorCode, int] = {
    ModerationErrorCode.VALIDATION_ERROR: 400,
    ModerationErrorCode.UNAUTHORIZED: 403,
    ModerationErrorCode.NOT_FOUND: 404,
    ModerationErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ModerationErrorCode.DATABASE_ERROR: 500,
}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ModerationError)
    async def moderation_exc_handler(request: Request, exc: ModerationError):  # type: ignore[override]
        status_code = STATUS_BY_CODE.get(exc.code, 500)
        return JSONResponse(status_code=status_code, content=jsonable_encoder({"detail": exc.to_dict()}))
