"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from instachat.api.request_id import get_request_id
from instachat.domain.chat.errors import ChatError

logger = logging.getLogger(__name__)


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		rid = get_request_id(request)
		payload = {"detail": exc.detail, "request_id": rid}
		return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-Id": rid})

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		rid = get_request_id(request)
		payload = {"detail": "validation_error", "errors": jsonable_encoder(exc.errors()), "request_id": rid}
		return JSONResponse(status_code=422, content=payload, headers={"X-Request-Id": rid})

	@app.exception_handler(ChatError)
	async def chat_exc_handler(request: Request, exc: ChatError):  # type: ignore[override]
		rid = get_request_id(request)
		if exc.status_code >= 500:
			logger.warning("chat_error", extra={"reason": exc.reason, "status": exc.status_code})
		payload = {"detail": exc.reason, "request_id": rid}
		return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-Id": rid})
