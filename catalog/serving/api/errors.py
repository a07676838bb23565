"""
API Exception Handlers

Maps domain exceptions onto HTTP responses:

- CatalogValidationError -> 400
- NotFoundError -> 404
- ConflictError -> 409
- malformed request bodies/params -> 400
- anything else -> 500 with an opaque body and the request id
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from catalog.core.exceptions import CatalogError

logger = structlog.get_logger(__name__)


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


async def catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    logger.info(
        "Request rejected",
        error_type=type(exc).__name__,
        message=exc.message,
        ids=exc.ids,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.error(
        "Unhandled error",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "InternalServerError", "request_id": request_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CatalogError, catalog_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
