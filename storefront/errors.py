import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """Base for errors that map onto a JSON error response."""

    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message, **self.details}


class InvalidInput(StorefrontError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class NotFound(StorefrontError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class InvalidTransition(StorefrontError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current, target):
        super().__init__(
            f"Invalid status transition: '{current}' to '{target}' is not allowed",
            current_status=current,
            target_status=target,
        )


class CheckoutFailed(StorefrontError):
    code = "checkout_failed"
    default_message = "Checkout failed"


async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": InvalidInput.code,
            "message": "Request validation failed",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=StorefrontError().to_dict())


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
