# x402_relay/main.py
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from x402_relay.core.config import settings
from x402_relay.core.version import VERSION
from x402_relay.api.endpoints import facilitator
from x402_relay.protocol.types import X_PAYMENT_HEADER, X_PAYMENT_REQUIRED_HEADER, X_PAYMENT_RESPONSE_HEADER

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
)

if settings.CORS_ENABLED:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", X_PAYMENT_HEADER],
        expose_headers=[X_PAYMENT_REQUIRED_HEADER, X_PAYMENT_RESPONSE_HEADER],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request validation failures as 400 INVALID_REQUEST."""
    errors = [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in exc.errors()
    ]
    logger.info(f"Invalid request to {request.url.path}: {errors}")
    return JSONResponse(
        status_code=400,
        content={
            "error": "INVALID_REQUEST",
            "message": "; ".join(err["msg"] for err in errors),
            "details": {"errors": errors},
        },
    )


app.include_router(facilitator.router, tags=["facilitator"])

logger.info(f"{settings.SERVICE_NAME} {VERSION} starting")
