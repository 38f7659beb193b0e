import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.exceptions import HTTPException as StarletteHTTPException

from agencyhub.api.errors import http_exception_handler, validation_exception_handler
from agencyhub.api.routes import router as api_router
from agencyhub.core.auth import AuthenticationMiddleware
from agencyhub.core.config import get_settings
from agencyhub.core.context import RequestContextMiddleware
from agencyhub.core.rbac import RBACMiddleware
from agencyhub.logging import configure_logging
from agencyhub.middleware.correlation_id import CorrelationIdMiddleware
from agencyhub.middleware.request_logging import RequestLoggingMiddleware
from agencyhub.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("agencyhub.lifecycle")


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version="0.1.0")

    # Starlette runs the last-added middleware first.
    application.add_middleware(RBACMiddleware)
    application.add_middleware(AuthenticationMiddleware)
    application.add_middleware(RequestContextMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.add_exception_handler(RequestValidationError, validation_exception_handler)
    application.include_router(api_router)

    if settings.otel_enabled:
        setup_otel("agencyhub-api", True)

    if not getattr(application, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(application, server_request_hook=get_fastapi_server_request_hook())

    logger.info("app_created")
    return application


app = create_app()
