from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from recipegen.ai.errors import BatchNotFoundError, InvalidRequestError
from recipegen.api.routes import batches
from recipegen.config import get_settings
from recipegen.core.exceptions import batch_not_found_exception_handler, global_exception_handler, http_exception_handler, invalid_request_exception_handler, request_validation_exception_handler
from recipegen.core.json import DecimalJSONResponse
from recipegen.core.lifespan import lifespan
from recipegen.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware


def create_app() -> FastAPI:
  """Build the FastAPI application."""
  settings = get_settings()
  application = FastAPI(title="recipegen-engine", version="0.1.0", default_response_class=DecimalJSONResponse, lifespan=lifespan)

  application.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length"])

  application.add_exception_handler(Exception, global_exception_handler)
  application.add_exception_handler(HTTPException, http_exception_handler)
  application.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  application.add_exception_handler(InvalidRequestError, invalid_request_exception_handler)
  application.add_exception_handler(BatchNotFoundError, batch_not_found_exception_handler)

  application.add_middleware(RequestLoggingMiddleware)
  application.add_middleware(SecurityHeadersMiddleware)

  @application.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": "0.1.0"}

  application.include_router(batches.router, prefix="/v1/batches", tags=["batches"])
  return application


app = create_app()
