from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import credits, notifications, renders
from app.config import get_settings
from app.core.exceptions import (
  global_exception_handler,
  http_exception_handler,
  insufficient_credits_exception_handler,
  invalid_spec_exception_handler,
  job_not_found_exception_handler,
  request_validation_exception_handler,
)
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from app.render.errors import InsufficientCreditsError, InvalidSpecError, RenderJobNotFoundError

settings = get_settings()

app = FastAPI(title="Reel Render Engine", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None if settings.environment in {"production", "prod"} else "/openapi.json")

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization", "x-user-id"], expose_headers=["content-length", "x-request-id"])

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(InvalidSpecError, invalid_spec_exception_handler)
app.add_exception_handler(InsufficientCreditsError, insufficient_credits_exception_handler)
app.add_exception_handler(RenderJobNotFoundError, job_not_found_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(renders.router, prefix="/v1/renders", tags=["renders"])
app.include_router(notifications.router, prefix="/v1/notifications", tags=["notifications"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
