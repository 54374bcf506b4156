from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from questline import __version__
from questline.api.routes import chapters, jobs, missions, renown, tasks
from questline.config import get_settings
from questline.core.exceptions import QuestlineError, global_exception_handler, http_exception_handler, questline_exception_handler, request_validation_exception_handler
from questline.core.lifespan import lifespan
from questline.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

settings = get_settings()

app = FastAPI(title="Questline Engine", version=__version__, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url="/openapi.json" if settings.debug else None)

app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.allowed_origins,
  allow_credentials=True,
  allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
  allow_headers=["content-type", "authorization", "x-questline-user"],
  expose_headers=["content-length", "x-request-id"],
)


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(QuestlineError, questline_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
app.include_router(chapters.router, prefix="/v1", tags=["chapters"])
app.include_router(missions.router, prefix="/v1/missions", tags=["missions"])
app.include_router(renown.router, prefix="/v1/renown", tags=["renown"])
app.include_router(tasks.router, prefix="/internal/tasks", tags=["tasks"])
