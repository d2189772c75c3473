# main.py
# Configure logging at the very beginning
import logging

from devplane.config.logging import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

from contextlib import asynccontextmanager
from uuid import uuid4

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import RedirectResponse

from api_service.api.routers.prebuilds import router as prebuilds_router
from api_service.api.routers.webhooks import router as webhooks_router
from devplane.config.settings import settings
from devplane.workspaces.runtime import HttpWorkspaceRuntime, NoopWorkspaceRuntime

logger.info("Starting FastAPI...")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the HTTP client shared by host providers and the workspace runtime."""

    workspace_settings = settings.workspaces
    http_client = httpx.AsyncClient(timeout=settings.hosts.repository_api_timeout_seconds)
    app.state.http_client = http_client
    if workspace_settings.runtime_url:
        app.state.workspace_runtime = HttpWorkspaceRuntime(
            base_url=workspace_settings.runtime_url,
            timeout_seconds=workspace_settings.runtime_timeout_seconds,
            client=http_client,
        )
    else:
        logger.warning("WORKSPACE_RUNTIME_URL is not set; prebuild workspaces will not start")
        app.state.workspace_runtime = NoopWorkspaceRuntime()
    logger.info("Application startup events completed.")
    try:
        yield
    finally:
        await http_client.aclose()
        logger.info("Application shutdown completed.")


app = FastAPI(
    title="Devplane API",
    description="Prebuild control plane for cloud development workspaces",
    version="0.1.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Healthz router
health_router = APIRouter()


@health_router.get("/healthz")
async def health_check():
    return {"status": "ok"}


@app.get("/", include_in_schema=False)
async def docs_redirect() -> RedirectResponse:
    """Redirect root path to Swagger UI."""
    return RedirectResponse(url=app.docs_url)


app.include_router(health_router, tags=["health"])
app.include_router(prebuilds_router)
app.include_router(webhooks_router)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response
