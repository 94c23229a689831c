"""
converge - Provisioning Convergence Service

FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from converge import __version__
from converge.app.api.webhooks import registry_router
from converge.app.dependencies import (
    ConvergeServices,
    get_services,
    get_settings,
    initialize_services,
    shutdown_services,
)
from converge.engine import ApplyContext
from converge.errors import ConvergeError
from converge.outputs import collect_outputs
from converge.providers import ProviderHealthChecker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting converge services...")
    try:
        await initialize_services()
        logger.info("converge services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise

    yield

    # Shutdown
    logger.info("Shutting down converge services...")
    try:
        await shutdown_services()
        logger.info("converge services shut down successfully")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)


# Create FastAPI application
settings = get_settings()

app = FastAPI(
    title="converge",
    description="Dependency-ordered provisioning and tag-based release triggering",
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(registry_router, prefix="/api/v1")


async def _run_apply(services: ConvergeServices, context: ApplyContext) -> None:
    """Background task: reload the stack and converge it. Releases the apply lock."""
    try:
        resources = await services.loader.load_resources()
        result = await services.engine.converge(resources, services.observed, context)
        logger.info(f"Apply {result.run_id} finished: {result.table()}")
    except ConvergeError as e:
        logger.error(f"Apply {context.run_id} failed: {e}")
    except Exception as e:
        logger.error(f"Apply {context.run_id} crashed: {e}", exc_info=True)
    finally:
        services.apply_lock.release()


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": "converge",
        "version": __version__,
        "status": "running",
    }


@app.get("/health", tags=["health"])
async def health_check(services: ConvergeServices = Depends(get_services)) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns service health status including:
    - Collaborator reachability
    - Configured providers
    """
    results = await services.providers.check_health()
    return {
        "status": ProviderHealthChecker.overall(results).value,
        "providers": services.providers.list_providers(),
        "checks": [r.to_dict() for r in results],
    }


@app.get("/api/v1/outputs", tags=["stack"])
async def get_outputs(services: ConvergeServices = Depends(get_services)) -> dict[str, Any]:
    """Exported outputs of active resources."""
    resources = await services.loader.load_resources()
    return {
        "environment": services.observed.environment,
        "outputs": collect_outputs(resources, services.observed),
    }


@app.get("/api/v1/plan", tags=["stack"])
async def get_plan(services: ConvergeServices = Depends(get_services)) -> Any:
    """Plan against the current observed state without applying it."""
    try:
        resources = await services.loader.load_resources()
        plan = await services.engine.plan(resources, services.observed)
    except ConvergeError as e:
        return JSONResponse(status_code=422, content={"status": "failed", "message": str(e)})
    return {"summary": plan.summary(), "plan": plan.to_dict()}


@app.post("/api/v1/apply", tags=["stack"], status_code=202)
async def start_apply(
    background_tasks: BackgroundTasks,
    services: ConvergeServices = Depends(get_services),
) -> Any:
    """Queue a converge run; one run at a time."""
    if services.apply_lock.locked():
        return JSONResponse(
            status_code=409,
            content={"status": "busy", "message": "an apply is already running"},
        )
    # Held from here until the background run finishes
    await services.apply_lock.acquire()
    context = ApplyContext(environment=services.observed.environment)
    background_tasks.add_task(_run_apply, services, context)
    return {"status": "accepted", "message": "apply queued", "run_id": context.run_id}


@app.get("/api/v1/runs", tags=["stack"])
async def list_runs(limit: int = 20, services: ConvergeServices = Depends(get_services)) -> dict[str, Any]:
    """Recent apply runs, newest first."""
    entries = await services.audit.recent(limit)
    return {"runs": [e.to_dict() for e in entries]}


@app.get("/api/v1/runs/{run_id}", tags=["stack"])
async def get_run(run_id: str, services: ConvergeServices = Depends(get_services)) -> Any:
    entry = await services.audit.find_by_run_id(run_id)
    if entry is None:
        return JSONResponse(status_code=404, content={"status": "failed", "message": "run not found"})
    return entry.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "converge.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
