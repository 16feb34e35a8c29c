"""
Work-journal backend: entries, cached dashboards and background LLM analysis.

Components are constructed by the dependency injection container and started
and stopped by the application lifespan.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.exceptions import ApplicationError, StoreError
from core.health import set_startup_time
from core.logging import configure_logging, get_logger
from routers import ai, auth, entries, health, insights, projects

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting work-journal backend", environment=settings.environment)
    set_startup_time()

    # Start services
    await container.database().startup()
    await container.cache().startup()

    logger.info("Services started successfully")
    yield

    # Shutdown: stop background work before closing the store it writes to
    await container.job_queue().shutdown()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Worklog Backend",
    version="1.0.0",
    description="Work-journal API with cached dashboards and background entry analysis",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except ApplicationError as e:
            logger.warning("Application error", path=request.url.path, error=str(e))
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False, "error": str(e)}
            )
        except StoreError as e:
            logger.error("Store error", path=request.url.path, error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"success": False, "error": str(e), "detail": "Backing store unavailable"}
            )
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error=f"{type(e).__name__}: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(entries.router)
app.include_router(insights.router)
app.include_router(projects.router)
app.include_router(ai.router)


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting work-journal backend",
                host=settings.host, port=settings.port, debug=settings.debug)
    # Single worker: the analysis job queue lives in-process
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1
    )
