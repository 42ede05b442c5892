import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.exceptions import OntologyError
from app.core.logging import setup_logging
from app.core.metrics import APP_INFO, PrometheusMiddleware, metrics_response
from app.core.sentry import init_sentry
from app.db.postgres import engine, get_db

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    APP_INFO.info({"version": app.version, "env": settings.app_env})
    logger.info("Starting ontology engine...")

    yield

    # Shutdown
    await engine.dispose()
    logger.info("Ontology engine shut down")


app = FastAPI(
    title="Ontology Engine",
    description="Schema-to-ontology extraction pipeline with human-governed changes",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(OntologyError)
async def _ontology_error_handler(request: Request, exc: OntologyError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "data": None, "error": {"code": exc.code, "message": exc.message}},
    )


# Log unhandled exceptions with full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(
        status_code=500,
        content={"ok": False, "data": None, "error": {"code": "internal_error", "message": f"{type(exc).__name__}: {exc}"}},
    )


app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(db: AsyncSession = Depends(get_db)):
    postgres_ok = True
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        postgres_ok = False
    return {"status": "ok" if postgres_ok else "degraded", "postgres": postgres_ok}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
