"""Celery tasks that run the extraction pipeline outside the API process."""

import asyncio
import logging
import uuid

from app.core.exceptions import ConflictError, NodeExecutionError, OntologyError
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time to avoid conflicts with
    the module-level SQLAlchemy engine (which may be bound to a
    different loop created by uvicorn).
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session_factory():
    """Create a fresh async engine + session factory for Celery worker context.

    The module-level engine from app.db.postgres is bound to uvicorn's event loop
    and cannot be reused in a new event loop created by _run_async().
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from app.core.config import settings

    engine = create_async_engine(
        settings.postgres_url,
        echo=False,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine


async def _run_extraction_async(ontology_id: str) -> dict:
    from app.core.config import settings
    from app.core.dependencies import build_capabilities
    from app.pipeline.orchestrator import DagOrchestrator

    session_factory, engine = _make_session_factory()
    try:
        orchestrator = DagOrchestrator(session_factory, build_capabilities(settings), settings=settings)
        summary = await orchestrator.run(uuid.UUID(ontology_id))
        return {"status": "ok", **summary.to_dict()}
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="run_extraction", max_retries=0)
def run_extraction_task(self, ontology_id: str):
    """Celery task: run the pipeline for one ontology, resuming at the first unfinished node.

    A run that fails is resumed by enqueueing the task again, so Celery-level
    retries are disabled.
    """
    logger.info("Starting extraction for ontology=%s", ontology_id)
    try:
        result = _run_async(_run_extraction_async(ontology_id))
        logger.info("Extraction done for ontology=%s: %s", ontology_id, result)
        return result
    except ConflictError as exc:
        logger.warning("Extraction skipped for ontology=%s: %s", ontology_id, exc.message)
        return {"status": "conflict", "error": exc.message, "ontology_id": ontology_id}
    except NodeExecutionError as exc:
        logger.error("Extraction halted at %s for ontology=%s: %s", exc.node, ontology_id, exc.message)
        return {"status": "failed", "node": exc.node, "error": exc.message, "ontology_id": ontology_id}
    except OntologyError as exc:
        logger.error("Extraction failed for ontology=%s: %s", ontology_id, exc.message)
        return {"status": "error", "error": exc.message, "ontology_id": ontology_id}
