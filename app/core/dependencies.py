"""Wiring of collaborators and FastAPI dependencies."""

from collections.abc import Callable
from functools import lru_cache

from app.catalog.connector import SqlAlchemySchemaConnector
from app.catalog.types import SchemaSnapshot
from app.catalog.validator import DatasourceDryRunValidator, ShadowSchemaValidator, SqlValidator
from app.core.config import Settings, settings
from app.db.postgres import async_session_factory
from app.generation.client import OpenAIGenerationClient
from app.governance.surface import GovernanceSurface
from app.pipeline.nodes import Capabilities
from app.pipeline.orchestrator import DagOrchestrator


def _validator_factory(cfg: Settings) -> Callable[[SchemaSnapshot], SqlValidator]:
    if cfg.datasource_url:
        url = cfg.datasource_url
        return lambda snapshot: DatasourceDryRunValidator(url)
    # Without a datasource, term SQL is checked against an empty replica of the snapshot
    return ShadowSchemaValidator


def build_capabilities(cfg: Settings = settings) -> Capabilities:
    """Bind whatever collaborators the environment configures; missing ones stay None."""
    schema = SqlAlchemySchemaConnector(cfg.datasource_url, cfg.datasource_schema_list) if cfg.datasource_url else None
    generation = None
    if cfg.openai_api_key:
        generation = OpenAIGenerationClient(
            api_key=cfg.openai_api_key,
            api_url=cfg.openai_api_url,
            model=cfg.generation_model,
            timeout=cfg.generation_timeout_seconds,
        )
    return Capabilities(schema=schema, generation=generation, validator_factory=_validator_factory(cfg))


@lru_cache
def get_orchestrator() -> DagOrchestrator:
    return DagOrchestrator(async_session_factory, build_capabilities(settings), settings=settings)


def get_governance() -> GovernanceSurface:
    return GovernanceSurface(async_session_factory, get_orchestrator())
