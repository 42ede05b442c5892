"""Node definitions: the closed node set, execution context and executor base."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.catalog.connector import SchemaConnector
from app.catalog.types import SchemaSnapshot
from app.catalog.validator import SqlValidator
from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ConfigurationError
from app.generation.client import GenerationClient
from app.generation.pool import GenerationPool

logger = logging.getLogger(__name__)


class DagNode(str, Enum):
    """Pipeline nodes, declared in execution order."""

    SCHEMA_CAPTURE = "schema_capture"
    ENTITY_DISCOVERY = "entity_discovery"
    ENTITY_ENRICHMENT = "entity_enrichment"
    RELATIONSHIP_DISCOVERY = "relationship_discovery"
    RELATIONSHIP_ENRICHMENT = "relationship_enrichment"
    COLUMN_ENRICHMENT = "column_enrichment"
    GLOSSARY_DISCOVERY = "glossary_discovery"
    GLOSSARY_ENRICHMENT = "glossary_enrichment"
    FINALIZATION = "finalization"

    @property
    def position(self) -> int:
        return NODE_ORDER.index(self)


NODE_ORDER: list[DagNode] = list(DagNode)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Capability(str, Enum):
    SCHEMA = "schema"
    GENERATION = "generation"
    SQL_VALIDATOR = "sql_validator"


@dataclass
class Capabilities:
    """External collaborators bound to executors at startup."""

    schema: SchemaConnector | None = None
    generation: GenerationClient | None = None
    # Built per run from the captured snapshot
    validator_factory: Callable[[SchemaSnapshot], SqlValidator] | None = None

    def available(self) -> set[Capability]:
        present = set()
        if self.schema is not None:
            present.add(Capability.SCHEMA)
        if self.generation is not None:
            present.add(Capability.GENERATION)
        if self.validator_factory is not None:
            present.add(Capability.SQL_VALIDATOR)
        return present


@dataclass
class ProgressEvent:
    node: DagNode
    processed: int
    total: int
    message: str = ""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node.value,
            "processed": self.processed,
            "total": self.total,
            "message": self.message,
            "at": self.at.isoformat(),
        }


@dataclass
class NodeResult:
    """Summary a node returns on success; stored as the node's final progress."""

    processed: int = 0
    created: int = 0
    failed: int = 0
    questions: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "failed": self.failed,
            "questions": self.questions,
            **self.details,
        }


ProgressSink = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class NodeContext:
    ontology_id: uuid.UUID
    run_id: uuid.UUID
    session_factory: async_sessionmaker[AsyncSession]
    capabilities: Capabilities
    pool: GenerationPool
    settings: Settings = field(default_factory=lambda: default_settings)
    progress_sink: ProgressSink | None = None
    last_progress: ProgressEvent | None = None

    @property
    def generation(self) -> GenerationClient:
        if self.capabilities.generation is None:
            raise ConfigurationError("Generation capability is not configured")
        return self.capabilities.generation

    async def emit(self, node: DagNode, processed: int, total: int, message: str = "") -> None:
        event = ProgressEvent(node=node, processed=processed, total=total, message=message)
        self.last_progress = event
        logger.info(
            "[%s] %d/%d %s",
            node.value,
            processed,
            total,
            message,
            extra={"ontology_id": self.ontology_id, "node": node.value, "run_id": self.run_id},
        )
        if self.progress_sink is not None:
            await self.progress_sink(event)


class StageExecutor(ABC):
    """Executes one node. Raises on failure; the orchestrator records the outcome."""

    node: DagNode
    requires: frozenset[Capability] = frozenset()

    def check_capabilities(self, capabilities: Capabilities) -> None:
        missing = self.requires - capabilities.available()
        if missing:
            names = ", ".join(sorted(c.value for c in missing))
            raise ConfigurationError(f"{self.node.value} requires capabilities not configured: {names}")

    @abstractmethod
    async def execute(self, ctx: NodeContext) -> NodeResult:
        ...
