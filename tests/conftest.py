import re
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.openai_api_key = ""
settings.datasource_url = ""
settings.generation_timeout_seconds = 5.0
settings.generation_max_concurrent = 3
settings.glossary_max_attempts = 3

import app.models  # noqa: E402,F401
from app.catalog.connector import StaticSchemaConnector  # noqa: E402
from app.catalog.types import ColumnInfo, ForeignKeyInfo, SchemaSnapshot, TableInfo  # noqa: E402
from app.catalog.validator import ShadowSchemaValidator  # noqa: E402
from app.core.dependencies import get_governance  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.postgres import get_db  # noqa: E402
from app.generation.client import GenerationClient  # noqa: E402
from app.generation.types import GenerationRequest, GenerationResult  # noqa: E402
from app.governance.surface import GovernanceSurface  # noqa: E402
from app.main import app  # noqa: E402
from app.models.ontology import Ontology  # noqa: E402
from app.pipeline.nodes import Capabilities  # noqa: E402
from app.pipeline.orchestrator import DagOrchestrator  # noqa: E402

# One shared in-memory connection; sessions must not hold overlapping transactions
test_engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


# pysqlite/aiosqlite manage BEGIN themselves and break SAVEPOINT; emit it explicitly
@event.listens_for(test_engine.sync_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine.sync_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return test_session_factory


# ---------------------------------------------------------------------------
# Schema fixtures
# ---------------------------------------------------------------------------


def make_snapshot(with_fk: bool = True) -> SchemaSnapshot:
    """``orders(id, user_id, amount, created_at)`` and ``users(id, email)``."""
    users = TableInfo(
        schema="public",
        name="users",
        columns=[
            ColumnInfo("id", "integer", nullable=False, is_primary_key=True),
            ColumnInfo("email", "varchar"),
        ],
    )
    orders = TableInfo(
        schema="public",
        name="orders",
        columns=[
            ColumnInfo("id", "integer", nullable=False, is_primary_key=True),
            ColumnInfo("user_id", "integer", nullable=False),
            ColumnInfo("amount", "numeric"),
            ColumnInfo("created_at", "timestamp"),
        ],
        foreign_keys=[ForeignKeyInfo(["user_id"], "public", "users", ["id"], name="orders_user_id_fkey")]
        if with_fk
        else [],
    )
    return SchemaSnapshot(tables=[orders, users])


@pytest.fixture
def snapshot() -> SchemaSnapshot:
    return make_snapshot()


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
async def ontology(db: AsyncSession) -> Ontology:
    ont = Ontology(name="shop")
    db.add(ont)
    await db.commit()
    return ont


@pytest.fixture
async def captured_ontology(db: AsyncSession, snapshot: SchemaSnapshot) -> Ontology:
    """Ontology with the orders/users snapshot already stored."""
    ont = Ontology(name="shop", schema_snapshot=snapshot.to_dict(), schema_fingerprint=snapshot.fingerprint())
    db.add(ont)
    await db.commit()
    return ont


# ---------------------------------------------------------------------------
# Generation fake
# ---------------------------------------------------------------------------


class ScriptedGenerationClient(GenerationClient):
    """Answers by request purpose (the node name).

    A purpose maps to a reply or a list of replies consumed in order (the
    last one repeats). A reply is response text, an exception to raise, or
    a callable building the text from the request.
    """

    def __init__(self, script: dict[str, Any] | None = None):
        self.script: dict[str, Any] = dict(default_script())
        self.script.update(script or {})
        self.calls: list[GenerationRequest] = []
        self._cursor: dict[str, int] = {}

    def calls_for(self, purpose: str) -> list[GenerationRequest]:
        return [c for c in self.calls if c.purpose == purpose]

    async def complete(self, request: GenerationRequest) -> GenerationResult:
        self.calls.append(request)
        reply = self.script.get(request.purpose)
        if reply is None:
            raise AssertionError(f"No scripted reply for {request.purpose!r}")
        if isinstance(reply, list):
            index = self._cursor.get(request.purpose, 0)
            self._cursor[request.purpose] = index + 1
            reply = reply[min(index, len(reply) - 1)]
        if isinstance(reply, Exception):
            raise reply
        text = reply(request) if callable(reply) else reply
        return GenerationResult(text=text, model="fake")


_ASSOCIATIONS = {("Order", "User"): "placed_by", ("User", "Order"): "places"}


def _entity_reply(request: GenerationRequest) -> str:
    name = re.search(r"Entity: (\w+)", request.user_prompt).group(1)
    return (
        f'{{"business_name": "{name}", "description": "A {name.lower()} of the shop", '
        f'"domain": "sales", "aliases": [], "confidence": 0.95, "question": null}}'
    )


def _relationship_reply(request: GenerationRequest) -> str:
    source = re.search(r"Source entity: (\w+)", request.user_prompt).group(1)
    target = re.search(r"Target entity: (\w+)", request.user_prompt).group(1)
    association = _ASSOCIATIONS.get((source, target), "related_to")
    return f'{{"association": "{association}", "description": "{source} {association} {target}", "confidence": 0.9}}'


def _column_reply(request: GenerationRequest) -> str:
    names = re.search(r"Annotate these columns: ([^\n]+)", request.user_prompt).group(1).split(", ")
    columns = ", ".join(f'{{"name": "{n}", "description": "The {n}", "role": "attribute"}}' for n in names)
    return f'{{"columns": [{columns}]}}'


def default_script() -> dict[str, Any]:
    return {
        "entity_enrichment": _entity_reply,
        "relationship_enrichment": _relationship_reply,
        "column_enrichment": _column_reply,
        "glossary_discovery": (
            '{"terms": [{"term": "Total Revenue", "definition": "Sum of all order amounts", "aliases": ["GMV"]}]}'
        ),
        "glossary_enrichment": (
            '{"defining_sql": "SELECT SUM(o.amount) AS total_revenue FROM orders o", "base_table": "orders"}'
        ),
        "finalization": '{"description": "An online shop taking orders from users", "primary_domains": ["sales"]}',
    }


@pytest.fixture
def generation() -> ScriptedGenerationClient:
    return ScriptedGenerationClient()


@pytest.fixture
def capabilities(snapshot: SchemaSnapshot, generation: ScriptedGenerationClient) -> Capabilities:
    return Capabilities(
        schema=StaticSchemaConnector(snapshot),
        generation=generation,
        validator_factory=ShadowSchemaValidator,
    )


@pytest.fixture
def orchestrator(capabilities: Capabilities) -> DagOrchestrator:
    return DagOrchestrator(test_session_factory, capabilities, settings=settings)


@pytest.fixture
def surface(orchestrator: DagOrchestrator) -> GovernanceSurface:
    return GovernanceSurface(test_session_factory, orchestrator)


@pytest.fixture
async def client(surface: GovernanceSurface) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_governance] = lambda: surface
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.pop(get_governance, None)
