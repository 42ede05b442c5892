"""Fixed-order extraction pipeline.

``DagOrchestrator.run`` walks ``NODE_ORDER`` strictly sequentially. Nodes
already ``succeeded`` are skipped, so re-running after a failure re-enters
at the first non-succeeded node. A failed node halts the run with
``NodeExecutionError``; later nodes stay untouched.

At most one run per ontology is active: the run claim is a conditional
UPDATE on ``Ontology.active_run_id`` and a competing run is rejected with
``ConflictError``. The claim carries a lease that the running pipeline
refreshes between nodes and, while a node runs, every third of the lease.
Node status writes only land while the run still holds the claim. A claim
abandoned by a crashed worker can be taken over once ``run_lease_seconds`` pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ConfigurationError, ConflictError, NodeExecutionError, NotFoundError, OntologyError
from app.core.metrics import NODE_DURATION, NODE_RUNS
from app.core.sentry import capture_node_failure
from app.generation.pool import GenerationPool
from app.models.dag_node_status import DagNodeStatus
from app.models.ontology import Ontology
from app.pipeline.nodes import (
    NODE_ORDER,
    Capabilities,
    DagNode,
    NodeContext,
    NodeStatus,
    ProgressSink,
    StageExecutor,
)
from app.pipeline.stages import default_executors

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    run_id: uuid.UUID
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"run_id": str(self.run_id), "executed": self.executed, "skipped": self.skipped}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DagOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        capabilities: Capabilities,
        executors: dict[DagNode, StageExecutor] | None = None,
        settings: Settings = default_settings,
        progress_sink: ProgressSink | None = None,
    ):
        self.session_factory = session_factory
        self.capabilities = capabilities
        self.executors = executors if executors is not None else default_executors()
        self.settings = settings
        self.progress_sink = progress_sink
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

        missing = [node.value for node in NODE_ORDER if node not in self.executors]
        if missing:
            raise ConfigurationError(f"No executor registered for: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, ontology_id: uuid.UUID) -> RunSummary:
        """Claim the ontology and execute every non-succeeded node in order."""
        run_id = uuid.uuid4()
        await self._claim(ontology_id, run_id)
        return await self._run_claimed(ontology_id, run_id)

    async def start(self, ontology_id: uuid.UUID) -> uuid.UUID:
        """Claim synchronously, then run in a background task. Returns the run id."""
        run_id = uuid.uuid4()
        await self._claim(ontology_id, run_id)
        task = asyncio.create_task(self._run_claimed(ontology_id, run_id))
        self._tasks[ontology_id] = task
        task.add_done_callback(lambda t: self._on_task_done(ontology_id, t))
        return run_id

    async def cancel(self, ontology_id: uuid.UUID) -> bool:
        """Cancel an in-process run started with ``start``. Returns False if none is active."""
        task = self._tasks.get(ontology_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def status(self, ontology_id: uuid.UUID) -> dict[str, Any]:
        async with self.session_factory() as db:
            ontology = await db.get(Ontology, ontology_id)
            if ontology is None:
                raise NotFoundError(f"Ontology {ontology_id} not found")
            rows = await db.execute(
                select(DagNodeStatus)
                .where(DagNodeStatus.ontology_id == ontology_id)
                .order_by(DagNodeStatus.position)
            )
            by_name = {row.node_name: row for row in rows.scalars().all()}

        nodes = []
        for node in NODE_ORDER:
            row = by_name.get(node.value)
            nodes.append(
                {
                    "node": node.value,
                    "position": node.position,
                    "status": row.status if row else NodeStatus.PENDING.value,
                    "run_id": str(row.run_id) if row and row.run_id else None,
                    "started_at": row.started_at.isoformat() if row and row.started_at else None,
                    "completed_at": row.completed_at.isoformat() if row and row.completed_at else None,
                    "error": row.error if row else None,
                    "progress": row.progress if row else None,
                }
            )
        return {
            "ontology_id": str(ontology_id),
            "active_run_id": str(ontology.active_run_id) if ontology.active_run_id else None,
            "nodes": nodes,
        }

    async def reset(self, ontology_id: uuid.UUID, from_node: DagNode = DagNode.SCHEMA_CAPTURE) -> int:
        """Mark ``from_node`` and every later node pending so the next run replays them."""
        async with self.session_factory() as db:
            ontology = await db.get(Ontology, ontology_id)
            if ontology is None:
                raise NotFoundError(f"Ontology {ontology_id} not found")
            if ontology.active_run_id is not None:
                raise ConflictError(f"Ontology {ontology_id} has an active run")
            result = await db.execute(
                update(DagNodeStatus)
                .where(DagNodeStatus.ontology_id == ontology_id, DagNodeStatus.position >= from_node.position)
                .values(status=NodeStatus.PENDING.value, error=None, started_at=None, completed_at=None, progress=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info("Reset %d nodes from %s", result.rowcount, from_node.value, extra={"ontology_id": ontology_id})
        return result.rowcount

    # ------------------------------------------------------------------
    # Run claim
    # ------------------------------------------------------------------

    async def _claim(self, ontology_id: uuid.UUID, run_id: uuid.UUID) -> None:
        now = _now()
        cutoff = now - timedelta(seconds=self.settings.run_lease_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                update(Ontology)
                .where(
                    Ontology.id == ontology_id,
                    or_(Ontology.active_run_id.is_(None), Ontology.run_claimed_at < cutoff),
                )
                .values(active_run_id=run_id, run_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                logger.info("Run %s claimed", run_id, extra={"ontology_id": ontology_id, "run_id": run_id})
                return
            if await db.get(Ontology, ontology_id) is None:
                raise NotFoundError(f"Ontology {ontology_id} not found")
        raise ConflictError(f"Ontology {ontology_id} already has an active run")

    async def _heartbeat(self, ontology_id: uuid.UUID, run_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Ontology)
                .where(Ontology.id == ontology_id, Ontology.active_run_id == run_id)
                .values(run_claimed_at=_now())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            raise ConflictError(f"Run {run_id} lost its claim on ontology {ontology_id}")

    async def _keep_alive(self, ontology_id: uuid.UUID, run_id: uuid.UUID) -> None:
        interval = max(self.settings.run_lease_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                await self._heartbeat(ontology_id, run_id)
            except ConflictError as exc:
                logger.warning("%s", exc.message, extra={"ontology_id": ontology_id, "run_id": run_id})
                return

    async def _release(self, ontology_id: uuid.UUID, run_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Ontology)
                .where(Ontology.id == ontology_id, Ontology.active_run_id == run_id)
                .values(active_run_id=None, run_claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_claimed(self, ontology_id: uuid.UUID, run_id: uuid.UUID) -> RunSummary:
        summary = RunSummary(run_id=run_id)
        ctx = NodeContext(
            ontology_id=ontology_id,
            run_id=run_id,
            session_factory=self.session_factory,
            capabilities=self.capabilities,
            pool=GenerationPool(
                max_concurrent=self.settings.generation_max_concurrent,
                call_timeout=self.settings.generation_timeout_seconds,
            ),
            settings=self.settings,
            progress_sink=self.progress_sink,
        )
        try:
            statuses = await self._ensure_status_rows(ontology_id)
            for node in NODE_ORDER:
                if statuses[node] == NodeStatus.SUCCEEDED.value:
                    summary.skipped.append(node.value)
                    continue
                await self._heartbeat(ontology_id, run_id)
                await self._execute_node(ctx, node)
                summary.executed.append(node.value)
        finally:
            await self._release(ontology_id, run_id)

        logger.info(
            "Run %s finished: %d executed, %d skipped",
            run_id,
            len(summary.executed),
            len(summary.skipped),
            extra={"ontology_id": ontology_id, "run_id": run_id},
        )
        return summary

    async def _ensure_status_rows(self, ontology_id: uuid.UUID) -> dict[DagNode, str]:
        async with self.session_factory() as db:
            rows = await db.execute(select(DagNodeStatus).where(DagNodeStatus.ontology_id == ontology_id))
            existing = {row.node_name: row.status for row in rows.scalars().all()}
            for node in NODE_ORDER:
                if node.value not in existing:
                    db.add(
                        DagNodeStatus(
                            ontology_id=ontology_id,
                            node_name=node.value,
                            position=node.position,
                            status=NodeStatus.PENDING.value,
                        )
                    )
                    existing[node.value] = NodeStatus.PENDING.value
            await db.commit()
        return {node: existing[node.value] for node in NODE_ORDER}

    async def _set_node(self, ctx: NodeContext, node: DagNode, **values: Any) -> None:
        holds_claim = (
            select(Ontology.id)
            .where(Ontology.id == ctx.ontology_id, Ontology.active_run_id == ctx.run_id)
            .exists()
        )
        async with self.session_factory() as db:
            await db.execute(
                update(DagNodeStatus)
                .where(DagNodeStatus.ontology_id == ctx.ontology_id, DagNodeStatus.node_name == node.value, holds_claim)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _execute_node(self, ctx: NodeContext, node: DagNode) -> None:
        executor = self.executors[node]
        log_extra = {"ontology_id": ctx.ontology_id, "node": node.value, "run_id": ctx.run_id}
        ctx.last_progress = None
        await self._set_node(
            ctx,
            node,
            status=NodeStatus.RUNNING.value,
            run_id=ctx.run_id,
            started_at=_now(),
            completed_at=None,
            error=None,
            progress=None,
        )
        logger.info("Node %s started", node.value, extra=log_extra)

        started = time.monotonic()
        try:
            executor.check_capabilities(self.capabilities)
            keeper = asyncio.create_task(self._keep_alive(ctx.ontology_id, ctx.run_id))
            try:
                result = await executor.execute(ctx)
            finally:
                keeper.cancel()
                await asyncio.gather(keeper, return_exceptions=True)
        except asyncio.CancelledError:
            NODE_RUNS.labels(node=node.value, status="cancelled").inc()
            logger.warning("Node %s cancelled", node.value, extra=log_extra)
            await self._mark_failed(ctx, node, "cancelled")
            raise
        except Exception as exc:
            NODE_RUNS.labels(node=node.value, status=NodeStatus.FAILED.value).inc()
            message = exc.message if isinstance(exc, OntologyError) else f"{type(exc).__name__}: {exc}"
            logger.error("Node %s failed: %s", node.value, message, exc_info=not isinstance(exc, OntologyError), extra=log_extra)
            if not isinstance(exc, OntologyError):
                capture_node_failure(exc, ontology_id=ctx.ontology_id, node=node.value, run_id=ctx.run_id)
            await self._mark_failed(ctx, node, message)
            raise NodeExecutionError(node.value, exc) from exc
        finally:
            NODE_DURATION.labels(node=node.value).observe(time.monotonic() - started)

        NODE_RUNS.labels(node=node.value, status=NodeStatus.SUCCEEDED.value).inc()
        await self._set_node(
            ctx,
            node,
            status=NodeStatus.SUCCEEDED.value,
            completed_at=_now(),
            progress=result.to_dict(),
        )
        logger.info("Node %s succeeded", node.value, extra=log_extra)

    async def _mark_failed(self, ctx: NodeContext, node: DagNode, error: str) -> None:
        await self._set_node(
            ctx,
            node,
            status=NodeStatus.FAILED.value,
            completed_at=_now(),
            error=error,
            progress=ctx.last_progress.to_dict() if ctx.last_progress else None,
        )

    def _on_task_done(self, ontology_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._tasks.get(ontology_id) is task:
            del self._tasks[ontology_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background run failed: %s", exc, extra={"ontology_id": ontology_id})
