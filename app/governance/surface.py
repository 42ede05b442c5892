"""Governance operations for an external tool-call layer.

Every method returns an ``OperationResult``; no exception crosses this
boundary. Each operation runs in its own session and commits on success.
A failed approve still commits the failure reason it attached to the
change, so reviewers can see why it was not applied.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ConfigurationError, ConflictError, NotFoundError, OntologyError, ValidationError
from app.models.ontology import Ontology
from app.ontology import changes as change_service
from app.ontology import entities as entity_service
from app.ontology import questions as question_service
from app.ontology import relationships as relationship_service
from app.ontology.occurrences import get_occurrences
from app.ontology.provenance import EditSource
from app.pipeline.orchestrator import DagOrchestrator
from app.schemas.governance import OperationResult
from app.schemas.ontology import (
    ApproveAllResponse,
    EntityDetailResponse,
    EntityResponse,
    OccurrenceResponse,
    OntologyResponse,
    PendingChangeResponse,
    QuestionResponse,
    RelationshipPairResponse,
    RelationshipResponse,
)

logger = logging.getLogger(__name__)


def _uuid(value: uuid.UUID | str, what: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {what} id: {value!r}")


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json")


class GovernanceSurface:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: DagOrchestrator | None = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator

    async def _guarded(self, operation: str, fn: Callable[[], Awaitable[Any]]) -> OperationResult:
        try:
            return OperationResult.success(await fn())
        except OntologyError as exc:
            logger.info("Governance %s rejected: [%s] %s", operation, exc.code, exc.message)
            return OperationResult.failure(exc.code, exc.message)
        except Exception as exc:
            logger.exception("Governance %s failed unexpectedly", operation)
            return OperationResult.failure("internal_error", str(exc) or type(exc).__name__)

    async def _call(
        self,
        operation: str,
        fn: Callable[[AsyncSession], Awaitable[Any]],
        commit_on_error: bool = False,
    ) -> OperationResult:
        async def in_session() -> Any:
            async with self.session_factory() as db:
                try:
                    data = await fn(db)
                except OntologyError:
                    if commit_on_error:
                        await db.commit()
                    else:
                        await db.rollback()
                    raise
                await db.commit()
                return data

        return await self._guarded(operation, in_session)

    # ------------------------------------------------------------------
    # Ontologies
    # ------------------------------------------------------------------

    async def create_ontology(self, name: str) -> OperationResult:
        async def op(db: AsyncSession):
            existing = await db.execute(select(Ontology).where(Ontology.name == name))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError(f"Ontology {name!r} already exists")
            ontology = Ontology(name=name)
            db.add(ontology)
            await db.flush()
            await db.refresh(ontology)
            return _dump(OntologyResponse.model_validate(ontology))

        return await self._call("create_ontology", op)

    # ------------------------------------------------------------------
    # Pending changes
    # ------------------------------------------------------------------

    async def list_changes(
        self, ontology_id: uuid.UUID | str, status: str | None = "pending", target_type: str | None = None
    ) -> OperationResult:
        async def op(db: AsyncSession):
            rows = await change_service.list_changes(
                db, _uuid(ontology_id, "ontology"), status=status, target_type=target_type
            )
            return [_dump(PendingChangeResponse.model_validate(c)) for c in rows]

        return await self._call("list_changes", op)

    async def propose_change(
        self,
        ontology_id: uuid.UUID | str,
        action: str,
        target_id: uuid.UUID | str | None = None,
        set_fields: dict[str, Any] | None = None,
        location: dict[str, str] | None = None,
        source: str = "manual",
    ) -> OperationResult:
        """Record a change for review; nothing is applied until it is approved."""

        async def op(db: AsyncSession):
            oid = _uuid(ontology_id, "ontology")
            if await db.get(Ontology, oid) is None:
                raise NotFoundError(f"Ontology {oid} not found")
            try:
                edit_source = EditSource(source)
            except ValueError:
                raise ValidationError(f"Unknown edit source '{source}'") from None
            change_action = change_service.coerce_action(action)
            if change_action in change_service.TARGETED_ACTIONS and target_id is None:
                raise ValidationError(f"Action '{change_action.value}' needs a target id")
            change = await change_service.record_change(
                db,
                oid,
                change_action,
                target_id=_uuid(target_id, "target") if target_id is not None else None,
                set_fields=set_fields,
                location=location,
                source=edit_source.value,
            )
            return _dump(PendingChangeResponse.model_validate(change))

        return await self._call("propose_change", op)

    async def approve_change(
        self, ontology_id: uuid.UUID | str, change_id: uuid.UUID | str, reviewer: str | None = None
    ) -> OperationResult:
        async def op(db: AsyncSession):
            change = await change_service.approve_change(
                db, _uuid(ontology_id, "ontology"), _uuid(change_id, "change"), reviewer=reviewer
            )
            return _dump(PendingChangeResponse.model_validate(change))

        return await self._call("approve_change", op, commit_on_error=True)

    async def reject_change(
        self,
        ontology_id: uuid.UUID | str,
        change_id: uuid.UUID | str,
        reason: str | None = None,
        reviewer: str | None = None,
    ) -> OperationResult:
        async def op(db: AsyncSession):
            change = await change_service.reject_change(
                db, _uuid(ontology_id, "ontology"), _uuid(change_id, "change"), reason=reason, reviewer=reviewer
            )
            return _dump(PendingChangeResponse.model_validate(change))

        return await self._call("reject_change", op)

    async def approve_all(self, ontology_id: uuid.UUID | str, reviewer: str | None = None) -> OperationResult:
        async def op(db: AsyncSession):
            result = await change_service.approve_all(db, _uuid(ontology_id, "ontology"), reviewer=reviewer)
            return _dump(
                ApproveAllResponse(
                    applied_count=result.applied_count,
                    failed_count=result.failed_count,
                    failures=result.failures,
                )
            )

        return await self._call("approve_all", op)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def list_questions(
        self, ontology_id: uuid.UUID | str, status: str | None = None, category: str | None = None
    ) -> OperationResult:
        async def op(db: AsyncSession):
            rows = await question_service.list_questions(
                db, _uuid(ontology_id, "ontology"), status=status, category=category
            )
            return [_dump(QuestionResponse.model_validate(q)) for q in rows]

        return await self._call("list_questions", op)

    async def resolve_question(
        self, ontology_id: uuid.UUID | str, question_id: uuid.UUID | str, answer: str, actor: str | None = None
    ) -> OperationResult:
        async def op(db: AsyncSession):
            question = await question_service.resolve_question(
                db, _uuid(ontology_id, "ontology"), _uuid(question_id, "question"), answer, actor=actor
            )
            return _dump(QuestionResponse.model_validate(question))

        return await self._call("resolve_question", op)

    async def skip_question(self, ontology_id: uuid.UUID | str, question_id: uuid.UUID | str) -> OperationResult:
        async def op(db: AsyncSession):
            question = await question_service.skip_question(
                db, _uuid(ontology_id, "ontology"), _uuid(question_id, "question")
            )
            return _dump(QuestionResponse.model_validate(question))

        return await self._call("skip_question", op)

    async def dismiss_question(
        self,
        ontology_id: uuid.UUID | str,
        question_id: uuid.UUID | str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> OperationResult:
        async def op(db: AsyncSession):
            question = await question_service.dismiss_question(
                db, _uuid(ontology_id, "ontology"), _uuid(question_id, "question"), reason=reason, actor=actor
            )
            return _dump(QuestionResponse.model_validate(question))

        return await self._call("dismiss_question", op)

    async def escalate_question(
        self,
        ontology_id: uuid.UUID | str,
        question_id: uuid.UUID | str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> OperationResult:
        async def op(db: AsyncSession):
            question = await question_service.escalate_question(
                db, _uuid(ontology_id, "ontology"), _uuid(question_id, "question"), reason=reason, actor=actor
            )
            return _dump(QuestionResponse.model_validate(question))

        return await self._call("escalate_question", op)

    # ------------------------------------------------------------------
    # Entities and relationships
    # ------------------------------------------------------------------

    async def list_entities(self, ontology_id: uuid.UUID | str, include_deleted: bool = False) -> OperationResult:
        async def op(db: AsyncSession):
            rows = await entity_service.list_entities(
                db, _uuid(ontology_id, "ontology"), include_deleted=include_deleted
            )
            return [_dump(EntityResponse.model_validate(e)) for e in rows]

        return await self._call("list_entities", op)

    async def get_entity(self, ontology_id: uuid.UUID | str, entity_id: uuid.UUID | str) -> OperationResult:
        async def op(db: AsyncSession):
            oid = _uuid(ontology_id, "ontology")
            entity = await entity_service.get_entity(db, oid, _uuid(entity_id, "entity"))
            occurrences = await get_occurrences(db, oid, entity.id)
            detail = EntityDetailResponse(
                entity=EntityResponse.model_validate(entity),
                occurrences=[
                    OccurrenceResponse(
                        location=str(o.location),
                        role=o.role,
                        is_primary=o.is_primary,
                        relationship_id=o.relationship_id,
                        source_entity_id=o.source_entity_id,
                    )
                    for o in occurrences
                ],
            )
            return _dump(detail)

        return await self._call("get_entity", op)

    async def get_relationship_pair(
        self, ontology_id: uuid.UUID | str, pair_or_row_id: uuid.UUID | str
    ) -> OperationResult:
        async def op(db: AsyncSession):
            pair = await relationship_service.get_pair(
                db, _uuid(ontology_id, "ontology"), _uuid(pair_or_row_id, "relationship")
            )
            return _dump(
                RelationshipPairResponse(
                    pair_id=pair.pair_id,
                    forward=RelationshipResponse.model_validate(pair.forward) if pair.forward else None,
                    reverse=RelationshipResponse.model_validate(pair.reverse) if pair.reverse else None,
                )
            )

        return await self._call("get_relationship_pair", op)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _require_orchestrator(self) -> DagOrchestrator:
        if self.orchestrator is None:
            raise ConfigurationError("Pipeline orchestrator is not configured")
        return self.orchestrator

    async def run_pipeline(self, ontology_id: uuid.UUID | str, background: bool = False) -> OperationResult:
        async def op():
            orchestrator = self._require_orchestrator()
            oid = _uuid(ontology_id, "ontology")
            if background:
                run_id = await orchestrator.start(oid)
                return {"run_id": str(run_id), "started": True}
            summary = await orchestrator.run(oid)
            return summary.to_dict()

        return await self._guarded("run_pipeline", op)

    async def pipeline_status(self, ontology_id: uuid.UUID | str) -> OperationResult:
        async def op():
            return await self._require_orchestrator().status(_uuid(ontology_id, "ontology"))

        return await self._guarded("pipeline_status", op)
