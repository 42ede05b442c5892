"""Clarifying-question lifecycle.

    open -> resolved   (answer recorded, terminal)
    open -> skipped    (revisitable)
    open -> dismissed  (terminal)
    open -> escalated  (terminal for automated flows; needs human review)

A skipped question may be acted on again exactly like an open one. Any
action on a terminal question raises ``ConflictError`` and changes nothing.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.question import OntologyQuestion

logger = logging.getLogger(__name__)


class QuestionStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    SKIPPED = "skipped"
    DISMISSED = "dismissed"
    ESCALATED = "escalated"


class QuestionCategory(str, Enum):
    BUSINESS_RULES = "business_rules"
    RELATIONSHIP = "relationship"
    TERMINOLOGY = "terminology"
    ENUMERATION = "enumeration"
    TEMPORAL = "temporal"
    DATA_QUALITY = "data_quality"


TERMINAL_STATUSES = frozenset({QuestionStatus.RESOLVED, QuestionStatus.DISMISSED, QuestionStatus.ESCALATED})
_ACTIONABLE = frozenset({QuestionStatus.OPEN, QuestionStatus.SKIPPED})


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {enum_cls.__name__} '{value}'; expected one of: {allowed}") from None


def content_hash(category: str, prompt: str) -> str:
    """Stable dedupe key: first 16 hex chars of sha256(category|prompt)."""
    digest = hashlib.sha256(f"{category}|{prompt.strip()}".encode("utf-8")).hexdigest()
    return digest[:16]


async def raise_question(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    *,
    prompt: str,
    category: QuestionCategory | str,
    source_stage: str,
    source_ref: str | None = None,
    priority: int = 3,
    is_required: bool = False,
    affects: dict | None = None,
) -> tuple[OntologyQuestion, bool]:
    """Create a question unless an identical one exists. Returns ``(question, created)``."""
    category = _coerce(QuestionCategory, category).value
    if not prompt.strip():
        raise ValidationError("Question prompt is required")
    if not 1 <= priority <= 5:
        raise ValidationError("Question priority must be between 1 and 5")

    key = content_hash(category, prompt)
    result = await db.execute(
        select(OntologyQuestion).where(
            OntologyQuestion.ontology_id == ontology_id, OntologyQuestion.content_hash == key
        )
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        return existing, False

    question = OntologyQuestion(
        ontology_id=ontology_id,
        source_stage=source_stage,
        source_ref=source_ref,
        prompt=prompt.strip(),
        category=category,
        priority=priority,
        is_required=is_required,
        affects=affects,
        content_hash=key,
        status=QuestionStatus.OPEN.value,
    )
    db.add(question)
    await db.flush()
    logger.info("Question raised by %s [%s]: %s", source_stage, category, prompt[:120])
    return question, True


async def get_question(db: AsyncSession, ontology_id: uuid.UUID, question_id: uuid.UUID) -> OntologyQuestion:
    question = await db.get(OntologyQuestion, question_id)
    if question is None or question.ontology_id != ontology_id:
        raise NotFoundError(f"Question {question_id} not found")
    return question


async def list_questions(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    status: str | None = None,
    category: str | None = None,
) -> list[OntologyQuestion]:
    stmt = select(OntologyQuestion).where(OntologyQuestion.ontology_id == ontology_id)
    if status:
        stmt = stmt.where(OntologyQuestion.status == _coerce(QuestionStatus, status).value)
    if category:
        stmt = stmt.where(OntologyQuestion.category == _coerce(QuestionCategory, category).value)
    result = await db.execute(stmt.order_by(OntologyQuestion.priority, OntologyQuestion.created_at))
    return list(result.scalars().all())


async def _transition(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    question_id: uuid.UUID,
    to: QuestionStatus,
    *,
    answer: str | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> OntologyQuestion:
    question = await get_question(db, ontology_id, question_id)
    current = QuestionStatus(question.status)
    if current not in _ACTIONABLE:
        raise ConflictError(f"Question {question_id} is {current.value}; cannot move it to {to.value}")

    question.status = to.value
    if answer is not None:
        question.answer = answer
    if reason is not None:
        question.status_reason = reason
    if to in TERMINAL_STATUSES:
        question.answered_by = actor
        question.answered_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Question %s: %s -> %s", question_id, current.value, to.value)
    return question


async def resolve_question(
    db: AsyncSession, ontology_id: uuid.UUID, question_id: uuid.UUID, answer: str, actor: str | None = None
) -> OntologyQuestion:
    if not answer or not answer.strip():
        raise ValidationError("An answer is required to resolve a question")
    return await _transition(db, ontology_id, question_id, QuestionStatus.RESOLVED, answer=answer.strip(), actor=actor)


async def skip_question(db: AsyncSession, ontology_id: uuid.UUID, question_id: uuid.UUID) -> OntologyQuestion:
    return await _transition(db, ontology_id, question_id, QuestionStatus.SKIPPED)


async def dismiss_question(
    db: AsyncSession, ontology_id: uuid.UUID, question_id: uuid.UUID, reason: str | None = None, actor: str | None = None
) -> OntologyQuestion:
    return await _transition(db, ontology_id, question_id, QuestionStatus.DISMISSED, reason=reason, actor=actor)


async def escalate_question(
    db: AsyncSession, ontology_id: uuid.UUID, question_id: uuid.UUID, reason: str | None = None, actor: str | None = None
) -> OntologyQuestion:
    return await _transition(db, ontology_id, question_id, QuestionStatus.ESCALATED, reason=reason, actor=actor)
