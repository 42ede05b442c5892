import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class OntologyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class OntologyResponse(BaseModel):
    id: uuid.UUID
    name: str
    schema_fingerprint: str | None
    domain_summary: dict | None
    active_run_id: uuid.UUID | None
    created_at: datetime

    model_config = {"from_attributes": True}


class EntityResponse(BaseModel):
    id: uuid.UUID
    name: str
    business_name: str | None
    description: str | None
    domain: str | None
    confidence: float | None
    primary_schema: str
    primary_table: str
    primary_column: str
    aliases: list[str]
    is_deleted: bool
    deletion_reason: str | None
    is_staged: bool
    last_edit_source: str | None

    model_config = {"from_attributes": True}


class OccurrenceResponse(BaseModel):
    location: str
    role: str | None
    is_primary: bool
    relationship_id: uuid.UUID | None = None
    source_entity_id: uuid.UUID | None = None


class EntityDetailResponse(BaseModel):
    entity: EntityResponse
    occurrences: list[OccurrenceResponse]


class RelationshipResponse(BaseModel):
    id: uuid.UUID
    pair_id: uuid.UUID
    direction: str
    source_entity_id: uuid.UUID
    target_entity_id: uuid.UUID
    source_schema: str
    source_table: str
    source_column: str
    target_schema: str
    target_table: str
    target_column: str
    cardinality: str
    association: str | None
    description: str | None
    confidence: float
    detection_method: str
    status: str
    is_staged: bool
    is_deleted: bool

    model_config = {"from_attributes": True}


class RelationshipPairResponse(BaseModel):
    pair_id: uuid.UUID
    forward: RelationshipResponse | None
    reverse: RelationshipResponse | None


class QuestionResponse(BaseModel):
    id: uuid.UUID
    source_stage: str
    source_ref: str | None
    prompt: str
    category: str
    priority: int
    is_required: bool
    affects: dict | None
    status: str
    answer: str | None
    status_reason: str | None
    answered_by: str | None
    answered_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class PendingChangeResponse(BaseModel):
    id: uuid.UUID
    target_type: str
    target_id: uuid.UUID | None
    action: str
    diff: dict[str, Any]
    source_stage: str | None
    source: str
    status: str
    reason: str | None
    reviewed_by: str | None
    created_at: datetime
    reviewed_at: datetime | None

    model_config = {"from_attributes": True}


class ApproveAllResponse(BaseModel):
    applied_count: int
    failed_count: int
    failures: list[dict[str, Any]] = []


class ReviewRequest(BaseModel):
    reviewer: str | None = Field(None, max_length=255)
    reason: str | None = Field(None, max_length=2000)


class ResolveQuestionRequest(BaseModel):
    answer: str = Field(min_length=1)
    actor: str | None = Field(None, max_length=255)


class QuestionActionRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)
    actor: str | None = Field(None, max_length=255)


class ProposeChangeRequest(BaseModel):
    action: str
    target_id: uuid.UUID | None = None
    set_fields: dict[str, Any] = Field(default_factory=dict)
    location: dict[str, str] | None = None
    source: str = "manual"
