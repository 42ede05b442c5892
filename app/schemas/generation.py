"""Structured output schemas for generation calls, one per stage."""

from pydantic import BaseModel, Field, field_validator


class EntityAnnotation(BaseModel):
    business_name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    domain: str | None = Field(None, max_length=100)
    aliases: list[str] = Field(default_factory=list)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    question: str | None = None  # set when the model needs a human to disambiguate


class RelationshipAnnotation(BaseModel):
    association: str = Field(min_length=1, max_length=100)
    description: str | None = None
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    question: str | None = None

    @field_validator("association")
    @classmethod
    def _snake_case(cls, v: str) -> str:
        return "_".join(v.strip().lower().replace("-", " ").split())


class ColumnAnnotation(BaseModel):
    name: str
    description: str = Field(min_length=1)
    semantic_type: str | None = Field(None, max_length=50)
    role: str | None = None
    question: str | None = None

    @field_validator("role")
    @classmethod
    def _known_role(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        return v if v in ("identifier", "dimension", "measure", "attribute") else "attribute"


class TableColumnAnnotations(BaseModel):
    columns: list[ColumnAnnotation] = Field(default_factory=list)


class GlossarySuggestion(BaseModel):
    term: str = Field(min_length=1, max_length=255)
    definition: str = Field(min_length=1)
    aliases: list[str] = Field(default_factory=list)


class GlossarySuggestions(BaseModel):
    terms: list[GlossarySuggestion] = Field(default_factory=list)


class TermSqlAnnotation(BaseModel):
    defining_sql: str
    base_table: str | None = None
    aliases: list[str] = Field(default_factory=list)


class DomainSummaryAnnotation(BaseModel):
    description: str = Field(min_length=1)
    primary_domains: list[str] = Field(default_factory=list)
