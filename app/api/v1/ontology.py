from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.core.dependencies import get_governance
from app.core.exceptions import (
    ConfigurationError,
    ConflictError,
    GenerationError,
    NodeExecutionError,
    NotFoundError,
    OntologyError,
    SchemaMismatchError,
    ValidationError,
)
from app.governance.surface import GovernanceSurface
from app.schemas.governance import OperationResult
from app.schemas.ontology import (
    OntologyCreate,
    ProposeChangeRequest,
    QuestionActionRequest,
    ResolveQuestionRequest,
    ReviewRequest,
)

router = APIRouter(prefix="/ontologies", tags=["ontologies"])

_STATUS_BY_CODE = {
    cls.code: cls.status_code
    for cls in (
        OntologyError,
        ValidationError,
        NotFoundError,
        ConflictError,
        GenerationError,
        SchemaMismatchError,
        ConfigurationError,
        NodeExecutionError,
    )
}


def _respond(result: OperationResult, success_status: int = 200) -> JSONResponse:
    status = success_status if result.ok else _STATUS_BY_CODE.get(result.error.code, 500)
    return JSONResponse(status_code=status, content=result.model_dump(mode="json"))


@router.post("/")
async def create_ontology(body: OntologyCreate, surface: GovernanceSurface = Depends(get_governance)):
    return _respond(await surface.create_ontology(body.name), success_status=201)


# --- Entities & relationships ---


@router.get("/{ontology_id}/entities")
async def list_entities(
    ontology_id: str,
    include_deleted: bool = Query(False),
    surface: GovernanceSurface = Depends(get_governance),
):
    return _respond(await surface.list_entities(ontology_id, include_deleted=include_deleted))


@router.get("/{ontology_id}/entities/{entity_id}")
async def get_entity(ontology_id: str, entity_id: str, surface: GovernanceSurface = Depends(get_governance)):
    return _respond(await surface.get_entity(ontology_id, entity_id))


@router.get("/{ontology_id}/relationships/{relationship_id}")
async def get_relationship_pair(
    ontology_id: str, relationship_id: str, surface: GovernanceSurface = Depends(get_governance)
):
    return _respond(await surface.get_relationship_pair(ontology_id, relationship_id))


# --- Pending changes ---


@router.get("/{ontology_id}/changes")
async def list_changes(
    ontology_id: str,
    status: str | None = Query("pending"),
    target_type: str | None = Query(None),
    surface: GovernanceSurface = Depends(get_governance),
):
    return _respond(await surface.list_changes(ontology_id, status=status, target_type=target_type))


@router.post("/{ontology_id}/changes")
async def propose_change(
    ontology_id: str, body: ProposeChangeRequest, surface: GovernanceSurface = Depends(get_governance)
):
    result = await surface.propose_change(
        ontology_id,
        body.action,
        target_id=body.target_id,
        set_fields=body.set_fields,
        location=body.location,
        source=body.source,
    )
    return _respond(result, success_status=201)


@router.post("/{ontology_id}/changes/approve-all")
async def approve_all(
    ontology_id: str, body: ReviewRequest | None = None, surface: GovernanceSurface = Depends(get_governance)
):
    reviewer = body.reviewer if body else None
    return _respond(await surface.approve_all(ontology_id, reviewer=reviewer))


@router.post("/{ontology_id}/changes/{change_id}/approve")
async def approve_change(
    ontology_id: str,
    change_id: str,
    body: ReviewRequest | None = None,
    surface: GovernanceSurface = Depends(get_governance),
):
    reviewer = body.reviewer if body else None
    return _respond(await surface.approve_change(ontology_id, change_id, reviewer=reviewer))


@router.post("/{ontology_id}/changes/{change_id}/reject")
async def reject_change(
    ontology_id: str,
    change_id: str,
    body: ReviewRequest | None = None,
    surface: GovernanceSurface = Depends(get_governance),
):
    body = body or ReviewRequest()
    return _respond(await surface.reject_change(ontology_id, change_id, reason=body.reason, reviewer=body.reviewer))


# --- Questions ---


@router.get("/{ontology_id}/questions")
async def list_questions(
    ontology_id: str,
    status: str | None = Query(None),
    category: str | None = Query(None),
    surface: GovernanceSurface = Depends(get_governance),
):
    return _respond(await surface.list_questions(ontology_id, status=status, category=category))


@router.post("/{ontology_id}/questions/{question_id}/resolve")
async def resolve_question(
    ontology_id: str,
    question_id: str,
    body: ResolveQuestionRequest,
    surface: GovernanceSurface = Depends(get_governance),
):
    return _respond(await surface.resolve_question(ontology_id, question_id, body.answer, actor=body.actor))


@router.post("/{ontology_id}/questions/{question_id}/skip")
async def skip_question(ontology_id: str, question_id: str, surface: GovernanceSurface = Depends(get_governance)):
    return _respond(await surface.skip_question(ontology_id, question_id))


@router.post("/{ontology_id}/questions/{question_id}/dismiss")
async def dismiss_question(
    ontology_id: str,
    question_id: str,
    body: QuestionActionRequest | None = None,
    surface: GovernanceSurface = Depends(get_governance),
):
    body = body or QuestionActionRequest()
    return _respond(await surface.dismiss_question(ontology_id, question_id, reason=body.reason, actor=body.actor))


@router.post("/{ontology_id}/questions/{question_id}/escalate")
async def escalate_question(
    ontology_id: str,
    question_id: str,
    body: QuestionActionRequest | None = None,
    surface: GovernanceSurface = Depends(get_governance),
):
    body = body or QuestionActionRequest()
    return _respond(await surface.escalate_question(ontology_id, question_id, reason=body.reason, actor=body.actor))


# --- Pipeline ---


@router.post("/{ontology_id}/pipeline/run")
async def run_pipeline(
    ontology_id: str,
    background: bool = Query(True),
    surface: GovernanceSurface = Depends(get_governance),
):
    result = await surface.run_pipeline(ontology_id, background=background)
    return _respond(result, success_status=202 if background else 200)


@router.get("/{ontology_id}/pipeline")
async def pipeline_status(ontology_id: str, surface: GovernanceSurface = Depends(get_governance)):
    return _respond(await surface.pipeline_status(ontology_id))
