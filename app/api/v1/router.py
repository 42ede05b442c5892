from fastapi import APIRouter

from app.api.v1.ontology import router as ontology_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(ontology_router)
